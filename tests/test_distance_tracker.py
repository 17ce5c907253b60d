from __future__ import annotations

import math
from datetime import datetime, timezone

import pytest

from runcoach.models import PositionFix, pace_min_per_km
from runcoach.services.distance_tracker import EARTH_RADIUS_M, DistanceTracker

METERS_PER_DEGREE = EARTH_RADIUS_M * math.pi / 180.0


def _fix(north_m: float, accuracy: float = 10.0, longitude: float = 0.0) -> PositionFix:
    return PositionFix(
        timestamp=datetime(2025, 11, 13, 7, 0, tzinfo=timezone.utc),
        latitude=north_m / METERS_PER_DEGREE,
        longitude=longitude,
        horizontal_accuracy_m=accuracy,
    )


def test_first_fix_only_sets_reference() -> None:
    tracker = DistanceTracker()

    assert tracker.ingest(_fix(0)) == 0.0
    assert tracker.state.last_accepted_fix == _fix(0)


def test_jump_over_100m_is_rejected_but_becomes_reference() -> None:
    tracker = DistanceTracker()

    tracker.ingest(_fix(0))
    tracker.ingest(_fix(30))
    distance = tracker.ingest(_fix(180))

    assert distance == pytest.approx(30.0, abs=1e-6)
    assert tracker.last_accepted_fix == _fix(180)

    # The rejected fix is the new reference, so tracking picks up from there.
    assert tracker.ingest(_fix(200)) == pytest.approx(50.0, abs=1e-6)


def test_inaccurate_fix_does_not_add_distance() -> None:
    tracker = DistanceTracker()

    tracker.ingest(_fix(0))
    tracker.ingest(_fix(20, accuracy=50.0))
    distance = tracker.ingest(_fix(40, accuracy=10.0))

    assert distance == pytest.approx(20.0, abs=1e-6)


def test_stationary_fix_adds_nothing() -> None:
    tracker = DistanceTracker()

    tracker.ingest(_fix(10))
    assert tracker.ingest(_fix(10)) == 0.0


def test_malformed_fix_is_dropped_without_becoming_reference() -> None:
    tracker = DistanceTracker()

    tracker.ingest(_fix(0))
    tracker.ingest(PositionFix(_fix(0).timestamp, float('nan'), 0.0, 5.0))
    tracker.ingest(PositionFix(_fix(0).timestamp, 0.0, 0.0, -1.0))

    assert tracker.last_accepted_fix == _fix(0)
    assert tracker.ingest(_fix(25)) == pytest.approx(25.0, abs=1e-6)


def test_distance_never_decreases() -> None:
    tracker = DistanceTracker()
    sequence = [
        _fix(0), _fix(15), _fix(400), _fix(410, accuracy=80), _fix(430),
        _fix(430), _fix(300), _fix(320), _fix(-5000), _fix(-4990), _fix(-4950),
    ]

    previous = 0.0
    for fix in sequence:
        current = tracker.ingest(fix)
        assert current >= previous
        previous = current

    assert previous == pytest.approx(15 + 20 + 20 + 10 + 40, abs=1e-6)


def test_reset_clears_state() -> None:
    tracker = DistanceTracker()
    tracker.ingest(_fix(0))
    tracker.ingest(_fix(50))

    tracker.reset()

    assert tracker.cumulative_distance_m == 0.0
    assert tracker.last_accepted_fix is None


def test_pace_is_undefined_without_distance() -> None:
    assert pace_min_per_km(0.0, 600.0) is None
    assert pace_min_per_km(1000.0, 300.0) == pytest.approx(5.0)


def test_rebase_keeps_distance_but_drops_reference() -> None:
    tracker = DistanceTracker()
    tracker.ingest(_fix(0))
    tracker.ingest(_fix(40))

    tracker.rebase()

    assert tracker.last_accepted_fix is None
    assert tracker.ingest(_fix(90)) == pytest.approx(40.0, abs=1e-6)
    assert tracker.ingest(_fix(100)) == pytest.approx(50.0, abs=1e-6)

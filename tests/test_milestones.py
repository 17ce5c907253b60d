from __future__ import annotations

from datetime import datetime, timezone

import pytest

from runcoach.models import Milestone, MilestoneProgressSignal, Roadmap, RunningGoal
from runcoach.services import milestones

NOW = datetime(2025, 11, 13, 8, 0, tzinfo=timezone.utc)
EARLIER = datetime(2025, 11, 1, 8, 0, tzinfo=timezone.utc)


def _roadmap(*milestone_list: Milestone) -> Roadmap:
    return Roadmap(
        user_id='user-1',
        title='Road to: Build stamina',
        goal=RunningGoal.BUILD_STAMINA,
        milestones=milestone_list,
        updated_at=EARLIER,
    )


def _three() -> Roadmap:
    return _roadmap(
        Milestone(title='First run', description='Complete a 15-minute run'),
        Milestone(title='Run 1 km', description='1kmを走りきる'),
        Milestone(title='Twice a week'),
    )


def test_milestone_completion_requires_timestamp() -> None:
    with pytest.raises(ValueError):
        Milestone(title='Broken', completed=True)
    with pytest.raises(ValueError):
        Milestone(title='Broken', completed=False, completed_at=NOW)


def test_current_milestone_is_first_uncompleted() -> None:
    roadmap = _three()
    roadmap = milestones.toggle(roadmap, roadmap.milestones[0].id, now=NOW)

    assert milestones.current_milestone(roadmap) is roadmap.milestones[1]
    assert milestones.current_milestone(None) is None


def test_apply_progress_targets_signalled_milestone() -> None:
    roadmap = _three()
    target = roadmap.milestones[1]

    updated = milestones.apply_progress(
        roadmap, MilestoneProgressSignal(achieved=True, milestone_id=target.id), now=NOW
    )

    completed = updated.find_milestone(target.id)
    assert completed.completed is True
    assert completed.completed_at == NOW
    assert updated.updated_at == NOW
    assert updated.milestones[0].completed is False
    # The input roadmap is left untouched.
    assert roadmap.milestones[1].completed is False


def test_apply_progress_without_id_targets_first_uncompleted() -> None:
    roadmap = _three()

    updated = milestones.apply_progress(roadmap, MilestoneProgressSignal(achieved=True), now=NOW)

    assert updated.milestones[0].completed is True
    assert updated.completed_count == 1


def test_apply_progress_is_idempotent() -> None:
    roadmap = _three()
    signal = MilestoneProgressSignal(achieved=True, milestone_id=roadmap.milestones[0].id)

    once = milestones.apply_progress(roadmap, signal, now=NOW)
    twice = milestones.apply_progress(once, signal, now=datetime(2025, 12, 1, tzinfo=timezone.utc))

    assert twice is once
    assert twice.milestones[0].completed_at == NOW


def test_not_achieved_signal_changes_nothing() -> None:
    roadmap = _three()

    assert milestones.apply_progress(roadmap, MilestoneProgressSignal(achieved=False), now=NOW) is roadmap
    assert milestones.apply_progress(roadmap, None, now=NOW) is roadmap


def test_unknown_milestone_id_changes_nothing() -> None:
    roadmap = _three()

    updated = milestones.apply_progress(
        roadmap, MilestoneProgressSignal(achieved=True, milestone_id='missing'), now=NOW
    )

    assert updated is roadmap
    assert milestones.toggle(roadmap, 'missing', now=NOW) is roadmap


def test_fully_completed_roadmap_ignores_unaddressed_signal() -> None:
    roadmap = _roadmap(Milestone(title='Done', completed=True, completed_at=EARLIER))

    assert milestones.apply_progress(roadmap, MilestoneProgressSignal(achieved=True), now=NOW) is roadmap


def test_toggle_flips_completion_both_ways() -> None:
    roadmap = _three()
    milestone_id = roadmap.milestones[2].id

    on = milestones.toggle(roadmap, milestone_id, now=NOW)
    off = milestones.toggle(on, milestone_id, now=NOW)

    assert on.find_milestone(milestone_id).completed is True
    assert on.find_milestone(milestone_id).completed_at == NOW
    assert off.find_milestone(milestone_id).completed is False
    assert off.find_milestone(milestone_id).completed_at is None


def test_toggle_and_signal_are_last_write_wins() -> None:
    roadmap = _three()
    first = roadmap.milestones[0]

    unchecked = milestones.toggle(
        milestones.toggle(roadmap, first.id, now=EARLIER), first.id, now=EARLIER
    )
    achieved = milestones.apply_progress(
        unchecked, MilestoneProgressSignal(achieved=True, milestone_id=first.id), now=NOW
    )

    assert achieved.find_milestone(first.id).completed_at == NOW


def test_progress_percentage() -> None:
    assert _roadmap().progress_percentage == 0.0

    roadmap = _three()
    roadmap = milestones.toggle(roadmap, roadmap.milestones[0].id, now=NOW)
    roadmap = milestones.toggle(roadmap, roadmap.milestones[2].id, now=NOW)

    assert roadmap.completed_count == 2
    assert roadmap.progress_percentage == pytest.approx(200 / 3)

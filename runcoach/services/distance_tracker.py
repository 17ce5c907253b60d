from __future__ import annotations

import logging
import math
from typing import Optional

from ..models import PositionFix, TrackerState

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0
MAX_INCREMENT_M = 100.0
MAX_ACCURACY_M = 50.0


def haversine_meters(first: PositionFix, second: PositionFix) -> float:
    """Great-circle distance between two fixes in metres."""

    lat1 = math.radians(first.latitude)
    lat2 = math.radians(second.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(second.longitude - first.longitude)

    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


class DistanceTracker:
    """Fold raw position fixes into a monotonically non-decreasing distance.

    A fix adds distance only when a previous fix exists, the hop is strictly
    between 0 and 100 m, and the reported horizontal accuracy is under 50 m.
    Rejected fixes still become the reference point so that a single glitch
    (a teleport after signal loss, say) does not block every later reading.
    """

    def __init__(self) -> None:
        self.last_accepted_fix: Optional[PositionFix] = None
        self.cumulative_distance_m: float = 0.0

    @property
    def state(self) -> TrackerState:
        return TrackerState(self.last_accepted_fix, self.cumulative_distance_m)

    def reset(self) -> None:
        self.last_accepted_fix = None
        self.cumulative_distance_m = 0.0

    def rebase(self) -> None:
        """Forget the reference fix but keep the distance covered so far."""

        self.last_accepted_fix = None

    def ingest(self, fix: PositionFix) -> float:
        if not self._is_well_formed(fix):
            logger.debug('distance_tracker.malformed_fix_dropped: %r', fix)
            return self.cumulative_distance_m

        previous = self.last_accepted_fix
        self.last_accepted_fix = fix
        if previous is None:
            return self.cumulative_distance_m

        increment = haversine_meters(previous, fix)
        if 0 < increment < MAX_INCREMENT_M and fix.horizontal_accuracy_m < MAX_ACCURACY_M:
            self.cumulative_distance_m += increment
        else:
            logger.debug(
                'distance_tracker.fix_rejected increment=%.1fm accuracy=%.1fm',
                increment,
                fix.horizontal_accuracy_m,
            )
        return self.cumulative_distance_m

    @staticmethod
    def _is_well_formed(fix: PositionFix) -> bool:
        values = (fix.latitude, fix.longitude, fix.horizontal_accuracy_m)
        if not all(isinstance(value, (int, float)) and math.isfinite(value) for value in values):
            return False
        if not -90.0 <= fix.latitude <= 90.0 or not -180.0 <= fix.longitude <= 180.0:
            return False
        return fix.horizontal_accuracy_m >= 0

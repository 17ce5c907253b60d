from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from ..models import PositionFix, WorkoutSession, pace_min_per_km, utcnow
from .distance_tracker import DistanceTracker

logger = logging.getLogger(__name__)


class WorkoutState(str, Enum):
    IDLE = 'idle'
    ACTIVE = 'active'
    PAUSED = 'paused'
    ENDED = 'ended'


@dataclass(frozen=True)
class WorkoutSnapshot:
    state: WorkoutState
    started_at: Optional[datetime]
    distance_meters: float
    duration_seconds: float
    pace_min_per_km: Optional[float]

    def to_dict(self) -> dict:
        return {
            'state': self.state.value,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'distance_meters': round(self.distance_meters, 1),
            'duration_seconds': round(self.duration_seconds, 1),
            'pace_min_per_km': round(self.pace_min_per_km, 2) if self.pace_min_per_km else None,
        }


class WorkoutSessionMachine:
    """Lifecycle of a single workout: idle, active, paused, ended.

    The ticker thread and incoming position fixes both mutate the running
    totals, so every mutation happens under one lock. Transitions requested
    from the wrong state are ignored and reported through the return value;
    duplicate taps on a start or pause button are expected, not exceptional.
    """

    def __init__(
        self,
        user_id: str,
        tracker: Optional[DistanceTracker] = None,
        clock: Callable[[], datetime] = utcnow,
        tick_interval: Optional[float] = 1.0,
    ) -> None:
        self.user_id = user_id
        self._tracker = tracker or DistanceTracker()
        self._clock = clock
        self._tick_interval = tick_interval
        self._lock = threading.RLock()
        self._stop_ticker = threading.Event()
        self._ticker: Optional[threading.Thread] = None

        self._state = WorkoutState.IDLE
        self._start_time: Optional[datetime] = None
        self._segment_started_at: Optional[datetime] = None
        self._accumulated_seconds = 0.0
        self._current_duration = 0.0
        self._current_pace: Optional[float] = None
        self._session: Optional[WorkoutSession] = None

    @property
    def state(self) -> WorkoutState:
        with self._lock:
            return self._state

    @property
    def session(self) -> Optional[WorkoutSession]:
        """The finalized session once the workout has ended."""

        with self._lock:
            return self._session

    def start(self) -> bool:
        with self._lock:
            if self._state is not WorkoutState.IDLE:
                logger.debug('workout_session.start_ignored state=%s', self._state.value)
                return False
            now = self._clock()
            self._tracker.reset()
            self._start_time = now
            self._segment_started_at = now
            self._accumulated_seconds = 0.0
            self._current_duration = 0.0
            self._current_pace = None
            self._state = WorkoutState.ACTIVE
            self._start_ticker()
        logger.info('workout_session.started user=%s', self.user_id)
        return True

    def pause(self) -> bool:
        with self._lock:
            if self._state is not WorkoutState.ACTIVE:
                logger.debug('workout_session.pause_ignored state=%s', self._state.value)
                return False
            self._accumulated_seconds = self._active_seconds(self._clock())
            self._segment_started_at = None
            self._current_duration = self._accumulated_seconds
            self._state = WorkoutState.PAUSED
        return True

    def resume(self) -> bool:
        with self._lock:
            if self._state is not WorkoutState.PAUSED:
                logger.debug('workout_session.resume_ignored state=%s', self._state.value)
                return False
            self._segment_started_at = self._clock()
            # Movement during the pause must not bridge into the next hop.
            self._tracker.rebase()
            self._state = WorkoutState.ACTIVE
        return True

    def ingest_fix(self, fix: PositionFix) -> float:
        """Feed one position fix; ignored unless the workout is active."""

        with self._lock:
            if self._state is not WorkoutState.ACTIVE:
                return self._tracker.cumulative_distance_m
            return self._tracker.ingest(fix)

    def tick(self) -> None:
        """Refresh the displayed duration and pace from the tracker."""

        with self._lock:
            if self._state is not WorkoutState.ACTIVE:
                return
            self._current_duration = self._active_seconds(self._clock())
            self._current_pace = pace_min_per_km(
                self._tracker.cumulative_distance_m, self._current_duration
            )

    def end(
        self,
        final_calories: float = 0.0,
        perceived_exertion: Optional[int] = None,
    ) -> Optional[WorkoutSession]:
        """Finish the workout. ``perceived_exertion`` is the runner's own RPE, if given."""

        if final_calories is None or final_calories < 0:
            raise ValueError('Calories must be a non-negative number.')
        if perceived_exertion is not None and (
            isinstance(perceived_exertion, bool)
            or not isinstance(perceived_exertion, int)
            or not 1 <= perceived_exertion <= 10
        ):
            raise ValueError('Perceived exertion must be an integer from 1 to 10.')

        with self._lock:
            if self._state not in (WorkoutState.ACTIVE, WorkoutState.PAUSED):
                logger.debug('workout_session.end_ignored state=%s', self._state.value)
                return None
            now = self._clock()
            duration = self._active_seconds(now)
            self._accumulated_seconds = duration
            self._segment_started_at = None
            self._current_duration = duration
            self._state = WorkoutState.ENDED
            self._stop_ticker.set()
            self._session = WorkoutSession(
                user_id=self.user_id,
                start_time=self._start_time,
                end_time=now,
                duration_seconds=duration,
                distance_meters=self._tracker.cumulative_distance_m,
                calories_kcal=float(final_calories),
                perceived_exertion=perceived_exertion,
            )
            session = self._session
            ticker = self._ticker

        # Joined outside the lock: the ticker may be waiting on it.
        if ticker is not None and ticker is not threading.current_thread():
            ticker.join(timeout=2.0)

        logger.info(
            'workout_session.ended user=%s distance=%.1fm duration=%.0fs',
            self.user_id,
            session.distance_meters,
            session.duration_seconds,
        )
        return session

    def snapshot(self) -> WorkoutSnapshot:
        with self._lock:
            return WorkoutSnapshot(
                state=self._state,
                started_at=self._start_time,
                distance_meters=self._tracker.cumulative_distance_m,
                duration_seconds=self._current_duration,
                pace_min_per_km=self._current_pace,
            )

    def _active_seconds(self, now: datetime) -> float:
        total = self._accumulated_seconds
        if self._segment_started_at is not None:
            total += max(0.0, (now - self._segment_started_at).total_seconds())
        return total

    def _start_ticker(self) -> None:
        if not self._tick_interval:
            return
        self._stop_ticker.clear()
        self._ticker = threading.Thread(target=self._ticker_loop, daemon=True)
        self._ticker.start()

    def _ticker_loop(self) -> None:  # pragma: no cover - background thread
        while not self._stop_ticker.wait(self._tick_interval):
            try:
                self.tick()
            except Exception:
                logger.warning('workout_session.tick_failed', exc_info=True)

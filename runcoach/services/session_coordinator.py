from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence

from ..errors import AnalysisError, PersistenceError
from ..models import Milestone, RunningGoal, WorkoutReflection, WorkoutSession
from .events import EventChannel, ReflectionSaved
from .storage_service import StorageService
from .workout_analysis import WorkoutAnalysisService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletedWorkout:
    session: WorkoutSession
    reflection: WorkoutReflection
    analysis_error: Optional[AnalysisError] = None
    session_saved: bool = False
    reflection_saved: bool = False
    listener_errors: List[Exception] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return self.reflection.source == 'fallback'

    @property
    def persisted(self) -> bool:
        return self.session_saved and self.reflection_saved


class SessionPersistenceCoordinator:
    """Write path for a finished workout.

    analyse (or fall back) -> enrich the session with the estimated exertion
    unless the runner gave one -> save the session -> save the reflection ->
    publish ``ReflectionSaved``.

    The two writes are sequential, not transactional. When one fails the
    pair stays in an in-memory pending buffer so the user can retry, and the
    :class:`PersistenceError` propagates to the caller. A pair whose listeners
    failed also stays pending; ``listener_errors`` reports them and ``retry``
    publishes the event again.
    """

    def __init__(
        self,
        storage: StorageService,
        analysis: WorkoutAnalysisService,
        reflection_events: EventChannel[ReflectionSaved],
    ) -> None:
        self._storage = storage
        self._analysis = analysis
        self._events = reflection_events
        self._pending: Dict[str, CompletedWorkout] = {}
        self._lock = threading.Lock()

    def complete_workout(
        self,
        session: WorkoutSession,
        user_goal: Optional[RunningGoal] = None,
        current_milestone: Optional[Milestone] = None,
        recent_sessions: Sequence[WorkoutSession] = (),
    ) -> CompletedWorkout:
        reflection, error = self._analysis.analyze_with_fallback(
            session, user_goal, current_milestone, recent_sessions
        )
        # The runner's own RPE wins over the estimate.
        if session.perceived_exertion is None:
            enriched = session.with_perceived_exertion(reflection.estimated_exertion)
        else:
            enriched = session
        outcome = CompletedWorkout(session=enriched, reflection=reflection, analysis_error=error)

        with self._lock:
            self._pending[enriched.id] = outcome
        return self._persist(outcome)

    def retry(self, session_id: str) -> CompletedWorkout:
        """Re-run the writes for a workout whose save failed earlier."""

        outcome = self.pending(session_id)
        if outcome is None:
            raise KeyError(session_id)
        return self._persist(outcome)

    def pending(self, session_id: str) -> Optional[CompletedWorkout]:
        with self._lock:
            return self._pending.get(session_id)

    def pending_for_user(self, user_id: str) -> List[CompletedWorkout]:
        with self._lock:
            return [item for item in self._pending.values() if item.session.user_id == user_id]

    def _persist(self, outcome: CompletedWorkout) -> CompletedWorkout:
        session = outcome.session
        reflection = outcome.reflection

        # Upserts are idempotent, so a retry rewrites the session as well.
        try:
            self._storage.save_session(session)
        except PersistenceError:
            logger.warning('session_coordinator.session_write_failed session=%s', session.id)
            self._remember(replace(outcome, session_saved=False, reflection_saved=False))
            raise

        try:
            self._storage.save_reflection(reflection)
        except PersistenceError:
            logger.warning(
                'session_coordinator.reflection_write_failed session=%s (session stored without reflection)',
                session.id,
            )
            self._remember(replace(outcome, session_saved=True, reflection_saved=False))
            raise

        failures = self._events.publish(
            ReflectionSaved(user_id=session.user_id, session=session, reflection=reflection)
        )
        saved = replace(
            outcome,
            session_saved=True,
            reflection_saved=True,
            listener_errors=[exc for _, exc in failures],
        )

        if failures:
            # Keep it so a retry publishes the event again.
            logger.warning(
                'session_coordinator.listeners_failed session=%s count=%d', session.id, len(failures)
            )
            self._remember(saved)
        else:
            with self._lock:
                self._pending.pop(session.id, None)
        logger.info(
            'session_coordinator.saved session=%s source=%s', session.id, reflection.source
        )
        return saved

    def _remember(self, outcome: CompletedWorkout) -> None:
        with self._lock:
            self._pending[outcome.session.id] = outcome

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..errors import AnalysisError, MalformedResponseError
from ..models import Milestone, Roadmap, UserProfile, utcnow
from . import milestones as engine
from .ai_service import AIService
from .events import ReflectionSaved
from .storage_service import StorageService

logger = logging.getLogger(__name__)

ROADMAP_HORIZON = timedelta(days=90)
MAX_MILESTONES = 8

_DEFAULT_MILESTONES = (
    ('First run', 'Complete a 15-minute run', 7),
    ('Run 1 km', 'Run 1 km without stopping', 14),
    ('Twice a week', 'Run twice a week for two weeks in a row', 28),
)


class RoadmapService:
    """Owns the user's roadmap and feeds workout results into it.

    Subscribe :meth:`handle_reflection_saved` to the reflection channel so an
    achieved milestone signal lands in the stored roadmap.
    """

    def __init__(
        self,
        storage: StorageService,
        ai_service: AIService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._ai = ai_service
        self._clock = clock

    def fetch_roadmap(self, user_id: str) -> Optional[Roadmap]:
        return self._storage.fetch_roadmap(user_id)

    def current_milestone(self, user_id: str) -> Optional[Milestone]:
        return engine.current_milestone(self._storage.fetch_roadmap(user_id))

    def generate_roadmap(self, profile: UserProfile) -> Roadmap:
        """Build a fresh roadmap, replacing any existing one wholesale."""

        now = self._clock()
        try:
            payload = self._ai.request_roadmap(profile)
            roadmap = self._roadmap_from_payload(profile, payload, now)
        except AnalysisError as exc:
            logger.warning('roadmap.generation_fallback user=%s: %s', profile.user_id, exc)
            roadmap = self.default_roadmap(profile, now)

        self._storage.replace_roadmap(roadmap)
        logger.info(
            'roadmap.generated user=%s milestones=%d', profile.user_id, len(roadmap.milestones)
        )
        return roadmap

    def default_roadmap(self, profile: UserProfile, now: Optional[datetime] = None) -> Roadmap:
        now = now or self._clock()
        milestones = [
            Milestone(title=title, description=description, target_date=now + timedelta(days=days))
            for title, description, days in _DEFAULT_MILESTONES
        ]
        return Roadmap(
            user_id=profile.user_id,
            title=f"Road to: {profile.goal.label}",
            goal=profile.goal,
            target_date=now + ROADMAP_HORIZON,
            milestones=milestones,
            created_at=now,
            updated_at=now,
        )

    def toggle_milestone(self, user_id: str, milestone_id: str) -> Optional[Roadmap]:
        roadmap = self._storage.fetch_roadmap(user_id)
        if roadmap is None:
            return None
        updated = engine.toggle(roadmap, milestone_id, now=self._clock())
        if updated is not roadmap:
            self._storage.save_roadmap(updated)
        return updated

    def handle_reflection_saved(self, event: ReflectionSaved) -> Optional[Roadmap]:
        signal = event.reflection.milestone_progress
        if signal is None or not signal.achieved:
            return None

        roadmap = self._storage.fetch_roadmap(event.user_id)
        if roadmap is None:
            logger.info('roadmap.progress_without_roadmap user=%s', event.user_id)
            return None

        updated = engine.apply_progress(roadmap, signal, now=self._clock())
        if updated is roadmap:
            return roadmap
        self._storage.save_roadmap(updated)
        return updated

    def _roadmap_from_payload(
        self, profile: UserProfile, payload: Dict[str, Any], now: datetime
    ) -> Roadmap:
        raw_items = payload.get('milestones')
        if not isinstance(raw_items, list):
            raise MalformedResponseError('Roadmap payload is missing a milestones list.')

        items: List[Milestone] = []
        for raw in raw_items[:MAX_MILESTONES]:
            if not isinstance(raw, dict) or not str(raw.get('title') or '').strip():
                continue
            days = raw.get('days_from_now')
            target = None
            if isinstance(days, (int, float)) and not isinstance(days, bool) and days >= 0:
                target = now + timedelta(days=int(days))
            description = raw.get('description')
            items.append(
                Milestone(
                    title=str(raw['title']).strip(),
                    description=str(description).strip() if description else None,
                    target_date=target,
                )
            )

        if not items:
            raise MalformedResponseError('Roadmap payload contained no usable milestones.')

        title = str(payload.get('title') or '').strip() or f"Road to: {profile.goal.label}"
        return Roadmap(
            user_id=profile.user_id,
            title=title,
            goal=profile.goal,
            target_date=now + ROADMAP_HORIZON,
            milestones=items,
            created_at=now,
            updated_at=now,
        )

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
from types import SimpleNamespace
from unittest import TestCase

from runcoach.config import Settings
from runcoach.models import (
    MilestoneProgressSignal,
    RunningGoal,
    UserProfile,
    WorkoutReflection,
    WorkoutSession,
)
from runcoach.services.ai_service import AIService
from runcoach.services.events import ReflectionSaved
from runcoach.services.roadmap_service import MAX_MILESTONES, ROADMAP_HORIZON, RoadmapService
from runcoach.services.storage_service import StorageService

NOW = datetime(2025, 11, 13, 9, 0, tzinfo=timezone.utc)


def _ai(text=None) -> AIService:
    if text is None:
        return AIService(Settings())
    models = SimpleNamespace(generate_content=lambda model, contents, config=None: SimpleNamespace(text=text))
    return AIService(Settings(), client=SimpleNamespace(models=models))


def _event(signal: MilestoneProgressSignal) -> ReflectionSaved:
    session = WorkoutSession(
        user_id='user-1',
        start_time=NOW,
        end_time=NOW + timedelta(minutes=8),
        duration_seconds=480.0,
        distance_meters=1100.0,
        calories_kcal=80.0,
    )
    reflection = WorkoutReflection(
        workout_session_id=session.id,
        estimated_exertion=5,
        narrative_text='Good job.',
        advice_text='Rest.',
        milestone_progress=signal,
    )
    return ReflectionSaved(user_id='user-1', session=session, reflection=reflection)


class RoadmapServiceTests(TestCase):
    def setUp(self) -> None:
        self.tmpdir = TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.storage = StorageService(Settings(data_dir=Path(self.tmpdir.name)))
        self.profile = UserProfile(user_id='user-1', goal=RunningGoal.BUILD_STAMINA)

    def _service(self, text=None) -> RoadmapService:
        return RoadmapService(self.storage, _ai(text), clock=lambda: NOW)

    def test_default_roadmap_without_ai(self) -> None:
        roadmap = self._service().generate_roadmap(self.profile)

        self.assertEqual('Road to: Build stamina', roadmap.title)
        self.assertEqual(['First run', 'Run 1 km', 'Twice a week'], [item.title for item in roadmap.milestones])
        self.assertEqual(NOW + timedelta(days=7), roadmap.milestones[0].target_date)
        self.assertEqual(NOW + ROADMAP_HORIZON, roadmap.target_date)
        self.assertEqual(roadmap, self.storage.fetch_roadmap('user-1'))

    def test_ai_payload_becomes_roadmap(self) -> None:
        payload = {
            'title': 'Your first 5K',
            'milestones': [
                {'title': 'Walk-run 20 minutes', 'description': 'Alternate 1 min run / 2 min walk', 'days_from_now': 7},
                {'title': '   '},
                {'title': 'Run 2 km', 'description': 'Run 2 km without stopping', 'days_from_now': 'soon'},
                'not a milestone',
            ],
        }
        roadmap = self._service(json.dumps(payload)).generate_roadmap(self.profile)

        self.assertEqual('Your first 5K', roadmap.title)
        self.assertEqual(['Walk-run 20 minutes', 'Run 2 km'], [item.title for item in roadmap.milestones])
        self.assertEqual(NOW + timedelta(days=7), roadmap.milestones[0].target_date)
        self.assertIsNone(roadmap.milestones[1].target_date)
        self.assertEqual(RunningGoal.BUILD_STAMINA, roadmap.goal)

    def test_ai_payload_is_capped(self) -> None:
        payload = {'milestones': [{'title': f'Step {index}'} for index in range(20)]}

        roadmap = self._service(json.dumps(payload)).generate_roadmap(self.profile)

        self.assertEqual(MAX_MILESTONES, len(roadmap.milestones))
        self.assertEqual('Road to: Build stamina', roadmap.title)

    def test_unusable_payload_falls_back_to_default(self) -> None:
        for payload in ({'title': 'No milestones'}, {'milestones': []}, {'milestones': [{'title': ''}]}):
            with self.subTest(payload=payload):
                roadmap = self._service(json.dumps(payload)).generate_roadmap(self.profile)
                self.assertEqual('First run', roadmap.milestones[0].title)

    def test_generate_replaces_existing_roadmap(self) -> None:
        service = self._service()
        first = service.generate_roadmap(self.profile)
        second = service.generate_roadmap(self.profile)

        self.assertNotEqual(first.id, second.id)
        self.assertEqual(second.id, service.fetch_roadmap('user-1').id)

    def test_reflection_event_completes_milestone(self) -> None:
        service = self._service()
        roadmap = service.generate_roadmap(self.profile)
        target = roadmap.milestones[1]

        updated = service.handle_reflection_saved(
            _event(MilestoneProgressSignal(achieved=True, milestone_id=target.id))
        )

        self.assertTrue(updated.find_milestone(target.id).completed)
        self.assertTrue(self.storage.fetch_roadmap('user-1').find_milestone(target.id).completed)
        self.assertEqual(roadmap.milestones[0].id, service.current_milestone('user-1').id)

    def test_reflection_event_without_achievement_or_roadmap_is_ignored(self) -> None:
        service = self._service()

        self.assertIsNone(service.handle_reflection_saved(_event(MilestoneProgressSignal(achieved=True))))

        service.generate_roadmap(self.profile)
        self.assertIsNone(service.handle_reflection_saved(_event(MilestoneProgressSignal(achieved=False))))
        self.assertEqual(0, self.storage.fetch_roadmap('user-1').completed_count)

    def test_toggle_is_persisted(self) -> None:
        service = self._service()
        self.assertIsNone(service.toggle_milestone('user-1', 'anything'))

        roadmap = service.generate_roadmap(self.profile)
        milestone_id = roadmap.milestones[2].id

        toggled = service.toggle_milestone('user-1', milestone_id)

        self.assertTrue(toggled.find_milestone(milestone_id).completed)
        self.assertEqual(NOW, toggled.find_milestone(milestone_id).completed_at)
        self.assertTrue(self.storage.fetch_roadmap('user-1').find_milestone(milestone_id).completed)

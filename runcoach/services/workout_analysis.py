from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import AnalysisError, MalformedResponseError
from ..models import (
    Milestone,
    MilestoneProgressSignal,
    RunningGoal,
    WorkoutReflection,
    WorkoutSession,
)
from .ai_service import AIService

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(days=7)

SYSTEM_PROMPT = (
    "You are an AI running coach supporting beginner runners. Analyse the user's workout data "
    "and respond with encouragement and concrete advice.\n\n"
    "Respond with a single JSON object in exactly this shape:\n"
    "{\n"
    '  "estimatedRPE": <integer 1-10>,\n'
    '  "reflection": "<2-3 positive, encouraging sentences about today\'s workout>",\n'
    '  "suggestions": "<2-3 sentences of concrete advice for the next run>",\n'
    '  "milestoneProgress": {\n'
    '    "isAchieved": <true/false>,\n'
    '    "achievementMessage": "<message about the milestone status>"\n'
    "  }\n"
    "}\n\n"
    "Estimating RPE (rate of perceived exertion):\n"
    "- Fast pace or long distance -> higher RPE (7-10)\n"
    "- Slow pace or short distance -> lower RPE (1-6)\n"
    "- Rate beginners conservatively\n\n"
    "Deciding milestone achievement:\n"
    "- Read the current milestone's title and description\n"
    "- Compare them with today's distance, duration and pace\n"
    "- Set isAchieved to true only when today's data meets an explicit, literal condition "
    "stated in the milestone\n"
    '- Example: "Run 1 km" -> true only if the distance is at least 1 km\n'
    '- Example: "Complete a 15-minute run" -> true only if the duration is at least 15 minutes\n'
    "- If the condition is unclear, unstated or not yet met, set isAchieved to false"
)


class WorkoutAnalysisService:
    """Turn a finished workout into a :class:`WorkoutReflection`.

    ``analyze`` talks to the model and raises :class:`AnalysisError` on any
    failure. ``fallback_reflection`` is the deterministic, rule-based
    substitute, and ``analyze_with_fallback`` combines both so callers always
    receive a reflection.
    """

    def __init__(self, ai_service: AIService) -> None:
        self._ai = ai_service

    def analyze(
        self,
        session: WorkoutSession,
        user_goal: Optional[RunningGoal] = None,
        current_milestone: Optional[Milestone] = None,
        recent_sessions: Sequence[WorkoutSession] = (),
    ) -> WorkoutReflection:
        prompt = self.build_user_prompt(session, user_goal, current_milestone, recent_sessions)
        raw = self._ai.generate_text(SYSTEM_PROMPT, prompt, require_json=True)
        return self.parse_reflection(
            raw,
            workout_session_id=session.id,
            milestone_id=current_milestone.id if current_milestone else None,
        )

    def analyze_with_fallback(
        self,
        session: WorkoutSession,
        user_goal: Optional[RunningGoal] = None,
        current_milestone: Optional[Milestone] = None,
        recent_sessions: Sequence[WorkoutSession] = (),
    ) -> Tuple[WorkoutReflection, Optional[AnalysisError]]:
        try:
            reflection = self.analyze(session, user_goal, current_milestone, recent_sessions)
        except AnalysisError as exc:
            logger.warning(
                'workout_analysis.fallback_used session=%s reason=%s: %s',
                session.id,
                type(exc).__name__,
                exc,
            )
            return self.fallback_reflection(session, current_milestone), exc
        return reflection, None

    def build_user_prompt(
        self,
        session: WorkoutSession,
        user_goal: Optional[RunningGoal],
        current_milestone: Optional[Milestone],
        recent_sessions: Sequence[WorkoutSession],
    ) -> str:
        distance_km = session.distance_meters / 1000.0
        duration_min = session.duration_seconds / 60.0
        pace = duration_min / distance_km if distance_km > 0 else 0.0

        lines: List[str] = [
            "Today's workout:",
            f"- Distance: {distance_km:.2f} km",
            f"- Duration: {duration_min:.1f} min",
            f"- Pace: {pace:.1f} min/km",
            f"- Calories: {int(session.calories_kcal)} kcal",
        ]

        if user_goal is not None:
            lines += ['', "User's goal:", f"- {user_goal.label}"]

        if current_milestone is not None:
            lines += ['', 'Current milestone:', f"- {current_milestone.title}"]
            if current_milestone.description:
                lines.append(f"- Details: {current_milestone.description}")

        recent = self._recent_window(session, recent_sessions)
        if recent:
            total_km = sum(item.distance_meters for item in recent) / 1000.0
            lines += [
                '',
                'Recent workouts (past 7 days):',
                f"- Count: {len(recent)}",
                f"- Total distance: {total_km:.2f} km",
            ]

        return '\n'.join(lines)

    def parse_reflection(
        self,
        raw: str,
        workout_session_id: str,
        milestone_id: Optional[str] = None,
    ) -> WorkoutReflection:
        data = self._ai.parse_json_object(raw)

        rpe = data.get('estimatedRPE')
        if isinstance(rpe, float) and rpe.is_integer():
            rpe = int(rpe)
        # bool is an int subclass; "true" is not a valid RPE.
        if isinstance(rpe, bool) or not isinstance(rpe, int):
            raise MalformedResponseError(f'estimatedRPE must be an integer, got {rpe!r}.')
        if not 1 <= rpe <= 10:
            raise MalformedResponseError(f'Invalid RPE value: {rpe}.')

        reflection = _require_str(data, 'reflection')
        suggestions = _require_str(data, 'suggestions')

        progress = data.get('milestoneProgress')
        if not isinstance(progress, dict):
            raise MalformedResponseError('milestoneProgress must be an object.')
        achieved = progress.get('isAchieved')
        if not isinstance(achieved, bool):
            raise MalformedResponseError(f'isAchieved must be a boolean, got {achieved!r}.')
        message = _require_str(progress, 'achievementMessage')

        return WorkoutReflection(
            workout_session_id=workout_session_id,
            estimated_exertion=rpe,
            narrative_text=reflection,
            advice_text=suggestions,
            milestone_progress=MilestoneProgressSignal(
                achieved=achieved,
                achievement_message=message,
                milestone_id=milestone_id,
            ),
            source='ai',
        )

    def fallback_reflection(
        self,
        session: WorkoutSession,
        current_milestone: Optional[Milestone] = None,
    ) -> WorkoutReflection:
        distance_km = session.distance_meters / 1000.0
        duration_min = session.duration_seconds / 60.0

        return WorkoutReflection(
            workout_session_id=session.id,
            estimated_exertion=fallback_rpe(session.distance_meters),
            narrative_text=(
                f"Great work today! You covered {distance_km:.2f} km in {duration_min:.1f} minutes. "
                "Every run builds the habit, so be proud of showing up."
            ),
            advice_text=(
                "Keep an easy, conversational pace next time and focus on finishing comfortably. "
                "Rest well and stay hydrated before your next run."
            ),
            milestone_progress=MilestoneProgressSignal(
                achieved=False,
                achievement_message='Milestone progress could not be assessed automatically this time.',
                milestone_id=current_milestone.id if current_milestone else None,
            ),
            source='fallback',
        )

    @staticmethod
    def _recent_window(
        session: WorkoutSession, recent_sessions: Iterable[WorkoutSession]
    ) -> List[WorkoutSession]:
        window_start = session.start_time - RECENT_WINDOW
        recent = []
        for item in recent_sessions:
            if item.id == session.id or item.start_time is None:
                continue
            if window_start <= item.start_time <= session.start_time:
                recent.append(item)
        return recent


def fallback_rpe(distance_meters: float) -> int:
    """RPE by distance bracket: <1 km 4, <3 km 5, <5 km 6, otherwise 7."""

    if distance_meters < 1000:
        return 4
    if distance_meters < 3000:
        return 5
    if distance_meters < 5000:
        return 6
    return 7


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise MalformedResponseError(f'{key} must be a string, got {value!r}.')
    return value

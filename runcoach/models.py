"""Domain records for runcoach.

Every record is an immutable dataclass. Changes produce new objects via
:func:`dataclasses.replace`, and each record converts to and from the
snake_case dictionaries kept in the record store.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple
from uuid import uuid4


DEFAULT_GOAL_KEY = 'health_improvement'
DEFAULT_IDEAL_FREQUENCY = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Coerce an ISO-8601 string (or datetime) into an aware UTC datetime."""

    if raw is None or raw == '':
        return None
    if isinstance(raw, datetime):
        dt = raw
    else:
        text = str(raw).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def pace_min_per_km(distance_meters: float, duration_seconds: float) -> Optional[float]:
    """Minutes per kilometre, or ``None`` when no distance has been covered."""

    if distance_meters <= 0:
        return None
    return (duration_seconds / 60.0) / (distance_meters / 1000.0)


class RunningGoal(str, Enum):
    LOSE_WEIGHT = 'lose_weight'
    BUILD_STAMINA = 'build_stamina'
    STRESS_RELIEF = 'stress_relief'
    COMPLETE_DISTANCE = 'complete_distance'
    HEALTH_IMPROVEMENT = 'health_improvement'

    @property
    def label(self) -> str:
        return _GOAL_LABELS[self]

    @classmethod
    def parse(cls, raw: Any) -> Optional['RunningGoal']:
        if isinstance(raw, cls):
            return raw
        if not raw:
            return None
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return None


_GOAL_LABELS = {
    RunningGoal.LOSE_WEIGHT: 'Lose weight',
    RunningGoal.BUILD_STAMINA: 'Build stamina',
    RunningGoal.STRESS_RELIEF: 'Relieve stress',
    RunningGoal.COMPLETE_DISTANCE: 'Finish a specific distance',
    RunningGoal.HEALTH_IMPROVEMENT: 'Improve overall health',
}


@dataclass(frozen=True)
class PositionFix:
    timestamp: datetime
    latitude: float
    longitude: float
    horizontal_accuracy_m: float


@dataclass(frozen=True)
class TrackerState:
    last_accepted_fix: Optional[PositionFix] = None
    cumulative_distance_m: float = 0.0


@dataclass(frozen=True)
class WorkoutSession:
    user_id: str
    start_time: datetime
    end_time: datetime
    duration_seconds: float
    distance_meters: float
    calories_kcal: float
    perceived_exertion: Optional[int] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.duration_seconds < 0 or self.distance_meters < 0 or self.calories_kcal < 0:
            raise ValueError('Workout duration, distance and calories must be non-negative.')
        if self.perceived_exertion is not None and not 1 <= self.perceived_exertion <= 10:
            raise ValueError(f'Perceived exertion must be 1-10, got {self.perceived_exertion}.')

    @property
    def pace_min_per_km(self) -> Optional[float]:
        return pace_min_per_km(self.distance_meters, self.duration_seconds)

    def with_perceived_exertion(self, value: int) -> 'WorkoutSession':
        return replace(self, perceived_exertion=value)

    def to_record(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'start_time': isoformat(self.start_time),
            'end_time': isoformat(self.end_time),
            'duration_seconds': self.duration_seconds,
            'distance_meters': self.distance_meters,
            'calories_kcal': self.calories_kcal,
            'perceived_exertion': self.perceived_exertion,
            'created_at': isoformat(self.created_at),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> 'WorkoutSession':
        exertion = record.get('perceived_exertion')
        return cls(
            id=str(record['id']),
            user_id=str(record['user_id']),
            start_time=parse_timestamp(record.get('start_time')),
            end_time=parse_timestamp(record.get('end_time')),
            duration_seconds=float(record.get('duration_seconds') or 0.0),
            distance_meters=float(record.get('distance_meters') or 0.0),
            calories_kcal=float(record.get('calories_kcal') or 0.0),
            perceived_exertion=int(exertion) if exertion is not None else None,
            created_at=parse_timestamp(record.get('created_at')) or utcnow(),
        )


@dataclass(frozen=True)
class MilestoneProgressSignal:
    achieved: bool
    achievement_message: str = ''
    milestone_id: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            'milestone_id': self.milestone_id,
            'is_achieved': self.achieved,
            'achievement_message': self.achievement_message,
        }

    @classmethod
    def from_record(cls, record: Optional[Mapping[str, Any]]) -> Optional['MilestoneProgressSignal']:
        if not record:
            return None
        milestone_id = record.get('milestone_id')
        return cls(
            achieved=bool(record.get('is_achieved')),
            achievement_message=str(record.get('achievement_message') or ''),
            milestone_id=str(milestone_id) if milestone_id else None,
        )


@dataclass(frozen=True)
class WorkoutReflection:
    workout_session_id: str
    estimated_exertion: int
    narrative_text: str
    advice_text: str
    milestone_progress: Optional[MilestoneProgressSignal] = None
    source: str = 'ai'
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not 1 <= self.estimated_exertion <= 10:
            raise ValueError(f'Estimated exertion must be 1-10, got {self.estimated_exertion}.')

    def to_record(self) -> Dict[str, Any]:
        progress = self.milestone_progress
        return {
            'id': self.id,
            'workout_session_id': self.workout_session_id,
            'estimated_exertion': self.estimated_exertion,
            'narrative_text': self.narrative_text,
            'advice_text': self.advice_text,
            'milestone_progress': progress.to_record() if progress else None,
            'source': self.source,
            'created_at': isoformat(self.created_at),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> 'WorkoutReflection':
        return cls(
            id=str(record['id']),
            workout_session_id=str(record['workout_session_id']),
            estimated_exertion=int(record['estimated_exertion']),
            narrative_text=str(record.get('narrative_text') or ''),
            advice_text=str(record.get('advice_text') or ''),
            milestone_progress=MilestoneProgressSignal.from_record(record.get('milestone_progress')),
            source=str(record.get('source') or 'ai'),
            created_at=parse_timestamp(record.get('created_at')) or utcnow(),
        )


@dataclass(frozen=True)
class Milestone:
    title: str
    description: Optional[str] = None
    target_date: Optional[datetime] = None
    completed: bool = False
    completed_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        if self.completed != (self.completed_at is not None):
            raise ValueError(
                f'Milestone {self.id} is inconsistent: completed={self.completed} '
                f'but completed_at={self.completed_at!r}'
            )

    def to_record(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'target_date': isoformat(self.target_date),
            'completed': self.completed,
            'completed_at': isoformat(self.completed_at),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> 'Milestone':
        return cls(
            id=str(record['id']),
            title=str(record.get('title') or ''),
            description=record.get('description') or None,
            target_date=parse_timestamp(record.get('target_date')),
            completed=bool(record.get('completed')),
            completed_at=parse_timestamp(record.get('completed_at')),
        )


@dataclass(frozen=True)
class Roadmap:
    user_id: str
    title: str
    goal: RunningGoal
    milestones: Tuple[Milestone, ...] = ()
    target_date: Optional[datetime] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        # Callers often pass lists; the roadmap keeps an immutable ordering.
        object.__setattr__(self, 'milestones', tuple(self.milestones))

    @property
    def completed_count(self) -> int:
        return sum(1 for milestone in self.milestones if milestone.completed)

    @property
    def progress_percentage(self) -> float:
        if not self.milestones:
            return 0.0
        return self.completed_count / len(self.milestones) * 100

    def find_milestone(self, milestone_id: str) -> Optional[Milestone]:
        for milestone in self.milestones:
            if milestone.id == milestone_id:
                return milestone
        return None

    def to_record(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'title': self.title,
            'goal': self.goal.value,
            'target_date': isoformat(self.target_date),
            'milestones': [milestone.to_record() for milestone in self.milestones],
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> 'Roadmap':
        milestones: Iterable[Mapping[str, Any]] = record.get('milestones') or []
        return cls(
            id=str(record['id']),
            user_id=str(record['user_id']),
            title=str(record.get('title') or ''),
            goal=RunningGoal.parse(record.get('goal')) or RunningGoal(DEFAULT_GOAL_KEY),
            target_date=parse_timestamp(record.get('target_date')),
            milestones=tuple(Milestone.from_record(item) for item in milestones),
            created_at=parse_timestamp(record.get('created_at')) or utcnow(),
            updated_at=parse_timestamp(record.get('updated_at')) or utcnow(),
        )


@dataclass(frozen=True)
class UserProfile:
    """Running profile with defaults already resolved.

    ``from_record`` is the single place missing profile fields receive their
    defaults, so consumers can rely on ``goal`` and ``ideal_frequency``.
    """

    user_id: str
    goal: RunningGoal = RunningGoal.HEALTH_IMPROVEMENT
    ideal_frequency: int = DEFAULT_IDEAL_FREQUENCY
    age: Optional[int] = None
    height_cm: Optional[float] = None
    weight_kg: Optional[float] = None
    available_minutes_per_week: Optional[int] = None
    current_frequency: Optional[int] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'goal': self.goal.value,
            'ideal_frequency': self.ideal_frequency,
            'age': self.age,
            'height_cm': self.height_cm,
            'weight_kg': self.weight_kg,
            'available_minutes_per_week': self.available_minutes_per_week,
            'current_frequency': self.current_frequency,
        }

    @classmethod
    def from_record(cls, user_id: str, record: Optional[Mapping[str, Any]]) -> 'UserProfile':
        record = record or {}
        ideal_frequency = _optional_int(record.get('ideal_frequency'))
        if not ideal_frequency or ideal_frequency < 1:
            ideal_frequency = DEFAULT_IDEAL_FREQUENCY
        return cls(
            user_id=user_id,
            goal=RunningGoal.parse(record.get('goal')) or RunningGoal(DEFAULT_GOAL_KEY),
            ideal_frequency=ideal_frequency,
            age=_optional_int(record.get('age')),
            height_cm=_optional_float(record.get('height_cm')),
            weight_kg=_optional_float(record.get('weight_kg')),
            available_minutes_per_week=_optional_int(record.get('available_minutes_per_week')),
            current_frequency=_optional_int(record.get('current_frequency')),
        )


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from ..models import WorkoutSession, utcnow

WEEK = timedelta(days=7)


@dataclass(frozen=True)
class WeeklyProgress:
    workouts: int
    distance_meters: float
    ideal_frequency: int
    progress_percentage: float
    next_step: str

    def to_dict(self) -> dict:
        return {
            'workouts': self.workouts,
            'distance_km': round(self.distance_meters / 1000.0, 1),
            'ideal_frequency': self.ideal_frequency,
            'progress_percentage': round(self.progress_percentage, 1),
            'next_step': self.next_step,
        }


def weekly_progress(
    sessions: Iterable[WorkoutSession],
    ideal_frequency: int,
    now: Optional[datetime] = None,
) -> WeeklyProgress:
    """Summarise the trailing seven days against the weekly frequency target."""

    now = now or utcnow()
    week_start = now - WEEK
    recent = [item for item in sessions if item.start_time and item.start_time >= week_start]

    workouts = len(recent)
    distance = sum(item.distance_meters for item in recent)
    frequency = max(1, ideal_frequency)
    percentage = min(workouts / frequency, 1.0) * 100

    remaining = max(0, frequency - workouts)
    if remaining == 0:
        next_step = "Weekly goal reached!"
    elif remaining == 1:
        next_step = "One more run to reach this week's goal."
    else:
        next_step = f"{remaining} more runs to reach this week's goal."

    return WeeklyProgress(
        workouts=workouts,
        distance_meters=distance,
        ideal_frequency=frequency,
        progress_percentage=percentage,
        next_step=next_step,
    )

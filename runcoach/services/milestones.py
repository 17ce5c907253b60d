"""Milestone progression rules.

Both operations return a new :class:`Roadmap`; the input is never mutated.
They are independent and last-write-wins: a manual toggle does not block a
later achieved signal for the same milestone, nor the other way round.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Optional

from ..models import Milestone, MilestoneProgressSignal, Roadmap, utcnow

logger = logging.getLogger(__name__)


def current_milestone(roadmap: Optional[Roadmap]) -> Optional[Milestone]:
    """First milestone, in roadmap order, that is not completed yet."""

    if roadmap is None:
        return None
    for milestone in roadmap.milestones:
        if not milestone.completed:
            return milestone
    return None


def apply_progress(
    roadmap: Roadmap,
    signal: Optional[MilestoneProgressSignal],
    now: Optional[datetime] = None,
) -> Roadmap:
    """Mark the signalled milestone as completed.

    Targets ``signal.milestone_id`` when present, otherwise the first
    uncompleted milestone. Safe to call repeatedly with the same signal.
    """

    if signal is None or not signal.achieved:
        return roadmap

    if signal.milestone_id:
        target = roadmap.find_milestone(signal.milestone_id)
        if target is None:
            logger.warning(
                'milestones.unknown_milestone roadmap=%s milestone=%s',
                roadmap.id,
                signal.milestone_id,
            )
            return roadmap
    else:
        target = current_milestone(roadmap)
        if target is None:
            return roadmap

    if target.completed:
        return roadmap

    now = now or utcnow()
    updated = replace(target, completed=True, completed_at=now)
    logger.info('milestones.achieved roadmap=%s milestone=%s', roadmap.id, target.id)
    return _replace_milestone(roadmap, updated, now)


def toggle(roadmap: Roadmap, milestone_id: str, now: Optional[datetime] = None) -> Roadmap:
    """Flip a milestone's completion for manual correction by the user."""

    target = roadmap.find_milestone(milestone_id)
    if target is None:
        logger.warning('milestones.toggle_unknown roadmap=%s milestone=%s', roadmap.id, milestone_id)
        return roadmap

    now = now or utcnow()
    if target.completed:
        updated = replace(target, completed=False, completed_at=None)
    else:
        updated = replace(target, completed=True, completed_at=now)
    return _replace_milestone(roadmap, updated, now)


def _replace_milestone(roadmap: Roadmap, updated: Milestone, now: datetime) -> Roadmap:
    milestones = tuple(updated if item.id == updated.id else item for item in roadmap.milestones)
    return replace(roadmap, milestones=milestones, updated_at=now)

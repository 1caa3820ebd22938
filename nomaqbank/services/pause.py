"""
Pause sub-lifecycle of an exam participation.

``before_pause -> during_pause -> after_pause``, strictly forward. While
``before_pause`` only the first half of the questions (indices below the
midpoint) is answerable; during the pause nothing is.
"""
from typing import Any, Dict, Optional

from nomaqbank.core.config import settings
from nomaqbank.core.errors import InvalidState
from nomaqbank.models.orm import Exam, PausePhase

NEXT_PHASE = {
    PausePhase.BEFORE_PAUSE: PausePhase.DURING_PAUSE,
    PausePhase.DURING_PAUSE: PausePhase.AFTER_PAUSE,
    PausePhase.AFTER_PAUSE: None,
}

LOCKED_UNTIL_PAUSE = "This question is unlocked after the pause"
LOCKED_DURING_PAUSE = "Questions are locked during the pause"


def midpoint(total_questions: int) -> int:
    return total_questions // 2


def pause_policy(enable_pause: bool, minutes: Optional[int]) -> Optional[int]:
    """Effective pause length in minutes, or ``None`` when pausing is off."""
    if not enable_pause:
        return None
    return min(minutes or settings.DEFAULT_PAUSE_MINUTES, settings.MAX_PAUSE_MINUTES)


def pause_minutes(exam: Exam) -> int:
    return exam.pause_duration_minutes or settings.DEFAULT_PAUSE_MINUTES


def advance(current: Optional[PausePhase], target: PausePhase) -> PausePhase:
    if current is None or NEXT_PHASE[current] != target:
        if target == PausePhase.DURING_PAUSE:
            raise InvalidState("The pause can only be started once, before it has been taken")
        raise InvalidState("The exam is not paused")
    return target


def question_access(phase: Optional[PausePhase], index: int, total_questions: int) -> Dict[str, Any]:
    if phase is None:
        return {"allowed": True}
    if phase == PausePhase.BEFORE_PAUSE:
        if index >= midpoint(total_questions):
            return {"allowed": False, "reason": LOCKED_UNTIL_PAUSE}
        return {"allowed": True}
    if phase == PausePhase.DURING_PAUSE:
        return {"allowed": False, "reason": LOCKED_DURING_PAUSE}
    if phase == PausePhase.AFTER_PAUSE:
        return {"allowed": True}
    raise ValueError(f"Unhandled pause phase {phase!r}")

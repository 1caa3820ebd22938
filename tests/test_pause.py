import pytest

from nomaqbank.core.errors import InvalidState
from nomaqbank.models.orm import PausePhase
from nomaqbank.services import pause
from nomaqbank.services.scoring import percentage


@pytest.mark.parametrize("total,expected", [(1, 0), (4, 2), (5, 2), (9, 4), (100, 50)])
def test_midpoint(total, expected):
    assert pause.midpoint(total) == expected


@pytest.mark.parametrize(
    "phase,index,allowed",
    [
        (PausePhase.BEFORE_PAUSE, 0, True),
        (PausePhase.BEFORE_PAUSE, 1, True),
        (PausePhase.BEFORE_PAUSE, 2, False),
        (PausePhase.BEFORE_PAUSE, 3, False),
        (PausePhase.DURING_PAUSE, 0, False),
        (PausePhase.AFTER_PAUSE, 3, True),
        (None, 3, True),
    ],
)
def test_question_access_for_four_questions(phase, index, allowed):
    assert pause.question_access(phase, index, 4)["allowed"] is allowed


def test_denials_carry_a_reason():
    assert pause.question_access(PausePhase.BEFORE_PAUSE, 2, 4)["reason"] == pause.LOCKED_UNTIL_PAUSE
    assert pause.question_access(PausePhase.DURING_PAUSE, 0, 4)["reason"] == pause.LOCKED_DURING_PAUSE


def test_phases_only_move_forward():
    assert pause.advance(PausePhase.BEFORE_PAUSE, PausePhase.DURING_PAUSE) == PausePhase.DURING_PAUSE
    assert pause.advance(PausePhase.DURING_PAUSE, PausePhase.AFTER_PAUSE) == PausePhase.AFTER_PAUSE
    with pytest.raises(InvalidState):
        pause.advance(PausePhase.AFTER_PAUSE, PausePhase.DURING_PAUSE)
    with pytest.raises(InvalidState):
        pause.advance(PausePhase.BEFORE_PAUSE, PausePhase.AFTER_PAUSE)
    with pytest.raises(InvalidState):
        pause.advance(None, PausePhase.DURING_PAUSE)


def test_pause_policy_defaults_and_clamps():
    assert pause.pause_policy(False, 30) is None
    assert pause.pause_policy(True, None) == 15
    assert pause.pause_policy(True, 20) == 20
    assert pause.pause_policy(True, 90) == 60


@pytest.mark.parametrize("correct,total,expected", [(0, 4, 0), (1, 2, 50), (1, 3, 33), (2, 3, 67), (1, 8, 13), (4, 4, 100), (0, 0, 0)])
def test_percentage_rounds_half_up(correct, total, expected):
    assert percentage(correct, total) == expected

import random
from datetime import timedelta

import pytest

from nomaqbank.core.errors import (
    AccessExpired, InvalidInput, InvalidState, NotFound, RateLimited, Unauthorized,
)
from nomaqbank.models.orm import TrainingParticipation, TrainingStatus
from nomaqbank.services import training
from tests.conftest import NOW


@pytest.fixture
def trainee(user, give_access):
    give_access(user, "training")
    return user


@pytest.fixture
def bank(make_questions):
    return make_questions(12, domain="Cardiology", objective="Arrhythmia") + make_questions(
        8, domain="Neurology", correct="C", objective="Stroke"
    )


def test_requires_training_access(db, user, give_access, bank):
    with pytest.raises(AccessExpired):
        training.create_session(db, user, 5, now=NOW)

    give_access(user, "exam")
    with pytest.raises(AccessExpired):
        training.create_session(db, user, 5, now=NOW)


@pytest.mark.parametrize("count", [4, 21, 0, 5.5, True])
def test_question_count_bounds(db, trainee, bank, count):
    with pytest.raises(InvalidInput):
        training.create_session(db, trainee, count, now=NOW)


def test_not_enough_questions(db, trainee, bank):
    with pytest.raises(InvalidInput):
        training.create_session(db, trainee, 10, domain="Neurology", now=NOW)


def test_session_snapshots_a_random_sample(db, trainee, bank):
    created = training.create_session(db, trainee, 8, domain="Neurology", now=NOW, rng=random.Random(7))

    session = db.get(TrainingParticipation, created["session_id"])
    assert sorted(session.question_ids) == sorted(bank[12:])
    assert session.domain == "Neurology"
    assert session.expires_at == NOW + timedelta(hours=24)
    assert created["expires_at"] == session.expires_at


def test_objectives_filter(db, trainee, bank):
    created = training.create_session(db, trainee, 5, objectives=["stroke "], now=NOW)
    assert set(created["question_ids"]) <= set(bank[12:])


def test_one_live_session_at_a_time(db, trainee, bank):
    first = training.create_session(db, trainee, 5, now=NOW)
    with pytest.raises(InvalidState):
        training.create_session(db, trainee, 5, now=NOW + timedelta(minutes=5))

    later = NOW + timedelta(hours=25)
    second = training.create_session(db, trainee, 5, now=later)
    assert db.get(TrainingParticipation, first["session_id"]).status == TrainingStatus.ABANDONED
    assert second["session_id"] != first["session_id"]


def test_rate_limit(db, trainee, admin, bank):
    for i in range(10):
        created = training.create_session(db, trainee, 5, now=NOW + timedelta(minutes=i))
        training.abandon_session(db, trainee, created["session_id"])

    with pytest.raises(RateLimited) as exc:
        training.create_session(db, trainee, 5, now=NOW + timedelta(minutes=30))
    assert exc.value.retry_after_minutes == 60

    assert training.create_session(db, trainee, 5, now=NOW + timedelta(minutes=61))["session_id"]

    for i in range(11):
        created = training.create_session(db, admin, 5, now=NOW + timedelta(minutes=i))
        training.abandon_session(db, admin, created["session_id"])


def test_answers_score_and_history(db, trainee, bank):
    created = training.create_session(db, trainee, 5, domain="Cardiology", now=NOW)
    qids = created["question_ids"]

    feedback = training.save_answers_batch(
        db, trainee, created["session_id"],
        [{"question_id": q, "selected_answer": "A"} for q in qids[:3]] + [{"question_id": qids[3], "selected_answer": "B"}],
        now=NOW + timedelta(minutes=10),
    )
    assert [f["is_correct"] for f in feedback] == [True, True, True, False]
    assert feedback[0]["correct_answer"] == "A"

    changed = training.save_answer(db, trainee, created["session_id"], qids[3], "D", now=NOW + timedelta(minutes=11))
    assert changed["is_correct"] is False

    result = training.complete_session(db, trainee, created["session_id"], now=NOW + timedelta(minutes=12))
    assert result == {"score": 60, "correct_count": 3, "total_questions": 5, "completed_at": NOW + timedelta(minutes=12)}

    with pytest.raises(InvalidState):
        training.save_answer(db, trainee, created["session_id"], qids[4], "A", now=NOW + timedelta(minutes=13))
    with pytest.raises(InvalidState):
        training.complete_session(db, trainee, created["session_id"], now=NOW + timedelta(minutes=13))

    history = training.get_history(db, trainee)
    assert [h["score"] for h in history] == [60]
    stats = training.get_stats(db, trainee)
    assert (stats["total_sessions"], stats["total_questions"], stats["average_score"]) == (1, 5, 60)


def test_saving_to_expired_session_abandons_it(db, trainee, bank):
    created = training.create_session(db, trainee, 5, now=NOW)
    qid = created["question_ids"][0]

    with pytest.raises(InvalidState):
        training.save_answer(db, trainee, created["session_id"], qid, "A", now=NOW + timedelta(hours=25))
    assert db.get(TrainingParticipation, created["session_id"]).status == TrainingStatus.ABANDONED


def test_foreign_question_rejected(db, trainee, bank, make_questions):
    created = training.create_session(db, trainee, 5, domain="Cardiology", now=NOW)
    (foreign,) = make_questions(1, domain="Renal")
    with pytest.raises(InvalidInput):
        training.save_answer(db, trainee, created["session_id"], foreign, "A", now=NOW)


def test_sessions_are_private(db, trainee, make_user, give_access, admin, bank):
    created = training.create_session(db, trainee, 5, now=NOW)
    intruder = make_user()
    give_access(intruder, "training")

    with pytest.raises(Unauthorized):
        training.save_answer(db, intruder, created["session_id"], created["question_ids"][0], "A", now=NOW)
    with pytest.raises(Unauthorized):
        training.get_session(db, intruder, created["session_id"], now=NOW)
    assert training.get_session(db, admin, created["session_id"], now=NOW)["session"]["id"] == created["session_id"]
    with pytest.raises(NotFound):
        training.get_session(db, trainee, 9999, now=NOW)


def test_answer_key_hidden_until_completed(db, trainee, bank):
    created = training.create_session(db, trainee, 5, now=NOW)

    running = training.get_session(db, trainee, created["session_id"], now=NOW)
    assert all("correct_answer" not in q for q in running["questions"])

    training.complete_session(db, trainee, created["session_id"], now=NOW + timedelta(minutes=1))
    done = training.get_session(db, trainee, created["session_id"], now=NOW + timedelta(minutes=1))
    assert all("correct_answer" in q for q in done["questions"])


def test_active_session(db, trainee, bank):
    assert training.get_active_session(db, trainee, now=NOW) is None
    training.create_session(db, trainee, 5, now=NOW)

    live = training.get_active_session(db, trainee, now=NOW + timedelta(hours=1))
    assert live["can_resume"] is True
    assert live["remaining_time_ms"] == 23 * 3600 * 1000

    stale = training.get_active_session(db, trainee, now=NOW + timedelta(hours=30))
    assert (stale["is_expired"], stale["can_resume"], stale["remaining_time_ms"]) == (True, False, 0)


def test_delete_sessions(db, trainee, bank):
    first = training.create_session(db, trainee, 5, now=NOW)
    with pytest.raises(InvalidState):
        training.delete_session(db, trainee, first["session_id"])

    training.save_answer(db, trainee, first["session_id"], first["question_ids"][0], "A", now=NOW)
    training.complete_session(db, trainee, first["session_id"], now=NOW)
    assert training.delete_session(db, trainee, first["session_id"]) == {"success": True}

    second = training.create_session(db, trainee, 5, now=NOW + timedelta(minutes=1))
    training.abandon_session(db, trainee, second["session_id"])
    training.create_session(db, trainee, 5, now=NOW + timedelta(minutes=2))

    result = training.delete_all_sessions(db, trainee)
    assert (result["deleted_count"], result["deleted_answers"]) == (1, 0)
    assert db.query(TrainingParticipation).count() == 1


def test_available_domains(db, bank):
    result = training.get_available_domains(db)
    assert result == {
        "domains": [{"domain": "Cardiology", "count": 12}, {"domain": "Neurology", "count": 8}],
        "total_questions": 20,
    }


def test_sweep_abandons_expired_sessions(db, trainee, make_user, give_access, bank):
    stale = training.create_session(db, trainee, 5, now=NOW - timedelta(hours=30))
    other = make_user()
    give_access(other, "training")
    fresh = training.create_session(db, other, 5, now=NOW)

    assert training.close_expired_sessions(db, now=NOW) == {"closed_count": 1}

    closed = db.get(TrainingParticipation, stale["session_id"])
    assert closed.status == TrainingStatus.ABANDONED
    assert closed.score == 0
    assert db.get(TrainingParticipation, fresh["session_id"]).status == TrainingStatus.IN_PROGRESS


def test_available_objectives(db, bank, make_questions):
    make_questions(2, domain="Neurology", objective=" Stroke ")
    make_questions(1, domain="Neurology", objective="")

    everything = training.get_available_objectives(db)
    assert everything["objectives"] == [
        {"objective": "Arrhythmia", "count": 12},
        {"objective": "Stroke", "count": 10},
    ]
    assert everything["total"] == 23

    neuro = training.get_available_objectives(db, "Neurology")
    assert neuro == {"objectives": [{"objective": "Stroke", "count": 10}], "total": 11}


def test_score_history_by_domain(db, trainee, bank):
    runs = [("Cardiology", 5), ("Neurology", 0), ("Cardiology", 3)]
    for i, (domain, correct) in enumerate(runs):
        start = NOW + timedelta(minutes=10 * i)
        created = training.create_session(db, trainee, 5, domain=domain, now=start)
        qids = created["question_ids"]
        key = "A" if domain == "Cardiology" else "C"
        training.save_answers_batch(
            db, trainee, created["session_id"],
            [{"question_id": q, "selected_answer": key} for q in qids[:correct]],
            now=start + timedelta(minutes=1),
        )
        training.complete_session(db, trainee, created["session_id"], now=start + timedelta(minutes=2))

    history = training.get_score_history(db, trainee)
    assert [s["score"] for s in history["sessions"]] == [100, 0, 60]
    assert history["domain_performance"] == [
        {"domain": "Cardiology", "average_score": 80, "session_count": 2},
        {"domain": "Neurology", "average_score": 0, "session_count": 1},
    ]

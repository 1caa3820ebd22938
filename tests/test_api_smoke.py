import json
from datetime import timedelta

from nomaqbank.api.webhooks import handle_payment_event
from nomaqbank.core.clock import utcnow
from nomaqbank.models.orm import AccessCategory, Transaction, TransactionStatus, User
from nomaqbank.services import entitlements, payments
from tests.conftest import auth_headers

IDENTITY = {"x-webhook-secret": "identity-secret"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_requests_without_token_are_rejected(client):
    response = client.get("/v1/access/me")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHENTICATED"


def test_mock_login_then_access_status(client, db):
    response = client.post(
        "/v1/auth/mock-login", json={"external_id": "user_abc", "email": "abc@example.com", "name": "Abc"}
    )
    assert response.status_code == 200
    token = response.json()["access_token"]

    status = client.get("/v1/access/me", headers={"Authorization": f"Bearer {token}"})
    assert status.status_code == 200
    assert status.json() == {"exam_access": None, "training_access": None}


def test_admin_routes_require_admin(client, user):
    response = client.get("/v1/exams", headers=auth_headers(user))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


def test_validation_errors_use_the_error_envelope(client, admin):
    response = client.post("/v1/exams", json={"title": ""}, headers=auth_headers(admin))
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_exam_round_trip(client, admin, user, give_access, make_questions):
    now = utcnow()
    qids = make_questions(2)
    created = client.post(
        "/v1/exams",
        json={
            "title": "Weekly mock",
            "start_date": (now - timedelta(hours=1)).isoformat(),
            "end_date": (now + timedelta(days=1)).isoformat(),
            "question_ids": qids,
        },
        headers=auth_headers(admin),
    )
    assert created.status_code == 201
    exam = created.json()
    assert exam["completion_time"] == 166

    headers = auth_headers(user)
    denied = client.post(f"/v1/exams/{exam['id']}/start", headers=headers)
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "ACCESS_EXPIRED"

    give_access(user, now=now)
    started = client.post(f"/v1/exams/{exam['id']}/start", headers=headers)
    assert started.status_code == 200
    assert started.json()["status"] == "in_progress"

    submitted = client.post(
        f"/v1/exams/{exam['id']}/submit",
        json={"answers": [{"question_id": qids[0], "selected_answer": "A"}]},
        headers=headers,
    )
    assert submitted.status_code == 200
    assert submitted.json() == {"score": 50, "correct_answers": 1, "total_questions": 2}

    again = client.post(f"/v1/exams/{exam['id']}/submit", json={"answers": []}, headers=headers)
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_STATE"

    history = client.get("/v1/exams/history/me", headers=headers).json()
    assert [h["score"] for h in history] == [50]


def test_checkout_and_payment_webhook(client, db, user, products, processor):
    headers = auth_headers(user)
    checkout = client.post(
        "/v1/payments/checkout",
        json={"product_code": "exam_access", "success_url": "https://app/ok", "cancel_url": "https://app/cancel"},
        headers=headers,
    )
    assert checkout.status_code == 200
    session_id = checkout.json()["session_id"]
    assert db.query(Transaction).one().status == TransactionStatus.PENDING

    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {"id": session_id, "payment_status": "paid", "payment_intent": "pi_1"}},
    }
    first = client.post("/v1/webhooks/payments", content=json.dumps(event), headers={"stripe-signature": "t=1,v1=x"})
    replay = client.post("/v1/webhooks/payments", content=json.dumps(event), headers={"stripe-signature": "t=1,v1=x"})

    assert first.status_code == 200 and first.json()["already_processed"] is False
    assert replay.status_code == 200 and replay.json()["already_processed"] is True
    db.expire_all()
    assert db.query(Transaction).one().status == TransactionStatus.COMPLETED
    assert entitlements.has_access(db, user, AccessCategory.EXAM)

    mine = client.get("/v1/payments/transactions/me", headers=headers).json()
    assert [t["status"] for t in mine] == ["completed"]


def test_payment_webhook_for_unknown_session_is_acknowledged(client):
    event = {"id": "evt_2", "type": "checkout.session.expired", "data": {"object": {"id": "cs_missing"}}}
    response = client.post("/v1/webhooks/payments", content=json.dumps(event))
    assert response.status_code == 200
    assert response.json()["ignored"] == "unknown_transaction"


def test_identity_webhook_lifecycle(client, db):
    profile = {
        "id": "user_idp_1",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "username": "ada",
        "email_addresses": [{"email_address": "ada@example.com"}],
    }
    rejected = client.post("/v1/webhooks/identity", json={"type": "user.created", "data": profile})
    assert rejected.status_code == 401

    created = client.post("/v1/webhooks/identity", json={"type": "user.created", "data": profile}, headers=IDENTITY)
    assert created.status_code == 200
    user = db.query(User).filter_by(external_id="user_idp_1").one()
    assert (user.name, user.email, user.username) == ("Ada Lovelace", "ada@example.com", "ada")

    deleted = client.post(
        "/v1/webhooks/identity", json={"type": "user.deleted", "data": {"id": "user_idp_1"}}, headers=IDENTITY
    )
    assert deleted.json()["deleted"] is True
    db.expire_all()
    assert db.query(User).filter_by(external_id="user_idp_1").one().is_deleted is True

    response = client.get("/v1/access/me", headers=auth_headers(user))
    assert response.status_code == 404


def test_malformed_answer_key_returns_structured_error(client, admin, user, give_access, make_questions):
    now = utcnow()
    qids = make_questions(1)
    exam = client.post(
        "/v1/exams",
        json={
            "title": "Key check",
            "start_date": (now - timedelta(hours=1)).isoformat(),
            "end_date": (now + timedelta(days=1)).isoformat(),
            "question_ids": qids,
        },
        headers=auth_headers(admin),
    ).json()
    give_access(user, now=now)
    headers = auth_headers(user)
    client.post(f"/v1/exams/{exam['id']}/start", headers=headers)

    response = client.post(
        f"/v1/exams/{exam['id']}/submit",
        json={"answers": [{"question_id": qids[0], "selected_answer": "A"}], "correct_answers": {"abc": "A"}},
        headers=headers,
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_INPUT"


def test_training_objectives_route(client, user, make_questions):
    make_questions(3, domain="Neurology", objective="Stroke")
    response = client.get("/v1/training/objectives", params={"domain": "Neurology"}, headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json() == {"objectives": [{"objective": "Stroke", "count": 3}], "total": 3}


def test_payment_event_handler_runs_outside_the_request(db, user, products, processor):
    checkout = payments.create_checkout(db, user, "exam_access", "https://app/ok", "https://app/cancel", processor)
    unpaid = {"id": "evt_3", "type": "checkout.session.completed", "data": {"object": {"id": checkout["session_id"]}}}
    assert handle_payment_event(db, unpaid) == {"received": True, "ignored": "unpaid"}

    paid = {**unpaid, "id": "evt_4", "data": {"object": {"id": checkout["session_id"], "payment_status": "paid"}}}
    assert handle_payment_event(db, paid)["status"] == "completed"

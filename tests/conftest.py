import itertools
import json
import os
from datetime import datetime, timedelta

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "testing"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["IDENTITY_WEBHOOK_SECRET"] = "identity-secret"
os.environ["PROMETHEUS_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from nomaqbank.core.auth import create_token
from nomaqbank.core.database import get_db
from nomaqbank.main import app
from nomaqbank.models.orm import AccessCategory, AccessProduct, Base, Question, User, UserRole
from nomaqbank.services import exams, payments
from nomaqbank.services.processor import CheckoutSession, get_processor

NOW = datetime(2026, 3, 2, 9, 0, 0)

engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db():
    Base.metadata.create_all(engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    def _make(role=UserRole.USER, **fields):
        n = next(counter)
        user = User(
            external_id=f"ext_{role.value}_{n}",
            email=f"{role.value}{n}@example.com",
            name=f"{role.value.title()} {n}",
            role=role,
            **fields,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN)


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def make_questions(db):
    def _make(n, domain="Cardiology", correct="A", objective=None):
        questions = [
            Question(
                text=f"{domain} question {i}",
                options=["A", "B", "C", "D"],
                correct_answer=correct,
                explanation="Because.",
                domain=domain,
                objective=objective,
            )
            for i in range(n)
        ]
        db.add_all(questions)
        db.commit()
        return [q.id for q in questions]

    return _make


@pytest.fixture
def products(db):
    exam_product = AccessProduct(
        code="exam_access", version=1, is_current=True, name="Exam access", description="30 days of mock exams",
        price=49.0, currency="usd", duration_days=30, category=AccessCategory.EXAM,
    )
    training_product = AccessProduct(
        code="training_access", version=1, is_current=True, name="Training access", description="30 days of training",
        price=29.0, currency="usd", duration_days=30, category=AccessCategory.TRAINING,
    )
    db.add_all([exam_product, training_product])
    db.commit()
    return {"exam": exam_product, "training": training_product}


@pytest.fixture
def give_access(db, admin, products):
    def _give(target, category="exam", now=NOW - timedelta(days=1)):
        return payments.record_manual(db, admin, target.id, f"{category}_access", 49.0, "usd", "cash", now=now)

    return _give


@pytest.fixture
def make_exam(db, admin):
    def _make(question_ids, start=NOW - timedelta(hours=1), end=NOW + timedelta(days=1), **fields):
        return exams.create_exam(
            db, admin, title="Mock exam", start_date=start, end_date=end, question_ids=question_ids, **fields
        )

    return _make


def auth_headers(user):
    return {"Authorization": f"Bearer {create_token(user.external_id, user.role.value)}"}


class FakeProcessor:
    def __init__(self):
        self.created = []

    def create_checkout(self, *, user, product, success_url, cancel_url):
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append((user.id, product.code))
        return CheckoutSession(session_id=session_id, url=f"https://checkout.example.com/{session_id}")

    def construct_event(self, payload, signature):
        return json.loads(payload)


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def client(db, processor):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_processor] = lambda: processor
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()

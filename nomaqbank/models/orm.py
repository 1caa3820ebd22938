import enum
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    BigInteger, Boolean, DateTime, Enum as SQLEnum, Float, ForeignKey, Index,
    Integer, JSON, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from nomaqbank.core.clock import utcnow

# SQLite only autoincrements INTEGER primary keys
PK = BigInteger().with_variant(Integer, "sqlite")


def _enum(cls):
    return SQLEnum(cls, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e])


class Base(DeclarativeBase):
    pass


# =====================================================
# Enums
# =====================================================

class UserRole(str, enum.Enum):
    ADMIN = "admin"
    USER = "user"


class AccessCategory(str, enum.Enum):
    EXAM = "exam"
    TRAINING = "training"


class TransactionOrigin(str, enum.Enum):
    MANUAL = "manual"
    PROCESSOR = "processor"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentEventKind(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class ParticipationStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    AUTO_SUBMITTED = "auto_submitted"


class PausePhase(str, enum.Enum):
    BEFORE_PAUSE = "before_pause"
    DURING_PAUSE = "during_pause"
    AFTER_PAUSE = "after_pause"


class TrainingStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


# =====================================================
# Identity & question bank
# =====================================================

class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    username: Mapped[Optional[str]] = mapped_column(String(255))
    image_url: Mapped[Optional[str]] = mapped_column(Text)
    role: Mapped[UserRole] = mapped_column(_enum(UserRole), default=UserRole.USER, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def soft_delete(self, when: datetime) -> None:
        self.is_deleted = True
        self.deleted_at = when

    def restore(self) -> None:
        self.is_deleted = False
        self.deleted_at = None


class Question(Base):
    __tablename__ = "questions"

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    options: Mapped[list] = mapped_column(JSON, default=list)
    correct_answer: Mapped[str] = mapped_column(String(255), nullable=False)
    explanation: Mapped[Optional[str]] = mapped_column(Text)
    domain: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    objective: Mapped[Optional[str]] = mapped_column(String(255), index=True)


# =====================================================
# Payments & entitlements
# =====================================================

class AccessProduct(Base):
    __tablename__ = "access_products"
    __table_args__ = (
        UniqueConstraint("code", "version", name="uq_product_code_version"),
        Index("idx_product_current", "code", "is_current"),
    )

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    price: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[AccessCategory] = mapped_column(_enum(AccessCategory), nullable=False)
    processor_price_ref: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("idx_tx_user_category", "user_id", "category", "status"),
        Index("idx_tx_origin_status", "origin", "status"),
    )

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("access_products.id"), nullable=False)
    origin: Mapped[TransactionOrigin] = mapped_column(_enum(TransactionOrigin), nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(_enum(TransactionStatus), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    category: Mapped[AccessCategory] = mapped_column(_enum(AccessCategory), nullable=False)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False)
    access_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    external_ref: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255))
    processor_payment_ref: Mapped[Optional[str]] = mapped_column(String(255))
    payment_method: Mapped[Optional[str]] = mapped_column(String(64))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    recorded_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    user: Mapped["User"] = relationship(foreign_keys=[user_id])
    product: Mapped["AccessProduct"] = relationship()


class PaymentEvent(Base):
    """Dedup set for processor deliveries; one row per applied idempotency key."""

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    transaction_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transactions.id", ondelete="SET NULL"))
    kind: Mapped[PaymentEventKind] = mapped_column(_enum(PaymentEventKind), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class AccessGrant(Base):
    __tablename__ = "access_grants"
    __table_args__ = (
        UniqueConstraint("user_id", "category", name="uq_grant_user_category"),
    )

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category: Mapped[AccessCategory] = mapped_column(_enum(AccessCategory), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_transaction_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transactions.id", ondelete="SET NULL"))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


# =====================================================
# Exams
# =====================================================

class Exam(Base):
    __tablename__ = "exams"
    __table_args__ = (
        Index("idx_exam_window", "is_active", "start_date", "end_date"),
    )

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    question_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    completion_time: Mapped[int] = mapped_column(Integer, nullable=False)
    enable_pause: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pause_duration_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    participations: Mapped[List["ExamParticipation"]] = relationship(
        back_populates="exam", cascade="all, delete-orphan"
    )


class ExamParticipation(Base):
    __tablename__ = "exam_participations"
    __table_args__ = (
        UniqueConstraint("exam_id", "user_id", name="uq_participation_exam_user"),
        Index("idx_participation_status", "status"),
    )

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    exam_id: Mapped[int] = mapped_column(ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    status: Mapped[ParticipationStatus] = mapped_column(_enum(ParticipationStatus), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pause_phase: Mapped[Optional[PausePhase]] = mapped_column(_enum(PausePhase))
    pause_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    pause_ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_pause_cut_short: Mapped[Optional[bool]] = mapped_column(Boolean)
    total_pause_duration_ms: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    exam: Mapped["Exam"] = relationship(back_populates="participations")
    user: Mapped["User"] = relationship()
    answers: Mapped[List["ExamAnswer"]] = relationship(
        back_populates="participation", cascade="all, delete-orphan"
    )

    @property
    def is_finished(self) -> bool:
        return self.status in (ParticipationStatus.COMPLETED, ParticipationStatus.AUTO_SUBMITTED)


class ExamAnswer(Base):
    __tablename__ = "exam_answers"
    __table_args__ = (
        UniqueConstraint("participation_id", "question_id", name="uq_exam_answer_question"),
    )

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    participation_id: Mapped[int] = mapped_column(
        ForeignKey("exam_participations.id", ondelete="CASCADE"), nullable=False
    )
    question_id: Mapped[int] = mapped_column(ForeignKey("questions.id"), nullable=False)
    selected_answer: Mapped[str] = mapped_column(String(255), nullable=False)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_flagged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    participation: Mapped["ExamParticipation"] = relationship(back_populates="answers")


# =====================================================
# Training
# =====================================================

class TrainingParticipation(Base):
    __tablename__ = "training_participations"
    __table_args__ = (
        Index("idx_training_user_status", "user_id", "status"),
        Index("idx_training_expiry", "status", "expires_at"),
    )

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    question_count: Mapped[int] = mapped_column(Integer, nullable=False)
    domain: Mapped[Optional[str]] = mapped_column(String(255))
    question_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    status: Mapped[TrainingStatus] = mapped_column(_enum(TrainingStatus), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    answers: Mapped[List["TrainingAnswer"]] = relationship(
        back_populates="participation", cascade="all, delete-orphan"
    )


class TrainingAnswer(Base):
    __tablename__ = "training_answers"
    __table_args__ = (
        UniqueConstraint("participation_id", "question_id", name="uq_training_answer_question"),
    )

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    participation_id: Mapped[int] = mapped_column(
        ForeignKey("training_participations.id", ondelete="CASCADE"), nullable=False
    )
    question_id: Mapped[int] = mapped_column(ForeignKey("questions.id"), nullable=False)
    selected_answer: Mapped[str] = mapped_column(String(255), nullable=False)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    participation: Mapped["TrainingParticipation"] = relationship(back_populates="answers")

"""SQLAlchemy tables backing broadcast jobs, recipients and sequences."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from .config import DATABASE_URL, DEFAULT_BATCH_DELAY, DEFAULT_BATCH_SIZE

Base = declarative_base()

engine = None
SessionLocal: Optional[sessionmaker] = None


def _new_id() -> str:
    return str(uuid.uuid4())


class UserModel(Base):
    __tablename__ = "users"
    id = Column(String(64), primary_key=True, default=_new_id)
    email = Column(String(255))
    full_name = Column(String(120))
    preferred_language = Column(String(16))
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    subscriptions = relationship("SubscriptionModel", back_populates="user", cascade="all, delete-orphan")


class SubscriptionModel(Base):
    __tablename__ = "subscriptions"
    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_tier = Column(String(40), nullable=False)
    status = Column(String(20), default="active", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("UserModel", back_populates="subscriptions")


class BroadcastJobModel(Base):
    __tablename__ = "broadcast_jobs"
    id = Column(String(36), primary_key=True, default=_new_id)
    kind = Column(String(20), nullable=False)
    status = Column(String(20), default="pending", nullable=False, index=True)
    target_all_users = Column(Boolean, default=True, nullable=False)
    target_plans = Column(JSON, default=list)
    payload = Column(JSON, nullable=False)

    total_recipients = Column(Integer, default=0, nullable=False)
    processed_count = Column(Integer, default=0, nullable=False)
    success_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)

    batch_size = Column(Integer, default=DEFAULT_BATCH_SIZE, nullable=False)
    batch_delay = Column(Float, default=DEFAULT_BATCH_DELAY, nullable=False)

    fanned_out_at = Column(DateTime)
    fanout_attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text)

    lease_owner = Column(String(64))
    lease_expires_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    recipients = relationship(
        "BroadcastRecipientModel",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="BroadcastRecipientModel.id",
    )


class BroadcastRecipientModel(Base):
    __tablename__ = "broadcast_recipients"
    __table_args__ = (
        UniqueConstraint("job_id", "user_id", name="uq_broadcast_recipient"),
        Index("ix_broadcast_recipients_job_status", "job_id", "status"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("broadcast_jobs.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False)
    contact_address = Column(String(255))
    status = Column(String(20), default="pending", nullable=False)
    error_message = Column(Text)
    sent_at = Column(DateTime)
    claim_token = Column(String(36))
    claimed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    job = relationship("BroadcastJobModel", back_populates="recipients")


class NotificationModel(Base):
    __tablename__ = "notifications"
    __table_args__ = (UniqueConstraint("user_id", "broadcast_job_id", name="uq_notification_broadcast"),)
    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    broadcast_job_id = Column(String(36))
    type = Column(String(40), default="announcement", nullable=False)
    title = Column(JSON, nullable=False)
    message = Column(JSON, nullable=False)
    action_url = Column(String(500))
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class EmailTemplateModel(Base):
    __tablename__ = "email_templates"
    id = Column(Integer, primary_key=True)
    template_key = Column(String(80), unique=True, nullable=False)
    subject = Column(String(255), nullable=False)
    html_content = Column(Text, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class EmailSequenceModel(Base):
    __tablename__ = "email_sequences"
    id = Column(Integer, primary_key=True)
    key = Column(String(80), unique=True, nullable=False)
    name = Column(String(120))
    is_active = Column(Boolean, default=True, nullable=False)

    steps = relationship(
        "EmailSequenceStepModel",
        back_populates="sequence",
        cascade="all, delete-orphan",
        order_by="EmailSequenceStepModel.step_order",
    )


class EmailSequenceStepModel(Base):
    __tablename__ = "email_sequence_steps"
    __table_args__ = (UniqueConstraint("sequence_id", "step_order", name="uq_sequence_step"),)
    id = Column(Integer, primary_key=True)
    sequence_id = Column(Integer, ForeignKey("email_sequences.id", ondelete="CASCADE"), nullable=False)
    step_order = Column(Integer, nullable=False)
    delay_hours = Column(Integer, default=0, nullable=False)
    subject = Column(JSON, nullable=False)
    body = Column(JSON, nullable=False)
    template_key = Column(String(80))
    is_active = Column(Boolean, default=True, nullable=False)
    skip_rule = Column(JSON)

    sequence = relationship("EmailSequenceModel", back_populates="steps")


class EnrollmentModel(Base):
    __tablename__ = "email_sequence_enrollments"
    __table_args__ = (
        UniqueConstraint("user_id", "sequence_id", name="uq_sequence_enrollment"),
        Index("ix_enrollments_due", "status", "next_send_at"),
    )
    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False)
    sequence_id = Column(Integer, ForeignKey("email_sequences.id", ondelete="CASCADE"), nullable=False)
    current_step = Column(Integer, default=0, nullable=False)
    status = Column(String(20), default="active", nullable=False)
    next_send_at = Column(DateTime)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)

    sequence = relationship("EmailSequenceModel")


def init_engine(url: Optional[str] = None) -> sessionmaker:
    """Create the engine and session factory, creating tables on first use."""
    global engine, SessionLocal

    url = url or DATABASE_URL
    engine_kwargs: dict[str, Any] = {"future": True}
    if str(url).startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        pool_pre_ping = False
    else:
        pool_pre_ping = True
    engine = create_engine(url, pool_pre_ping=pool_pre_ping, **engine_kwargs)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    Base.metadata.create_all(bind=engine)
    return SessionLocal


def get_session_factory() -> sessionmaker:
    if SessionLocal is None:
        return init_engine()
    return SessionLocal

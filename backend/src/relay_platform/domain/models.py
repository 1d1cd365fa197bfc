"""SQLAlchemy models for users, the conversation log, the outbound queue and budgets."""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from relay_platform.infra.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    phone_number = Column(String(50), nullable=False, index=True)
    first_name = Column(String(100), nullable=True)
    timezone = Column(String(64), nullable=True)  # IANA name, e.g. America/Chicago
    quiet_hours_start = Column(String(5), nullable=True)  # "HH:MM"
    quiet_hours_end = Column(String(5), nullable=True)  # "HH:MM"
    response_pattern = Column(JSON, nullable=True)  # {"best_hours": [9, 13, 18]}
    created_at = Column(DateTime(timezone=True), default=func.now())


class Message(Base):
    """Conversation log: inbound texts from users and every delivered part."""

    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    conversation_id = Column(String(36), nullable=True)
    role = Column(String(50), default="user")  # user, or the producing agent's role
    content = Column(Text, nullable=False)
    direction = Column(String(10), nullable=False)  # inbound, outbound
    status = Column(String(20), default="sent")
    created_at = Column(DateTime(timezone=True), default=func.now())
    sent_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_messages_user_direction_created", "user_id", "direction", "created_at"),
    )


class MessageQueue(Base):
    """One row per outbound part. Rows sharing sequence_id form one delivery unit."""

    __tablename__ = "message_queue"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    agent_id = Column(String(100), nullable=False)
    conversation_id = Column(String(36), nullable=True)

    message_data = Column(JSON, nullable=False, default=dict)
    final_message = Column(Text, nullable=True)

    scheduled_for = Column(DateTime(timezone=True), nullable=False)
    priority = Column(String(20), default="medium")
    can_delay = Column(Boolean, default=True)
    requires_fresh_context = Column(Boolean, default=False, nullable=False)

    status = Column(String(20), default="queued")
    superseded_reason = Column(String(100), nullable=True)

    sequence_id = Column(String(36), nullable=True)
    sequence_position = Column(Integer, nullable=True)  # 1-indexed
    sequence_total = Column(Integer, nullable=True)

    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_message_id = Column(String(36), ForeignKey("messages.id"), nullable=True)

    attempt_count = Column(Integer, default=0)
    last_error = Column(Text, nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=func.now())

    __table_args__ = (
        Index("ix_message_queue_status_scheduled", "status", "scheduled_for"),
        Index("ix_message_queue_sequence", "sequence_id", "sequence_position"),
    )


class UserMessageBudget(Base):
    __tablename__ = "user_message_budget"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    date = Column(Date, nullable=False)  # UTC calendar day
    messages_sent = Column(Integer, default=0, nullable=False)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    daily_limit = Column(Integer, default=10, nullable=False)
    hourly_limit = Column(Integer, default=2, nullable=False)
    quiet_hours_enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_user_message_budget_user_date"),
    )


class AgentTask(Base):
    """Work requested of a producing agent, e.g. reformulating a stale message."""

    __tablename__ = "agent_tasks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    task_type = Column(String(50), nullable=False)  # reformulate_message
    agent_type = Column(String(50), nullable=False)  # producing agent's role
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    scheduled_for = Column(DateTime(timezone=True), nullable=False)
    priority = Column(String(20), default="medium")
    status = Column(String(20), default="pending")
    context_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=func.now())

    __table_args__ = (
        Index("ix_agent_tasks_status_scheduled", "status", "scheduled_for"),
    )

"""
Time-boxed, capacity-bounded detention slots.
Status only moves forward: scheduled -> in_progress -> completed, or scheduled -> cancelled.
"""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, String, Text, Time
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from discipline.db.session import Base


SESSION_STATUS_SCHEDULED = "scheduled"
SESSION_STATUS_IN_PROGRESS = "in_progress"
SESSION_STATUS_COMPLETED = "completed"
SESSION_STATUS_CANCELLED = "cancelled"

SESSION_TRANSITIONS = {
    SESSION_STATUS_SCHEDULED: {SESSION_STATUS_IN_PROGRESS, SESSION_STATUS_CANCELLED},
    SESSION_STATUS_IN_PROGRESS: {SESSION_STATUS_COMPLETED},
    SESSION_STATUS_COMPLETED: set(),
    SESSION_STATUS_CANCELLED: set(),
}


class DetentionSession(Base):
    __tablename__ = "detention_sessions"
    __table_args__ = (
        CheckConstraint("max_capacity > 0", name="ck_detention_session_capacity"),
        {"schema": "detention"},
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    session_date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=False)
    duration = Column(Integer, nullable=False, default=60)  # minutes
    location = Column(String(255), nullable=True)
    # Teacher on duty
    supervisor_id = Column(UUID(as_uuid=True), ForeignKey("auth.users.id", ondelete="SET NULL"), nullable=True)
    max_capacity = Column(Integer, nullable=False, default=30)
    status = Column(String(20), nullable=False, default=SESSION_STATUS_SCHEDULED)
    notes = Column(Text, nullable=True)
    created_by = Column(UUID(as_uuid=True), ForeignKey("auth.users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    supervisor = relationship("User", foreign_keys=[supervisor_id])
    assignments = relationship("DetentionAssignment", back_populates="session", cascade="all, delete-orphan")

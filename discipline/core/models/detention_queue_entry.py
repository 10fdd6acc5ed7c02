"""
Waitlist for qualifying students that found no session with capacity.
Entries go pending -> assigned exactly once and are never deleted (wait-time audit trail).
"""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import UUID

from discipline.db.session import Base


QUEUE_STATUS_PENDING = "pending"
QUEUE_STATUS_ASSIGNED = "assigned"


class DetentionQueueEntry(Base):
    __tablename__ = "detention_queue"
    __table_args__ = (
        # At most one pending entry per student
        Index(
            "uq_detention_queue_pending_student",
            "tenant_id",
            "student_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        {"schema": "detention"},
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    student_id = Column(UUID(as_uuid=True), ForeignKey("school.students.id", ondelete="CASCADE"), nullable=False, index=True)
    points_at_queue = Column(Integer, nullable=False, default=0)
    reason = Column(Text, nullable=True)
    queued_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=QUEUE_STATUS_PENDING)
    assigned_to_session_id = Column(UUID(as_uuid=True), ForeignKey("detention.detention_sessions.id", ondelete="SET NULL"), nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)

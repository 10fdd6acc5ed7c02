"""
One row per placement of a student into a session. Reassignment inserts a new row
(linked via reassigned_from_id) so attendance history is never overwritten.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from discipline.db.session import Base


ASSIGNMENT_STATUS_ASSIGNED = "assigned"
ASSIGNMENT_STATUS_ATTENDED = "attended"
ASSIGNMENT_STATUS_ABSENT = "absent"
ASSIGNMENT_STATUS_LATE = "late"
ASSIGNMENT_STATUS_EXCUSED = "excused"
ASSIGNMENT_STATUS_DISMISSED = "dismissed"

# Count against session capacity
OCCUPYING_STATUSES = (ASSIGNMENT_STATUS_ASSIGNED, ASSIGNMENT_STATUS_ATTENDED, ASSIGNMENT_STATUS_LATE)
# A student may hold at most one of these on an upcoming session
PENDING_STATUSES = (ASSIGNMENT_STATUS_ASSIGNED, ASSIGNMENT_STATUS_LATE)


class DetentionAssignment(Base):
    __tablename__ = "detention_assignments"
    __table_args__ = (
        UniqueConstraint("session_id", "student_id", name="uq_detention_assignment_session_student"),
        {"schema": "detention"},
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    session_id = Column(UUID(as_uuid=True), ForeignKey("detention.detention_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(UUID(as_uuid=True), ForeignKey("school.students.id", ondelete="CASCADE"), nullable=False, index=True)
    incident_id = Column(UUID(as_uuid=True), ForeignKey("school.behaviour_incidents.id", ondelete="SET NULL"), nullable=True)
    assigned_by = Column(UUID(as_uuid=True), ForeignKey("auth.users.id", ondelete="SET NULL"), nullable=True)
    reason = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=ASSIGNMENT_STATUS_ASSIGNED)
    notes = Column(Text, nullable=True)
    attendance_time = Column(DateTime(timezone=True), nullable=True)
    is_auto_reassigned = Column(Boolean, nullable=False, default=False)
    reassigned_from_id = Column(UUID(as_uuid=True), ForeignKey("detention.detention_assignments.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    session = relationship("DetentionSession", back_populates="assignments")
    student = relationship("Student", foreign_keys=[student_id])

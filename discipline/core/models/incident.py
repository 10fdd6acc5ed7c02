"""
Behaviour incidents (demerits). Incident CRUD lives elsewhere; the detention core reads
point totals from here and marks incidents resolved once a detention is served.
"""

import uuid
from datetime import date, datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from discipline.db.session import Base


class BehaviourIncident(Base):
    __tablename__ = "behaviour_incidents"
    __table_args__ = {"schema": "school"}

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    student_id = Column(UUID(as_uuid=True), ForeignKey("school.students.id", ondelete="CASCADE"), nullable=False, index=True)
    reported_by = Column(UUID(as_uuid=True), ForeignKey("auth.users.id", ondelete="SET NULL"), nullable=True)
    incident_type = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    incident_date = Column(Date, nullable=False, default=date.today)
    # Demerit points deducted for this incident (positive number)
    points = Column(Integer, nullable=False, default=0)
    severity = Column(String(20), nullable=False, default="low")  # low | medium | high
    is_resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    student = relationship("Student", backref="incidents")

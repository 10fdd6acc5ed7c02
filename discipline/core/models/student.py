"""Students as seen by the discipline core. Read-only here; owned by the student module."""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from discipline.db.session import Base


class Student(Base):
    __tablename__ = "students"
    __table_args__ = {"schema": "school"}

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    student_number = Column(String(50), nullable=True)
    # Parent/guardian account that receives detention notifications
    guardian_user_id = Column(UUID(as_uuid=True), ForeignKey("auth.users.id", ondelete="SET NULL"), nullable=True)
    status = Column(String(20), nullable=False, default="ACTIVE")
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    guardian = relationship("User", foreign_keys=[guardian_user_id])

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

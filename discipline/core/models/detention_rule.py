"""Rule-based detention qualification criteria, evaluated in ascending min_points order."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import UUID

from discipline.db.session import Base


ACTION_POINTS_THRESHOLD = "points_threshold"
ACTION_INCIDENT_COUNT = "incident_count"
ACTION_SEVERITY_MATCH = "severity_match"


class DetentionRule(Base):
    __tablename__ = "detention_rules"
    __table_args__ = (
        CheckConstraint(
            "max_points IS NULL OR min_points <= max_points",
            name="ck_detention_rule_points_range",
        ),
        {"schema": "detention"},
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    action_type = Column(String(30), nullable=False)
    min_points = Column(Integer, nullable=False, default=0)
    max_points = Column(Integer, nullable=True)
    severity = Column(String(20), nullable=True)  # severity_match only
    time_period_days = Column(Integer, nullable=False, default=30)
    detention_duration = Column(Integer, nullable=False, default=60)  # minutes
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

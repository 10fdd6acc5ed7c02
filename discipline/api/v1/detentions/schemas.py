from datetime import date, datetime, time
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from discipline.core.enums import (
    AttendanceOutcome,
    IncidentSeverity,
    PlacementOutcome,
    RuleActionType,
    SessionStatus,
)


# ----- Rules -----
class DetentionRuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    action_type: RuleActionType
    min_points: int = Field(0, ge=0, description="Lower bound of points total or incident count")
    max_points: Optional[int] = Field(None, ge=0, description="Upper bound; null means no upper bound")
    severity: Optional[IncidentSeverity] = Field(None, description="Required for severity_match")
    time_period_days: int = Field(30, ge=1, le=3650)
    detention_duration: int = Field(60, ge=1, le=600)
    is_active: bool = True

    @model_validator(mode="after")
    def validate_range_and_severity(self) -> "DetentionRuleCreate":
        if self.max_points is not None and self.min_points > self.max_points:
            raise ValueError("min_points must be less than or equal to max_points")
        if self.action_type == RuleActionType.SEVERITY_MATCH and self.severity is None:
            raise ValueError("severity is required for severity_match rules")
        return self


class DetentionRuleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    action_type: Optional[RuleActionType] = None
    min_points: Optional[int] = Field(None, ge=0)
    max_points: Optional[int] = Field(None, ge=0)
    severity: Optional[IncidentSeverity] = None
    time_period_days: Optional[int] = Field(None, ge=1, le=3650)
    detention_duration: Optional[int] = Field(None, ge=1, le=600)
    is_active: Optional[bool] = None


class DetentionRuleResponse(BaseModel):
    id: UUID
    name: str
    action_type: str
    min_points: int
    max_points: Optional[int] = None
    severity: Optional[str] = None
    time_period_days: int
    detention_duration: int
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


# ----- Sessions -----
class SessionRecurrence(BaseModel):
    """Repeat the session every `interval_days`, `occurrences` sessions in total."""

    interval_days: int = Field(7, ge=1, le=90)
    occurrences: int = Field(..., ge=1)


class DetentionSessionCreate(BaseModel):
    session_date: date
    start_time: time
    duration: Optional[int] = Field(None, ge=1, le=600, description="Minutes; defaults from settings")
    location: Optional[str] = Field(None, max_length=255)
    supervisor_id: Optional[UUID] = None
    max_capacity: Optional[int] = Field(None, ge=1, description="Defaults from settings")
    notes: Optional[str] = Field(None, max_length=2000)
    recurrence: Optional[SessionRecurrence] = None


class DetentionSessionUpdate(BaseModel):
    session_date: Optional[date] = None
    start_time: Optional[time] = None
    duration: Optional[int] = Field(None, ge=1, le=600)
    location: Optional[str] = Field(None, max_length=255)
    supervisor_id: Optional[UUID] = None
    max_capacity: Optional[int] = Field(None, ge=1)
    notes: Optional[str] = Field(None, max_length=2000)


class DetentionSessionStatusUpdate(BaseModel):
    status: SessionStatus


class DetentionSessionResponse(BaseModel):
    id: UUID
    session_date: date
    start_time: time
    duration: int
    location: Optional[str] = None
    supervisor_id: Optional[UUID] = None
    max_capacity: int
    status: str
    notes: Optional[str] = None
    occupancy: int = 0
    available_slots: int = 0
    created_at: datetime


class DrainSummary(BaseModel):
    session_id: UUID
    available_slots: int
    assigned: int
    skipped: int
    failed: int


class SessionsCreatedResponse(BaseModel):
    sessions: List[DetentionSessionResponse]
    queue: List[DrainSummary]


class SessionUpdatedResponse(BaseModel):
    session: DetentionSessionResponse
    queue: Optional[DrainSummary] = None


class SessionStatusChangeResponse(BaseModel):
    session: DetentionSessionResponse
    incidents_resolved: int = 0
    students_requeued: int = 0


# ----- Assignments -----
class DetentionAssignmentResponse(BaseModel):
    id: UUID
    session_id: UUID
    student_id: UUID
    student_name: Optional[str] = None
    incident_id: Optional[UUID] = None
    assigned_by: Optional[UUID] = None
    reason: Optional[str] = None
    status: str
    notes: Optional[str] = None
    attendance_time: Optional[datetime] = None
    is_auto_reassigned: bool = False
    reassigned_from_id: Optional[UUID] = None
    created_at: datetime


class DetentionSessionDetail(DetentionSessionResponse):
    assignments: List[DetentionAssignmentResponse] = Field(default_factory=list)


class StudentDetentionHistoryItem(DetentionAssignmentResponse):
    session_date: date
    start_time: time
    location: Optional[str] = None
    session_status: str


class AssignStudentRequest(BaseModel):
    student_id: UUID
    reason: Optional[str] = Field(None, max_length=2000)
    incident_id: Optional[UUID] = None


class EvaluateStudentRequest(BaseModel):
    """Sent by the incident module after an incident is recorded for the student."""

    incident_id: Optional[UUID] = None


class AttendanceUpdate(BaseModel):
    status: AttendanceOutcome
    notes: Optional[str] = Field(None, max_length=2000)


class AttendanceResponse(BaseModel):
    assignment: DetentionAssignmentResponse
    incidents_resolved: int = 0
    follow_up_assignment_id: Optional[UUID] = None
    follow_up_session_id: Optional[UUID] = None
    queue_entry_id: Optional[UUID] = None


class AutoAssignResponse(BaseModel):
    session_id: UUID
    qualifying: int
    assigned: int
    queued: int
    skipped: int
    failed: int


# ----- Queue -----
class QueueEntryResponse(BaseModel):
    id: UUID
    student_id: UUID
    student_name: Optional[str] = None
    points_at_queue: int
    reason: Optional[str] = None
    queued_at: datetime
    status: str
    assigned_to_session_id: Optional[UUID] = None
    assigned_at: Optional[datetime] = None


class PlacementResponse(BaseModel):
    outcome: PlacementOutcome
    session_id: Optional[UUID] = None
    reason: Optional[str] = None
    assignment: Optional[DetentionAssignmentResponse] = None
    queue_entry: Optional[QueueEntryResponse] = None


# ----- Dashboard -----
class QualifyingStudentResponse(BaseModel):
    student_id: UUID
    student_name: str
    points: int
    has_pending_assignment: bool
    is_queued: bool

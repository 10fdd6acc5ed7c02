from enum import Enum


class RuleActionType(str, Enum):
    POINTS_THRESHOLD = "points_threshold"
    INCIDENT_COUNT = "incident_count"
    SEVERITY_MATCH = "severity_match"


class IncidentSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AttendanceOutcome(str, Enum):
    ATTENDED = "attended"
    ABSENT = "absent"
    LATE = "late"
    EXCUSED = "excused"
    DISMISSED = "dismissed"


class QueueStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"


class PlacementOutcome(str, Enum):
    ASSIGNED = "assigned"
    QUEUED = "queued"
    ALREADY_ASSIGNED = "already_assigned"
    ALREADY_QUEUED = "already_queued"
    NOT_QUALIFIED = "not_qualified"

from discipline.auth.models import User
from discipline.core.models.student import Student
from discipline.core.models.incident import BehaviourIncident
from discipline.core.models.notification import Notification
from discipline.core.models.detention_rule import DetentionRule
from discipline.core.models.detention_session import DetentionSession
from discipline.core.models.detention_assignment import DetentionAssignment
from discipline.core.models.detention_queue_entry import DetentionQueueEntry
from discipline.core.models.detention_audit_log import DetentionAuditLog

__all__ = [
    "User",
    "Student",
    "BehaviourIncident",
    "Notification",
    "DetentionRule",
    "DetentionSession",
    "DetentionAssignment",
    "DetentionQueueEntry",
    "DetentionAuditLog",
]

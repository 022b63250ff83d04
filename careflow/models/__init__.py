from careflow.models.query import MedicalQuery, QueryTransition, QueryStatus, Urgency, DraftSource
from careflow.models.review import ReviewQueueEntry
from careflow.models.audit import AuditEntry

__all__ = [
    "MedicalQuery",
    "QueryTransition",
    "QueryStatus",
    "Urgency",
    "DraftSource",
    "ReviewQueueEntry",
    "AuditEntry",
]

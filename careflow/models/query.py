"""Medical query model and its append-only transition history"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Enum, ForeignKey, Index
from sqlalchemy.sql import func
from careflow.database import Base


class QueryStatus(str, enum.Enum):
    """Lifecycle states of a patient query"""
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    AI_PROCESSED = "ai_processed"
    QUEUED_FOR_REVIEW = "queued_for_review"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


TERMINAL_STATUSES = frozenset({QueryStatus.COMPLETED, QueryStatus.REJECTED})

# The only backwards edge is in_review -> queued_for_review (clinician release)
VALID_TRANSITIONS = {
    QueryStatus.SUBMITTED: {QueryStatus.PROCESSING},
    QueryStatus.PROCESSING: {QueryStatus.AI_PROCESSED},
    QueryStatus.AI_PROCESSED: {QueryStatus.COMPLETED, QueryStatus.QUEUED_FOR_REVIEW},
    QueryStatus.QUEUED_FOR_REVIEW: {QueryStatus.IN_REVIEW},
    QueryStatus.IN_REVIEW: {QueryStatus.APPROVED, QueryStatus.REJECTED, QueryStatus.QUEUED_FOR_REVIEW},
    QueryStatus.APPROVED: {QueryStatus.COMPLETED},
    QueryStatus.REJECTED: set(),
    QueryStatus.COMPLETED: set(),
}


class Urgency(str, enum.Enum):
    """Coarse triage bucket derived from the safety score"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class DraftSource(str, enum.Enum):
    """Where the draft text came from"""
    MODEL = "model"
    FALLBACK = "fallback"


class MedicalQuery(Base):
    """A patient question moving through drafting, scoring and review"""
    __tablename__ = "medical_queries"
    __table_args__ = (
        Index('ix_medical_queries_patient_created', 'patient_id', 'created_at'),
    )

    id = Column(String(36), primary_key=True)
    patient_id = Column(String(100), nullable=False, index=True)
    clinician_id = Column(String(100), nullable=True, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    vitals = Column(JSON)  # {blood_glucose, blood_pressure, heart_rate, temperature}
    patient_context = Column(JSON)  # {diabetes_type, medications, allergies, medical_history}

    draft_text = Column(Text)
    draft_source = Column(Enum(DraftSource))
    draft_attempts = Column(Integer)
    safety_score = Column(Integer)
    urgency = Column(Enum(Urgency), index=True)
    final_response = Column(Text)
    rejection_reason = Column(Text)

    status = Column(Enum(QueryStatus), nullable=False, default=QueryStatus.SUBMITTED, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True))
    queued_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class QueryTransition(Base):
    """One row per status change; never updated or deleted"""
    __tablename__ = "query_transitions"

    id = Column(Integer, primary_key=True, index=True)
    query_id = Column(String(36), ForeignKey("medical_queries.id"), nullable=False, index=True)
    from_status = Column(Enum(QueryStatus), nullable=True)
    to_status = Column(Enum(QueryStatus), nullable=False)
    actor = Column(String(100), nullable=False)  # patient id, clinician id or "system"
    detail = Column(Text)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), index=True)

"""Review queue entries"""
from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey
from sqlalchemy.sql import func
from careflow.database import Base
from careflow.models.query import Urgency

# Higher number is served first
URGENCY_PRIORITY = {
    Urgency.HIGH: 3,
    Urgency.MEDIUM: 2,
    Urgency.LOW: 1,
}


class ReviewQueueEntry(Base):
    """A query awaiting clinician action; exists only while queued or in review"""
    __tablename__ = "review_queue_entries"

    id = Column(Integer, primary_key=True, index=True)
    query_id = Column(String(36), ForeignKey("medical_queries.id"), nullable=False, unique=True, index=True)
    clinician_id = Column(String(100), nullable=True, index=True)  # None while unclaimed
    priority = Column(Integer, nullable=False, index=True)
    urgency = Column(Enum(Urgency), nullable=False)
    enqueued_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    claimed_at = Column(DateTime(timezone=True))

    @property
    def is_claimed(self) -> bool:
        return self.clinician_id is not None

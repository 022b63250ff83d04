"""Audit trail model"""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from sqlalchemy.sql import func
from careflow.database import Base

class AuditEntry(Base):
    """Append-only audit log of every query state transition"""
    __tablename__ = "audit_entries"

    id = Column(Integer, primary_key=True, index=True)
    actor = Column(String(100), nullable=False)  # clinician id, "system" or the patient_ref
    action = Column(String(50), nullable=False, index=True)  # e.g. "queued_for_review", "claim"
    query_id = Column(String(36), index=True)
    patient_ref = Column(String(64), index=True)  # salted hash, never the raw patient id
    outcome = Column(String(20), nullable=False, default="success")
    detail = Column(JSON)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), index=True)

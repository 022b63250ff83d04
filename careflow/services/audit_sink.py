"""Audit Sink - append-only record of every query state change"""
import hashlib
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session, sessionmaker

from careflow.config import settings
from careflow.models.audit import AuditEntry

logger = logging.getLogger(__name__)


def patient_reference(patient_id: Optional[str], salt: Optional[str] = None) -> Optional[str]:
    """Salted SHA-256 prefix so audit rows can be correlated without storing the raw id"""
    if not patient_id:
        return None
    salt = settings.AUDIT_HASH_SALT if salt is None else salt
    return hashlib.sha256(f"{salt}:{patient_id}".encode("utf-8")).hexdigest()[:16]


class AuditSink:
    """Append-only audit log backed by the audit_entries table"""

    def __init__(self, session_factory: sessionmaker, salt: Optional[str] = None):
        self.session_factory = session_factory
        self.salt = settings.AUDIT_HASH_SALT if salt is None else salt

    def patient_reference(self, patient_id: Optional[str]) -> Optional[str]:
        return patient_reference(patient_id, self.salt)

    def append(
        self,
        actor: str,
        action: str,
        query_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        outcome: str = "success",
        detail: Optional[Dict] = None,
        db: Optional[Session] = None,
    ) -> AuditEntry:
        """
        Record one action.

        When `db` is given the entry joins that transaction, so it commits or
        rolls back together with the state change it describes. Otherwise it
        is written in its own session.
        """
        entry = AuditEntry(
            actor=actor,
            action=action,
            query_id=query_id,
            patient_ref=patient_reference(patient_id, self.salt),
            outcome=outcome,
            detail=detail or {},
            timestamp=datetime.now(),
        )
        if db is not None:
            db.add(entry)
            db.flush()
        else:
            own = self.session_factory()
            try:
                own.add(entry)
                own.commit()
            except Exception:
                own.rollback()
                raise
            finally:
                own.close()

        logger.info(f"AUDIT {action} query={query_id} actor={actor} outcome={outcome}")
        return entry

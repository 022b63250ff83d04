"""Record Store - Query persistence with per-key compare-and-set updates"""
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from careflow.errors import InvalidTransition, QueryNotFound
from careflow.models.query import MedicalQuery, QueryStatus, QueryTransition, VALID_TRANSITIONS

logger = logging.getLogger(__name__)


class RecordStore:
    """
    Source of truth for query state.

    Every status change is a conditional UPDATE on (id, expected status), so
    two writers racing on the same query cannot both succeed, and every change
    appends a QueryTransition row in the same transaction.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def unit_of_work(self) -> Iterator[Session]:
        """Session that commits on success and rolls back on any error"""
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def create_query(
        self,
        db: Session,
        query_id: str,
        patient_id: str,
        title: str,
        description: str,
        vitals: Optional[Dict] = None,
        patient_context: Optional[Dict] = None,
    ) -> MedicalQuery:
        now = datetime.now()
        query = MedicalQuery(
            id=query_id,
            patient_id=patient_id,
            title=title,
            description=description,
            vitals=vitals or {},
            patient_context=patient_context or {},
            status=QueryStatus.SUBMITTED,
            created_at=now,
            updated_at=now,
        )
        db.add(query)
        db.add(QueryTransition(
            query_id=query_id,
            from_status=None,
            to_status=QueryStatus.SUBMITTED,
            actor=patient_id,
            timestamp=now,
        ))
        db.flush()
        return query

    def get_query(self, db: Session, query_id: str) -> MedicalQuery:
        query = db.query(MedicalQuery).filter(MedicalQuery.id == query_id).first()
        if query is None:
            raise QueryNotFound(query_id)
        return query

    def apply_transition(
        self,
        db: Session,
        query_id: str,
        expected: QueryStatus,
        target: QueryStatus,
        actor: str,
        detail: Optional[str] = None,
        fields: Optional[Dict] = None,
    ) -> MedicalQuery:
        """
        Move a query from `expected` to `target` and persist extra fields.

        Raises:
            InvalidTransition: edge not allowed, or query no longer in `expected`
            QueryNotFound: no such query
        """
        if target not in VALID_TRANSITIONS[expected]:
            current = self.get_query(db, query_id).status
            raise InvalidTransition(query_id, current.value, target.value)

        now = datetime.now()
        values = dict(fields or {})
        values.update({"status": target, "updated_at": now})

        updated = db.query(MedicalQuery).filter(
            MedicalQuery.id == query_id,
            MedicalQuery.status == expected,
        ).update(values, synchronize_session=False)

        if updated == 0:
            current = self.get_query(db, query_id).status
            raise InvalidTransition(query_id, current.value, target.value)

        db.add(QueryTransition(
            query_id=query_id,
            from_status=expected,
            to_status=target,
            actor=actor,
            detail=detail,
            timestamp=now,
        ))
        db.flush()

        return db.query(MedicalQuery).populate_existing().filter(MedicalQuery.id == query_id).one()

    def update_fields(self, db: Session, query_id: str, expected: QueryStatus, fields: Dict) -> MedicalQuery:
        """Persist computed fields without changing status"""
        values = dict(fields)
        values["updated_at"] = datetime.now()
        updated = db.query(MedicalQuery).filter(
            MedicalQuery.id == query_id,
            MedicalQuery.status == expected,
        ).update(values, synchronize_session=False)
        if updated == 0:
            current = self.get_query(db, query_id).status
            raise InvalidTransition(query_id, current.value, expected.value)
        db.flush()
        return db.query(MedicalQuery).populate_existing().filter(MedicalQuery.id == query_id).one()

    def get_transitions(self, db: Session, query_id: str) -> List[QueryTransition]:
        return db.query(QueryTransition).filter(
            QueryTransition.query_id == query_id
        ).order_by(QueryTransition.id.asc()).all()

    def list_patient_queries(
        self, db: Session, patient_id: str, limit: int = 20, offset: int = 0
    ) -> List[MedicalQuery]:
        return db.query(MedicalQuery).filter(
            MedicalQuery.patient_id == patient_id
        ).order_by(MedicalQuery.created_at.desc()).offset(offset).limit(limit).all()

    def query_ids_in_status(
        self, db: Session, status: QueryStatus, updated_before: Optional[datetime] = None
    ) -> List[str]:
        q = db.query(MedicalQuery.id).filter(MedicalQuery.status == status)
        if updated_before is not None:
            q = q.filter(MedicalQuery.updated_at < updated_before)
        rows = q.order_by(MedicalQuery.created_at.asc()).all()
        return [query_id for (query_id,) in rows]

    def submission_times_since(self, db: Session, window_seconds: float) -> Dict[str, List[float]]:
        """Submission timestamps per patient inside the window, for rate-limit warm-up"""
        cutoff = datetime.now() - timedelta(seconds=window_seconds)
        rows = db.query(MedicalQuery.patient_id, MedicalQuery.created_at).filter(
            MedicalQuery.created_at >= cutoff
        ).all()
        times: Dict[str, List[float]] = {}
        for patient_id, created_at in rows:
            times.setdefault(patient_id, []).append(created_at.timestamp())
        return times

"""Review Queue - queries awaiting clinician action"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from careflow.errors import AlreadyClaimed, InvalidTransition, NotClaimedByCaller
from careflow.models.query import MedicalQuery, Urgency
from careflow.models.review import ReviewQueueEntry, URGENCY_PRIORITY

logger = logging.getLogger(__name__)


class ReviewQueue:
    """
    Ordered set of queued queries (highest priority first, then oldest first).

    Claiming is a single conditional UPDATE: it only matches a row that is
    unclaimed or already held by the caller, so the first claimer to reach the
    database wins and everyone after gets AlreadyClaimed.
    """

    def enqueue(self, db: Session, query_id: str, urgency: Urgency) -> ReviewQueueEntry:
        entry = ReviewQueueEntry(
            query_id=query_id,
            clinician_id=None,
            priority=URGENCY_PRIORITY[urgency],
            urgency=urgency,
            enqueued_at=datetime.now(),
        )
        db.add(entry)
        db.flush()
        logger.info(f"Query {query_id} queued for review with priority {entry.priority}")
        return entry

    def get_entry(self, db: Session, query_id: str) -> Optional[ReviewQueueEntry]:
        return db.query(ReviewQueueEntry).filter(ReviewQueueEntry.query_id == query_id).first()

    def claim(self, db: Session, query_id: str, clinician_id: str) -> ReviewQueueEntry:
        updated = db.query(ReviewQueueEntry).filter(
            ReviewQueueEntry.query_id == query_id,
            or_(
                ReviewQueueEntry.clinician_id.is_(None),
                ReviewQueueEntry.clinician_id == clinician_id,
            ),
        ).update(
            {"clinician_id": clinician_id, "claimed_at": datetime.now()},
            synchronize_session=False,
        )

        if updated == 0:
            entry = self.get_entry(db, query_id)
            if entry is None:
                raise InvalidTransition(query_id, None, "in_review")
            raise AlreadyClaimed(query_id, entry.clinician_id)

        db.flush()
        return db.query(ReviewQueueEntry).populate_existing().filter(
            ReviewQueueEntry.query_id == query_id
        ).one()

    def require_claim(self, db: Session, query_id: str, clinician_id: str) -> ReviewQueueEntry:
        entry = self.get_entry(db, query_id)
        if entry is None:
            raise InvalidTransition(query_id, None, "in_review")
        if entry.clinician_id != clinician_id:
            raise NotClaimedByCaller(query_id, clinician_id)
        return entry

    def release(self, db: Session, query_id: str, clinician_id: str) -> ReviewQueueEntry:
        updated = db.query(ReviewQueueEntry).filter(
            ReviewQueueEntry.query_id == query_id,
            ReviewQueueEntry.clinician_id == clinician_id,
        ).update({"clinician_id": None, "claimed_at": None}, synchronize_session=False)

        if updated == 0:
            self.require_claim(db, query_id, clinician_id)

        db.flush()
        return db.query(ReviewQueueEntry).populate_existing().filter(
            ReviewQueueEntry.query_id == query_id
        ).one()

    def remove(self, db: Session, query_id: str) -> None:
        db.query(ReviewQueueEntry).filter(
            ReviewQueueEntry.query_id == query_id
        ).delete(synchronize_session=False)
        db.flush()

    def list_entries(
        self,
        db: Session,
        urgency: Optional[Urgency] = None,
        unclaimed_only: bool = False,
        limit: int = 100,
    ) -> List[Tuple[ReviewQueueEntry, MedicalQuery]]:
        """Entries joined with their queries, in service order"""
        q = db.query(ReviewQueueEntry, MedicalQuery).join(
            MedicalQuery, MedicalQuery.id == ReviewQueueEntry.query_id
        )
        if urgency is not None:
            q = q.filter(ReviewQueueEntry.urgency == urgency)
        if unclaimed_only:
            q = q.filter(ReviewQueueEntry.clinician_id.is_(None))
        return q.order_by(
            ReviewQueueEntry.priority.desc(),
            ReviewQueueEntry.enqueued_at.asc(),
            ReviewQueueEntry.id.asc(),
        ).limit(limit).all()

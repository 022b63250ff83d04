"""
Query Lifecycle Service

Orchestrates a patient query end to end: validation and throttling on submit,
drafting, safety scoring and routing in the background, and the clinician
review actions (claim, approve, reject, release).

State is always persisted before anyone is notified. Notifications are
fire-and-forget: a failing notifier is logged and never undoes or blocks a
state change.
"""
import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from careflow.config import settings
from careflow.errors import (
    AlreadyClaimed,
    InvalidTransition,
    NotClaimedByCaller,
    RateLimitExceeded,
    ValidationError,
)
from careflow.models.query import DraftSource, MedicalQuery, QueryStatus, QueryTransition, Urgency
from careflow.models.review import ReviewQueueEntry, URGENCY_PRIORITY
from careflow.services.audit_sink import AuditSink
from careflow.services.draft_requester import DraftRequester
from careflow.services.notification_bridge import EventType, TargetFilter, make_event
from careflow.services.rate_limiter import RateLimiter
from careflow.services.record_store import RecordStore
from careflow.services.review_queue import ReviewQueue
from careflow.services.safety_routing_service import ReviewRouter, SafetyScorer, UrgencyClassifier
from careflow.utils.locks import KeyedLocks

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

AUTOMATED_RESPONSE_NOTE = (
    "\n\nThis answer was prepared automatically and passed our safety checks. "
    "If your symptoms change or get worse, contact your care team."
)

MORE_INFORMATION_MESSAGE = (
    "A clinician reviewed your question and needs more information before answering."
)

VITAL_KEYS = ("blood_glucose", "blood_pressure", "heart_rate", "temperature")


def synthesize_response(draft_text: str) -> str:
    """Final patient-facing text for a draft that did not need review"""
    return draft_text.strip() + AUTOMATED_RESPONSE_NOTE


def query_payload(query: MedicalQuery) -> Dict[str, Any]:
    """Patient-visible view of a query, used in state-change events"""
    return {
        "queryId": query.id,
        "patientId": query.patient_id,
        "status": query.status.value,
        "urgency": query.urgency.value if query.urgency else None,
        "safetyScore": query.safety_score,
        "finalResponse": query.final_response,
        "updatedAt": query.updated_at.isoformat() if query.updated_at else None,
    }


class QueryLifecycle:
    """Drives queries through the pipeline and the clinician review actions"""

    def __init__(
        self,
        store: RecordStore,
        rate_limiter: RateLimiter,
        draft_requester: DraftRequester,
        scorer: SafetyScorer,
        classifier: UrgencyClassifier,
        router: ReviewRouter,
        review_queue: ReviewQueue,
        audit: AuditSink,
        notifier=None,
        query_locks: Optional[KeyedLocks] = None,
        pipeline_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.draft_requester = draft_requester
        self.scorer = scorer
        self.classifier = classifier
        self.router = router
        self.review_queue = review_queue
        self.audit = audit
        self.notifier = notifier  # anything with broadcast(event, TargetFilter)
        self.query_locks = query_locks or KeyedLocks()
        self.pipeline_attempts = (
            settings.PIPELINE_MAX_ATTEMPTS if pipeline_attempts is None else pipeline_attempts
        )
        self.retry_delay = settings.PIPELINE_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self._sleep = sleep

    # -- patient side -------------------------------------------------------

    def submit(
        self,
        patient_id: str,
        title: str,
        description: str,
        vitals: Optional[Mapping[str, Any]] = None,
        patient_context: Optional[Mapping[str, Any]] = None,
    ) -> MedicalQuery:
        """
        Validate, throttle and persist a new query, leaving it in `processing`.

        Raises:
            ValidationError: empty or oversized input (nothing is stored)
            RateLimitExceeded: patient is over the rolling cap (nothing is stored)
        """
        patient_id, title, description = self._validate(patient_id, title, description, vitals)
        patient_actor = self.audit.patient_reference(patient_id)

        decision = self.rate_limiter.check(patient_id)
        if not decision.allowed:
            self.audit.append(
                actor=patient_actor,
                action="query_submitted",
                patient_id=patient_id,
                outcome="rate_limited",
                detail={"retry_after": round(decision.retry_after, 1)},
            )
            raise RateLimitExceeded(patient_id, decision.retry_after)

        query_id = str(uuid.uuid4())
        clean_vitals = {k: vitals[k] for k in VITAL_KEYS if vitals and vitals.get(k) is not None}

        try:
            with self.store.unit_of_work() as db:
                self.store.create_query(
                    db, query_id, patient_id, title, description,
                    vitals=clean_vitals, patient_context=dict(patient_context or {}),
                )
                self.audit.append(patient_actor, "query_submitted", query_id, patient_id, db=db)
                query = self.store.apply_transition(
                    db, query_id, QueryStatus.SUBMITTED, QueryStatus.PROCESSING, actor=SYSTEM_ACTOR
                )
                self.audit.append(SYSTEM_ACTOR, "query_processing", query_id, patient_id, db=db)
        except Exception:
            # Nothing was stored, so the submission does not count against the patient
            self.rate_limiter.release(patient_id, decision.recorded_at)
            raise

        logger.info(f"Query {query_id} submitted by patient {patient_id}")
        self._notify_patient(query)
        return query

    def process(self, query_id: str) -> MedicalQuery:
        """
        Draft, score and route a query that is in `processing`.

        The model call happens outside any transaction or lock; only the
        resulting state changes are serialized per query.
        """
        with self.store.unit_of_work() as db:
            query = self.store.get_query(db, query_id)
            if query.status != QueryStatus.PROCESSING:
                raise InvalidTransition(query_id, query.status.value, QueryStatus.AI_PROCESSED.value)
            query_text = f"{query.title}\n\n{query.description}"
            vitals = dict(query.vitals or {})
            patient_context = dict(query.patient_context or {})
            patient_id = query.patient_id

        draft = self.draft_requester.request_draft(query_text, patient_context, vitals)
        source = DraftSource.FALLBACK if draft.used_fallback else DraftSource.MODEL

        entry = None
        with self.query_locks.hold(query_id), self.store.unit_of_work() as db:
            now = datetime.now()
            self.store.apply_transition(
                db, query_id, QueryStatus.PROCESSING, QueryStatus.AI_PROCESSED,
                actor=SYSTEM_ACTOR,
                detail=f"draft from {source.value} after {draft.attempts} attempt(s)",
                fields={
                    "draft_text": draft.text,
                    "draft_source": source,
                    "draft_attempts": draft.attempts,
                    "processed_at": now,
                },
            )
            self.audit.append(
                SYSTEM_ACTOR, "draft_received", query_id, patient_id, db=db,
                outcome="fallback" if draft.used_fallback else "success",
                detail={"attempts": draft.attempts, "error": draft.error},
            )

            score, penalties = self.scorer.score_with_breakdown(draft.text, vitals)
            urgency = self.classifier.classify(score, vitals)
            self.store.update_fields(
                db, query_id, QueryStatus.AI_PROCESSED,
                {"safety_score": score, "urgency": urgency},
            )
            routing = self.router.route(score, urgency, draft.text, vitals)

            if routing.needs_review:
                query = self.store.apply_transition(
                    db, query_id, QueryStatus.AI_PROCESSED, QueryStatus.QUEUED_FOR_REVIEW,
                    actor=SYSTEM_ACTOR, detail=routing.reasoning, fields={"queued_at": now},
                )
                entry = self.review_queue.enqueue(db, query_id, urgency)
                action = "queued_for_review"
            else:
                query = self.store.apply_transition(
                    db, query_id, QueryStatus.AI_PROCESSED, QueryStatus.COMPLETED,
                    actor=SYSTEM_ACTOR, detail=routing.reasoning,
                    fields={"final_response": synthesize_response(draft.text), "completed_at": now},
                )
                action = "query_completed"

            self.audit.append(
                SYSTEM_ACTOR, action, query_id, patient_id, db=db,
                detail={"score": score, "urgency": urgency.value, "penalties": penalties},
            )

        logger.info(
            f"Query {query_id} scored {score} ({urgency.value}) -> {query.status.value}"
        )
        self._notify_patient(query)
        if entry is not None:
            self._notify_clinicians(query_id, urgency, "added")
        return query

    def submit_and_process(
        self,
        patient_id: str,
        title: str,
        description: str,
        vitals: Optional[Mapping[str, Any]] = None,
        patient_context: Optional[Mapping[str, Any]] = None,
    ) -> MedicalQuery:
        query = self.submit(patient_id, title, description, vitals, patient_context)
        return self.process(query.id)

    def process_with_retry(self, query_id: str) -> MedicalQuery:
        """
        Run `process`, retrying storage errors such as a locked database.

        A failed attempt rolls back, so the query is still in `processing` and
        the next attempt starts over from the draft request.
        """
        attempts = max(1, self.pipeline_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return self.process(query_id)
            except SQLAlchemyError as e:
                if attempt == attempts:
                    raise
                delay = self.retry_delay * attempt
                logger.warning(
                    f"Processing query {query_id} failed (attempt {attempt}/{attempts}): {e!r}. "
                    f"Retrying in {delay:.1f}s"
                )
                self._sleep(delay)

    def resume_processing(self, stalled_for: Optional[float] = None) -> List[str]:
        """
        Finish queries left in `processing` by a failed run or a restart.

        With `stalled_for`, only queries untouched for that many seconds are
        picked up, so pipelines still waiting on the model are left alone.
        """
        updated_before = None
        if stalled_for is not None:
            updated_before = datetime.now() - timedelta(seconds=stalled_for)
        with self.store.unit_of_work() as db:
            query_ids = self.store.query_ids_in_status(db, QueryStatus.PROCESSING, updated_before)

        resumed = []
        for query_id in query_ids:
            try:
                self.process_with_retry(query_id)
            except InvalidTransition:
                # Another worker got there first
                continue
            except SQLAlchemyError:
                logger.exception(f"Resuming query {query_id} failed")
                continue
            resumed.append(query_id)

        if query_ids:
            logger.info(f"Resumed {len(resumed)} of {len(query_ids)} query(ies) left in processing")
        return resumed

    # -- clinician side -----------------------------------------------------

    def claim(self, query_id: str, clinician_id: str) -> MedicalQuery:
        """
        Take ownership of a queued query.

        Claiming a query you already hold is a no-op. Two clinicians racing for
        the same query: the first to reach the store wins, the other gets
        AlreadyClaimed.
        """
        clinician_id = self._require_actor(clinician_id)
        with self.query_locks.hold(query_id), self.store.unit_of_work() as db:
            query = self.store.get_query(db, query_id)
            if query.status == QueryStatus.IN_REVIEW:
                if query.clinician_id == clinician_id:
                    return query
                raise AlreadyClaimed(query_id, query.clinician_id)
            if query.status != QueryStatus.QUEUED_FOR_REVIEW:
                raise InvalidTransition(query_id, query.status.value, QueryStatus.IN_REVIEW.value)

            entry = self.review_queue.claim(db, query_id, clinician_id)
            query = self.store.apply_transition(
                db, query_id, QueryStatus.QUEUED_FOR_REVIEW, QueryStatus.IN_REVIEW,
                actor=clinician_id, fields={"clinician_id": clinician_id},
            )
            self.audit.append(clinician_id, "query_claimed", query_id, query.patient_id, db=db)

        logger.info(f"Query {query_id} claimed by clinician {clinician_id}")
        self._notify_patient(query)
        self._notify_clinicians(query_id, entry.urgency, "claimed", clinician_id)
        return query

    def approve(self, query_id: str, clinician_id: str, final_text: Optional[str] = None) -> MedicalQuery:
        """Deliver the clinician-approved answer (the draft, unless final_text replaces it)"""
        clinician_id = self._require_actor(clinician_id)
        with self.query_locks.hold(query_id), self.store.unit_of_work() as db:
            query = self._require_claimed_by(db, query_id, clinician_id)
            urgency = query.urgency

            response = (final_text if final_text is not None else query.draft_text or "").strip()
            if not response:
                raise ValidationError("final response must not be empty", field="final_text")
            if len(response) > settings.MAX_DESCRIPTION_LENGTH:
                raise ValidationError(
                    f"final response exceeds {settings.MAX_DESCRIPTION_LENGTH} characters",
                    field="final_text",
                )

            self.store.apply_transition(
                db, query_id, QueryStatus.IN_REVIEW, QueryStatus.APPROVED,
                actor=clinician_id,
                detail="edited" if final_text is not None else "draft approved",
                fields={"final_response": response},
            )
            self.review_queue.remove(db, query_id)
            query = self.store.apply_transition(
                db, query_id, QueryStatus.APPROVED, QueryStatus.COMPLETED,
                actor=clinician_id, fields={"completed_at": datetime.now()},
            )
            self.audit.append(
                clinician_id, "query_approved", query_id, query.patient_id, db=db,
                detail={"edited": final_text is not None},
            )

        logger.info(f"Query {query_id} approved by clinician {clinician_id}")
        self._notify_patient(query)
        self._notify_clinicians(query_id, urgency, "removed", clinician_id)
        return query

    def reject(self, query_id: str, clinician_id: str, reason: Optional[str] = None) -> MedicalQuery:
        """Close the query without an answer; the patient is asked for more information"""
        clinician_id = self._require_actor(clinician_id)
        reason = (reason or "").strip() or MORE_INFORMATION_MESSAGE
        with self.query_locks.hold(query_id), self.store.unit_of_work() as db:
            query = self._require_claimed_by(db, query_id, clinician_id)
            urgency = query.urgency
            query = self.store.apply_transition(
                db, query_id, QueryStatus.IN_REVIEW, QueryStatus.REJECTED,
                actor=clinician_id, detail=reason, fields={"rejection_reason": reason},
            )
            self.review_queue.remove(db, query_id)
            self.audit.append(clinician_id, "query_rejected", query_id, query.patient_id, db=db)

        logger.info(f"Query {query_id} rejected by clinician {clinician_id}")
        self._notify_patient(query, message=MORE_INFORMATION_MESSAGE)
        self._notify_clinicians(query_id, urgency, "removed", clinician_id)
        return query

    def release(self, query_id: str, clinician_id: str) -> MedicalQuery:
        """Give a claimed query back to the queue for any clinician to pick up"""
        clinician_id = self._require_actor(clinician_id)
        with self.query_locks.hold(query_id), self.store.unit_of_work() as db:
            self._require_claimed_by(db, query_id, clinician_id)
            entry = self.review_queue.release(db, query_id, clinician_id)
            query = self.store.apply_transition(
                db, query_id, QueryStatus.IN_REVIEW, QueryStatus.QUEUED_FOR_REVIEW,
                actor=clinician_id, detail="released", fields={"clinician_id": None},
            )
            self.audit.append(clinician_id, "query_released", query_id, query.patient_id, db=db)

        logger.info(f"Query {query_id} released by clinician {clinician_id}")
        self._notify_patient(query)
        self._notify_clinicians(query_id, entry.urgency, "released", clinician_id)
        return query

    # -- reads --------------------------------------------------------------

    def get_query(self, query_id: str) -> MedicalQuery:
        with self.store.unit_of_work() as db:
            return self.store.get_query(db, query_id)

    def get_history(self, query_id: str) -> List[QueryTransition]:
        with self.store.unit_of_work() as db:
            self.store.get_query(db, query_id)
            return self.store.get_transitions(db, query_id)

    def list_patient_queries(self, patient_id: str, limit: int = 20, offset: int = 0) -> List[MedicalQuery]:
        with self.store.unit_of_work() as db:
            return self.store.list_patient_queries(db, patient_id, limit=limit, offset=offset)

    def list_review_queue(
        self,
        urgency: Optional[Urgency] = None,
        unclaimed_only: bool = False,
        limit: int = 100,
    ) -> List[Tuple[ReviewQueueEntry, MedicalQuery]]:
        with self.store.unit_of_work() as db:
            return self.review_queue.list_entries(
                db, urgency=urgency, unclaimed_only=unclaimed_only, limit=limit
            )

    def warm_rate_limiter(self) -> int:
        """Rebuild rate windows from recent submissions; returns patients seeded"""
        with self.store.unit_of_work() as db:
            times = self.store.submission_times_since(db, self.rate_limiter.window_seconds)
        for patient_id, timestamps in times.items():
            self.rate_limiter.rebuild(patient_id, timestamps)
        if times:
            logger.info(f"Rate limiter warmed for {len(times)} patient(s)")
        return len(times)

    # -- helpers ------------------------------------------------------------

    def _validate(self, patient_id, title, description, vitals) -> Tuple[str, str, str]:
        patient_id = (patient_id or "").strip()
        title = (title or "").strip()
        description = (description or "").strip()

        if not patient_id:
            raise ValidationError("patient_id is required", field="patient_id")
        if not title:
            raise ValidationError("title must not be empty", field="title")
        if not description:
            raise ValidationError("description must not be empty", field="description")
        if len(title) > settings.MAX_TITLE_LENGTH:
            raise ValidationError(
                f"title exceeds {settings.MAX_TITLE_LENGTH} characters", field="title"
            )
        if len(description) > settings.MAX_DESCRIPTION_LENGTH:
            raise ValidationError(
                f"description exceeds {settings.MAX_DESCRIPTION_LENGTH} characters",
                field="description",
            )
        if vitals is not None and not isinstance(vitals, Mapping):
            raise ValidationError("vitals must be an object", field="vitals")
        return patient_id, title, description

    @staticmethod
    def _require_actor(clinician_id: str) -> str:
        clinician_id = (clinician_id or "").strip()
        if not clinician_id:
            raise ValidationError("clinician_id is required", field="clinician_id")
        return clinician_id

    def _require_claimed_by(self, db, query_id: str, clinician_id: str) -> MedicalQuery:
        query = self.store.get_query(db, query_id)
        if query.is_terminal:
            raise InvalidTransition(query_id, query.status.value, "review action")
        if query.status == QueryStatus.QUEUED_FOR_REVIEW or (
            query.status == QueryStatus.IN_REVIEW and query.clinician_id != clinician_id
        ):
            raise NotClaimedByCaller(query_id, clinician_id)
        if query.status != QueryStatus.IN_REVIEW:
            raise InvalidTransition(query_id, query.status.value, "review action")
        self.review_queue.require_claim(db, query_id, clinician_id)
        return query

    def _broadcast(self, event: Dict[str, Any], target: TargetFilter) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.broadcast(event, target)
        except Exception as e:
            logger.warning(f"Dropping {event.get('type')} notification: {e!r}")

    def _notify_patient(self, query: MedicalQuery, message: Optional[str] = None) -> None:
        payload = query_payload(query)
        if message:
            payload["message"] = message
        self._broadcast(
            make_event(EventType.QUERY_STATE_CHANGED, payload),
            TargetFilter(patient_id=query.patient_id),
        )

    def _notify_clinicians(
        self, query_id: str, urgency: Optional[Urgency], action: str, clinician_id: Optional[str] = None
    ) -> None:
        self._broadcast(
            make_event(EventType.REVIEW_QUEUE_UPDATED, {
                "queryId": query_id,
                "priority": URGENCY_PRIORITY.get(urgency),
                "urgency": urgency.value if urgency else None,
                "action": action,
                "clinicianId": clinician_id,
            }),
            TargetFilter(clinicians=True),
        )

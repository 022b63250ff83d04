"""Unit tests for query_lifecycle.py"""
import threading
import pytest
import requests
from sqlalchemy.exc import OperationalError
from careflow.errors import (
    AlreadyClaimed,
    InvalidTransition,
    NotClaimedByCaller,
    QueryNotFound,
    RateLimitExceeded,
    ValidationError,
)
from careflow.models.audit import AuditEntry
from careflow.models.query import DraftSource, MedicalQuery, QueryStatus, Urgency
from careflow.models.review import ReviewQueueEntry
from careflow.services.audit_sink import patient_reference
from careflow.services.query_lifecycle import AUTOMATED_RESPONSE_NOTE, MORE_INFORMATION_MESSAGE
from careflow.services.rate_limiter import RateLimiter
from tests.fixtures.sample_data import (
    BENIGN_DRAFT,
    CRITICAL_DRAFT,
    NEUTRAL_HYPOGLYCEMIA_DRAFT,
    REFERRAL_DRAFT,
    FailingNotifier,
)

class TestSubmit:
    """Tests for validation and throttling on submit"""

    def test_submit_leaves_query_processing(self, lifecycle, notifier):
        query = lifecycle.submit("P1", "Question", "Is my reading fine?", vitals={"blood_glucose": 110})

        assert query.status == QueryStatus.PROCESSING
        assert query.vitals == {"blood_glucose": 110}
        events = notifier.events("query_state_changed")
        assert events[-1][0]["payload"]["status"] == "processing"
        assert events[-1][1].patient_id == "P1"

    @pytest.mark.parametrize("title,description", [
        ("", "Something"),
        ("   ", "Something"),
        ("Title", ""),
        ("x" * 201, "Something"),
        ("Title", "y" * 5001),
    ])
    def test_invalid_input_creates_nothing(self, lifecycle, test_db, title, description):
        with pytest.raises(ValidationError):
            lifecycle.submit("P1", title, description)
        assert test_db.query(MedicalQuery).count() == 0

    def test_missing_patient_id(self, lifecycle):
        with pytest.raises(ValidationError) as exc_info:
            lifecycle.submit("", "Title", "Description")
        assert exc_info.value.field == "patient_id"

    def test_eleventh_submission_is_rate_limited(self, lifecycle, clock, test_db):
        for i in range(10):
            lifecycle.submit("P1", f"Question {i}", "Description")

        with pytest.raises(RateLimitExceeded) as exc_info:
            lifecycle.submit("P1", "One too many", "Description")
        assert exc_info.value.retry_after > 0
        assert test_db.query(MedicalQuery).count() == 10

        # Other patients are unaffected
        lifecycle.submit("P2", "Question", "Description")

        clock.advance(3600)
        assert lifecycle.submit("P1", "Next hour", "Description").status == QueryStatus.PROCESSING

    def test_rate_limited_attempt_is_audited(self, lifecycle, rate_limiter, test_db):
        rate_limiter.max_requests = 0
        with pytest.raises(RateLimitExceeded):
            lifecycle.submit("P1", "Question", "Description")
        entry = test_db.query(AuditEntry).one()
        assert entry.outcome == "rate_limited"
        assert entry.query_id is None
        assert entry.actor == patient_reference("P1", "test-salt")

    def test_failed_store_write_returns_rate_limit_slot(self, lifecycle, rate_limiter, test_db, monkeypatch):
        def broken_create(*args, **kwargs):
            raise OperationalError("INSERT INTO medical_queries", {}, Exception("disk I/O error"))

        monkeypatch.setattr(lifecycle.store, "create_query", broken_create)
        with pytest.raises(OperationalError):
            lifecycle.submit("P1", "Question", "Description")

        assert test_db.query(MedicalQuery).count() == 0
        assert rate_limiter.tracked_patients == 0
        assert rate_limiter.check("P1").remaining == 9

class TestProcess:
    """Tests for drafting, scoring and routing"""

    def test_low_glucose_is_queued_for_review(self, queued_query, test_db, notifier):
        assert queued_query.status == QueryStatus.QUEUED_FOR_REVIEW
        assert queued_query.safety_score == 50
        assert queued_query.urgency == Urgency.MEDIUM
        assert queued_query.final_response is None

        entry = test_db.query(ReviewQueueEntry).one()
        assert entry.query_id == queued_query.id
        assert entry.priority == 2

        clinician_events = notifier.events("review_queue_updated")
        assert len(clinician_events) == 1
        event, target = clinician_events[0]
        assert event["payload"]["queryId"] == queued_query.id
        assert event["payload"]["priority"] == 2
        assert event["payload"]["action"] == "added"
        assert target.clinicians is True

    def test_benign_query_completes_directly(self, lifecycle, test_db, notifier):
        query = lifecycle.submit_and_process(
            "P1", "Routine check", "My reading this morning was 110", vitals={"blood_glucose": 110}
        )

        assert query.status == QueryStatus.COMPLETED
        assert query.safety_score == 100
        assert query.urgency == Urgency.LOW
        assert query.draft_source == DraftSource.MODEL
        assert query.final_response == BENIGN_DRAFT + AUTOMATED_RESPONSE_NOTE
        assert query.completed_at is not None
        assert test_db.query(ReviewQueueEntry).count() == 0
        assert notifier.events("review_queue_updated") == []
        assert notifier.events("query_state_changed")[-1][0]["payload"]["status"] == "completed"

    def test_critical_draft_is_high_urgency(self, lifecycle, model_session, test_db):
        model_session.reply = CRITICAL_DRAFT
        query = lifecycle.submit_and_process("P1", "Chest", "My chest hurts")
        assert query.urgency == Urgency.HIGH
        assert query.status == QueryStatus.QUEUED_FOR_REVIEW
        assert test_db.query(ReviewQueueEntry).one().priority == 3

    def test_low_glucose_is_reviewed_whatever_the_draft_says(self, lifecycle, model_session, test_db):
        model_session.reply = NEUTRAL_HYPOGLYCEMIA_DRAFT
        query = lifecycle.submit_and_process(
            "P1", "Low sugar", "I feel shaky and my glucose reads 60", vitals={"blood_glucose": 60}
        )

        assert query.safety_score == 70
        assert query.urgency == Urgency.MEDIUM
        assert query.status == QueryStatus.QUEUED_FOR_REVIEW
        assert test_db.query(ReviewQueueEntry).one().query_id == query.id
        detail = lifecycle.get_history(query.id)[-1].detail
        assert "Blood glucose outside the safe range" in detail

    def test_referral_advice_is_reviewed(self, lifecycle, model_session, test_db):
        model_session.reply = REFERRAL_DRAFT
        query = lifecycle.submit_and_process(
            "P1", "Numb feet", "My feet feel numb", vitals={"blood_glucose": 110}
        )

        assert query.safety_score == 100
        assert query.urgency == Urgency.LOW
        assert query.status == QueryStatus.QUEUED_FOR_REVIEW
        assert test_db.query(ReviewQueueEntry).one().priority == 1

    def test_model_timeouts_fall_back_and_finish(self, lifecycle, model_session):
        model_session.outcomes = [requests.exceptions.Timeout()] * 3
        query = lifecycle.submit_and_process(
            "P1", "Question", "Is 110 fine?", vitals={"blood_glucose": 110}
        )

        assert query.draft_source == DraftSource.FALLBACK
        assert query.draft_attempts == 3
        assert query.draft_text
        assert query.safety_score is not None
        assert query.status in (QueryStatus.COMPLETED, QueryStatus.QUEUED_FOR_REVIEW)

        history = [t.to_status for t in lifecycle.get_history(query.id)]
        assert QueryStatus.AI_PROCESSED in history

    def test_history_records_every_step(self, queued_query, lifecycle):
        history = lifecycle.get_history(queued_query.id)
        assert [(t.from_status, t.to_status) for t in history] == [
            (None, QueryStatus.SUBMITTED),
            (QueryStatus.SUBMITTED, QueryStatus.PROCESSING),
            (QueryStatus.PROCESSING, QueryStatus.AI_PROCESSED),
            (QueryStatus.AI_PROCESSED, QueryStatus.QUEUED_FOR_REVIEW),
        ]

    def test_process_twice_is_rejected(self, queued_query, lifecycle):
        with pytest.raises(InvalidTransition):
            lifecycle.process(queued_query.id)

    def test_process_unknown_query(self, lifecycle):
        with pytest.raises(QueryNotFound):
            lifecycle.process("does-not-exist")

    def test_notifier_failure_does_not_affect_state(self, lifecycle):
        lifecycle.notifier = FailingNotifier()
        query = lifecycle.submit_and_process("P1", "Routine", "Reading 110", vitals={"blood_glucose": 110})
        assert query.status == QueryStatus.COMPLETED
        assert lifecycle.get_query(query.id).status == QueryStatus.COMPLETED

class TestPipelineRecovery:
    """Storage errors never leave a query stuck in processing"""

    @staticmethod
    def _fail_updates(lifecycle, monkeypatch, failures):
        original = lifecycle.store.update_fields
        calls = {"count": 0}

        def flaky_update(*args, **kwargs):
            calls["count"] += 1
            if calls["count"] <= failures:
                raise OperationalError("UPDATE medical_queries", {}, Exception("database is locked"))
            return original(*args, **kwargs)

        monkeypatch.setattr(lifecycle.store, "update_fields", flaky_update)
        return calls

    def test_storage_error_is_retried(self, lifecycle, model_session, monkeypatch):
        query = lifecycle.submit("P1", "Routine", "Reading 110", vitals={"blood_glucose": 110})
        calls = self._fail_updates(lifecycle, monkeypatch, failures=1)

        result = lifecycle.process_with_retry(query.id)

        assert result.status == QueryStatus.COMPLETED
        assert calls["count"] == 2
        assert len(model_session.calls) == 2
        # The failed attempt rolled back, so each step is recorded once
        statuses = [t.to_status for t in lifecycle.get_history(query.id)]
        assert statuses.count(QueryStatus.AI_PROCESSED) == 1

    def test_retries_are_bounded(self, lifecycle, monkeypatch):
        query = lifecycle.submit("P1", "Routine", "Reading 110", vitals={"blood_glucose": 110})
        calls = self._fail_updates(lifecycle, monkeypatch, failures=10)

        with pytest.raises(OperationalError):
            lifecycle.process_with_retry(query.id)

        assert calls["count"] == 3
        assert lifecycle.get_query(query.id).status == QueryStatus.PROCESSING

    def test_resume_finishes_stuck_queries(self, lifecycle, monkeypatch):
        stuck = lifecycle.submit("P1", "Routine", "Reading 110", vitals={"blood_glucose": 110})
        done = lifecycle.submit_and_process("P2", "Routine", "Reading 110", vitals={"blood_glucose": 110})
        original = lifecycle.store.update_fields
        self._fail_updates(lifecycle, monkeypatch, failures=3)
        with pytest.raises(OperationalError):
            lifecycle.process_with_retry(stuck.id)
        monkeypatch.setattr(lifecycle.store, "update_fields", original)

        assert lifecycle.resume_processing() == [stuck.id]
        assert lifecycle.get_query(stuck.id).status == QueryStatus.COMPLETED
        assert lifecycle.get_query(done.id).status == QueryStatus.COMPLETED

    def test_resume_skips_recent_queries(self, lifecycle):
        query = lifecycle.submit("P1", "Routine", "Reading 110", vitals={"blood_glucose": 110})

        assert lifecycle.resume_processing(stalled_for=300) == []
        assert lifecycle.get_query(query.id).status == QueryStatus.PROCESSING

        assert lifecycle.resume_processing(stalled_for=0) == [query.id]


class TestClinicianActions:
    """Tests for claim, approve, reject and release"""

    def test_claim_moves_to_in_review(self, lifecycle, queued_query, notifier):
        query = lifecycle.claim(queued_query.id, "dr-1")
        assert query.status == QueryStatus.IN_REVIEW
        assert query.clinician_id == "dr-1"
        assert notifier.events("review_queue_updated")[-1][0]["payload"]["action"] == "claimed"

    def test_claim_is_idempotent_for_holder(self, lifecycle, queued_query):
        lifecycle.claim(queued_query.id, "dr-1")
        assert lifecycle.claim(queued_query.id, "dr-1").clinician_id == "dr-1"

    def test_second_clinician_gets_already_claimed(self, lifecycle, queued_query):
        lifecycle.claim(queued_query.id, "dr-1")
        with pytest.raises(AlreadyClaimed):
            lifecycle.claim(queued_query.id, "dr-2")

    def test_concurrent_claims_have_one_winner(self, lifecycle, queued_query):
        barrier = threading.Barrier(2)
        outcomes = {}

        def attempt(clinician_id):
            barrier.wait()
            try:
                lifecycle.claim(queued_query.id, clinician_id)
                outcomes[clinician_id] = "claimed"
            except AlreadyClaimed:
                outcomes[clinician_id] = "already_claimed"

        threads = [threading.Thread(target=attempt, args=(c,)) for c in ("dr-1", "dr-2")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes.values()) == ["already_claimed", "claimed"]
        winner = next(c for c, outcome in outcomes.items() if outcome == "claimed")
        assert lifecycle.get_query(queued_query.id).clinician_id == winner

    def test_approve_delivers_draft(self, lifecycle, queued_query, test_db, notifier):
        lifecycle.claim(queued_query.id, "dr-1")
        query = lifecycle.approve(queued_query.id, "dr-1")

        assert query.status == QueryStatus.COMPLETED
        assert query.final_response == queued_query.draft_text
        assert test_db.query(ReviewQueueEntry).count() == 0

        statuses = [t.to_status for t in lifecycle.get_history(query.id)]
        assert statuses[-2:] == [QueryStatus.APPROVED, QueryStatus.COMPLETED]
        patient_event = notifier.events("query_state_changed")[-1][0]
        assert patient_event["payload"]["finalResponse"] == queued_query.draft_text

    def test_approve_with_edited_text(self, lifecycle, queued_query):
        lifecycle.claim(queued_query.id, "dr-1")
        query = lifecycle.approve(queued_query.id, "dr-1", final_text="Eat something sweet now and call us.")
        assert query.final_response == "Eat something sweet now and call us."

    def test_approve_requires_claim(self, lifecycle, queued_query):
        with pytest.raises(NotClaimedByCaller):
            lifecycle.approve(queued_query.id, "dr-1")

        lifecycle.claim(queued_query.id, "dr-1")
        with pytest.raises(NotClaimedByCaller):
            lifecycle.approve(queued_query.id, "dr-2")

    def test_approve_rejects_empty_text(self, lifecycle, queued_query):
        lifecycle.claim(queued_query.id, "dr-1")
        with pytest.raises(ValidationError):
            lifecycle.approve(queued_query.id, "dr-1", final_text="   ")
        assert lifecycle.get_query(queued_query.id).status == QueryStatus.IN_REVIEW

    def test_reject_asks_for_more_information(self, lifecycle, queued_query, test_db, notifier):
        lifecycle.claim(queued_query.id, "dr-1")
        query = lifecycle.reject(queued_query.id, "dr-1", reason="Need meal details")

        assert query.status == QueryStatus.REJECTED
        assert query.rejection_reason == "Need meal details"
        assert test_db.query(ReviewQueueEntry).count() == 0
        payload = notifier.events("query_state_changed")[-1][0]["payload"]
        assert payload["status"] == "rejected"
        assert payload["message"] == MORE_INFORMATION_MESSAGE

    def test_release_returns_query_to_queue(self, lifecycle, queued_query, notifier):
        lifecycle.claim(queued_query.id, "dr-1")
        query = lifecycle.release(queued_query.id, "dr-1")

        assert query.status == QueryStatus.QUEUED_FOR_REVIEW
        assert query.clinician_id is None
        unclaimed = lifecycle.list_review_queue(unclaimed_only=True)
        assert [entry.query_id for entry, _ in unclaimed] == [queued_query.id]
        assert notifier.events("review_queue_updated")[-1][0]["payload"]["action"] == "released"

        # Another clinician can now pick it up
        assert lifecycle.claim(queued_query.id, "dr-2").clinician_id == "dr-2"

    def test_release_by_non_holder(self, lifecycle, queued_query):
        lifecycle.claim(queued_query.id, "dr-1")
        with pytest.raises(NotClaimedByCaller):
            lifecycle.release(queued_query.id, "dr-2")

class TestTerminalStates:
    """Completed and rejected queries never change again"""

    def _assert_frozen(self, lifecycle, query_id, status):
        for action in (
            lambda: lifecycle.claim(query_id, "dr-1"),
            lambda: lifecycle.approve(query_id, "dr-1"),
            lambda: lifecycle.reject(query_id, "dr-1"),
            lambda: lifecycle.release(query_id, "dr-1"),
            lambda: lifecycle.process(query_id),
        ):
            with pytest.raises(InvalidTransition):
                action()
        assert lifecycle.get_query(query_id).status == status

    def test_completed_is_terminal(self, lifecycle, queued_query):
        lifecycle.claim(queued_query.id, "dr-1")
        lifecycle.approve(queued_query.id, "dr-1")
        self._assert_frozen(lifecycle, queued_query.id, QueryStatus.COMPLETED)

    def test_auto_completed_is_terminal(self, lifecycle):
        query = lifecycle.submit_and_process("P1", "Routine", "Reading 110", vitals={"blood_glucose": 110})
        self._assert_frozen(lifecycle, query.id, QueryStatus.COMPLETED)

    def test_rejected_is_terminal(self, lifecycle, queued_query):
        lifecycle.claim(queued_query.id, "dr-1")
        lifecycle.reject(queued_query.id, "dr-1")
        self._assert_frozen(lifecycle, queued_query.id, QueryStatus.REJECTED)

class TestAuditAndReads:
    """Tests for the audit trail and read operations"""

    def test_every_step_is_audited_without_raw_patient_id(self, lifecycle, queued_query, test_db):
        lifecycle.claim(queued_query.id, "dr-1")
        lifecycle.approve(queued_query.id, "dr-1")

        entries = test_db.query(AuditEntry).filter(
            AuditEntry.query_id == queued_query.id
        ).order_by(AuditEntry.id).all()
        assert [e.action for e in entries] == [
            "query_submitted",
            "query_processing",
            "draft_received",
            "queued_for_review",
            "query_claimed",
            "query_approved",
        ]
        expected_ref = patient_reference("P1", "test-salt")
        assert all(e.patient_ref == expected_ref for e in entries)
        assert all(e.patient_ref != "P1" for e in entries)
        assert entries[0].actor == expected_ref
        assert all(e.actor != "P1" for e in entries)
        assert entries[-1].actor == "dr-1"

    def test_list_patient_queries(self, lifecycle):
        lifecycle.submit("P1", "First", "Description")
        lifecycle.submit("P1", "Second", "Description")
        lifecycle.submit("P2", "Other", "Description")
        titles = {q.title for q in lifecycle.list_patient_queries("P1")}
        assert titles == {"First", "Second"}

    def test_warm_rate_limiter_from_history(self, lifecycle):
        for i in range(3):
            lifecycle.submit("P1", f"Question {i}", "Description")

        lifecycle.rate_limiter = RateLimiter(max_requests=3, window_seconds=3600)
        assert lifecycle.warm_rate_limiter() == 1
        with pytest.raises(RateLimitExceeded):
            lifecycle.submit("P1", "Fourth", "Description")

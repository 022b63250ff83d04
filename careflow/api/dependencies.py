"""Shared service instances and error mapping for the API routers"""
from functools import lru_cache

from fastapi import HTTPException

from careflow.database import SessionLocal
from careflow.errors import (
    AlreadyClaimed,
    CareFlowError,
    InvalidTransition,
    NotClaimedByCaller,
    QueryNotFound,
    RateLimitExceeded,
    ValidationError,
)
from careflow.services.audit_sink import AuditSink
from careflow.services.draft_requester import DraftRequester
from careflow.services.notification_bridge import NotificationBridge
from careflow.services.query_lifecycle import QueryLifecycle
from careflow.services.rate_limiter import RateLimiter
from careflow.services.record_store import RecordStore
from careflow.services.review_queue import ReviewQueue
from careflow.services.safety_routing_service import ReviewRouter, SafetyScorer, UrgencyClassifier


@lru_cache(maxsize=1)
def get_bridge() -> NotificationBridge:
    """Process-wide connection registry"""
    return NotificationBridge()


@lru_cache(maxsize=1)
def get_lifecycle() -> QueryLifecycle:
    """Process-wide pipeline, wired to the configured database and model endpoint"""
    return QueryLifecycle(
        store=RecordStore(SessionLocal),
        rate_limiter=RateLimiter(),
        draft_requester=DraftRequester(),
        scorer=SafetyScorer(),
        classifier=UrgencyClassifier(),
        router=ReviewRouter(),
        review_queue=ReviewQueue(),
        audit=AuditSink(SessionLocal),
        notifier=get_bridge(),
    )


def http_error(exc: CareFlowError) -> HTTPException:
    """Translate a pipeline error into the HTTP response callers see"""
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail={"message": str(exc), "field": exc.field})
    if isinstance(exc, RateLimitExceeded):
        return HTTPException(
            status_code=429,
            detail=str(exc),
            headers={"Retry-After": str(max(1, int(round(exc.retry_after))))},
        )
    if isinstance(exc, QueryNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, NotClaimedByCaller):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, (AlreadyClaimed, InvalidTransition)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))

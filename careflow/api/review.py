"""
Clinician Review API Endpoints

Queue listing and the review actions. Every action names the acting
clinician; the lifecycle enforces that only the claim holder can approve,
reject or release.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from careflow.api.dependencies import get_lifecycle, http_error
from careflow.api.queries import serialize_query
from careflow.errors import CareFlowError
from careflow.models.query import Urgency
from careflow.services.query_lifecycle import QueryLifecycle

router = APIRouter(prefix="/api/review", tags=["review"])


class ClinicianAction(BaseModel):
    """Request model for claim and release"""
    clinician_id: str


class ApproveRequest(BaseModel):
    clinician_id: str
    final_text: Optional[str] = None  # None approves the draft as written


class RejectRequest(BaseModel):
    clinician_id: str
    reason: Optional[str] = None


@router.get("/queue")
def get_review_queue(
    urgency: Optional[str] = None,
    unclaimed_only: bool = False,
    limit: int = Query(100, ge=1, le=500),
    lifecycle: QueryLifecycle = Depends(get_lifecycle),
):
    """
    Queries awaiting review, highest priority first and oldest first within
    a priority.
    """
    urgency_filter = None
    if urgency:
        try:
            urgency_filter = Urgency(urgency.upper())
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid urgency. Must be one of: {[u.value for u in Urgency]}"
            )

    entries = lifecycle.list_review_queue(
        urgency=urgency_filter, unclaimed_only=unclaimed_only, limit=limit
    )
    return {
        "entries": [
            {
                "query_id": entry.query_id,
                "priority": entry.priority,
                "urgency": entry.urgency.value,
                "clinician_id": entry.clinician_id,
                "enqueued_at": entry.enqueued_at.isoformat() if entry.enqueued_at else None,
                "claimed_at": entry.claimed_at.isoformat() if entry.claimed_at else None,
                "query": serialize_query(query),
            }
            for entry, query in entries
        ],
        "count": len(entries),
    }


@router.post("/{query_id}/claim")
def claim_query(
    query_id: str,
    request: ClinicianAction,
    lifecycle: QueryLifecycle = Depends(get_lifecycle),
):
    """Claim a queued query. 409 if another clinician holds it."""
    try:
        return serialize_query(lifecycle.claim(query_id, request.clinician_id))
    except CareFlowError as e:
        raise http_error(e)


@router.post("/{query_id}/approve")
def approve_query(
    query_id: str,
    request: ApproveRequest,
    lifecycle: QueryLifecycle = Depends(get_lifecycle),
):
    """Approve the draft (optionally edited) and deliver it to the patient"""
    try:
        return serialize_query(
            lifecycle.approve(query_id, request.clinician_id, final_text=request.final_text)
        )
    except CareFlowError as e:
        raise http_error(e)


@router.post("/{query_id}/reject")
def reject_query(
    query_id: str,
    request: RejectRequest,
    lifecycle: QueryLifecycle = Depends(get_lifecycle),
):
    """Reject the draft; the patient is asked for more information"""
    try:
        return serialize_query(lifecycle.reject(query_id, request.clinician_id, reason=request.reason))
    except CareFlowError as e:
        raise http_error(e)


@router.post("/{query_id}/release")
def release_query(
    query_id: str,
    request: ClinicianAction,
    lifecycle: QueryLifecycle = Depends(get_lifecycle),
):
    """Return a claimed query to the queue"""
    try:
        return serialize_query(lifecycle.release(query_id, request.clinician_id))
    except CareFlowError as e:
        raise http_error(e)


@router.get("/thresholds")
def get_review_thresholds(lifecycle: QueryLifecycle = Depends(get_lifecycle)):
    """Current urgency and review routing thresholds"""
    return lifecycle.router.get_thresholds(lifecycle.classifier)

"""FastAPI endpoints for patient query submission and lookup"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from careflow.api.dependencies import get_lifecycle, http_error
from careflow.database import get_db
from careflow.errors import CareFlowError
from careflow.models.query import MedicalQuery
from careflow.services.query_lifecycle import QueryLifecycle
from careflow.services.stats_service import QueueStatsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["queries"])


class Vitals(BaseModel):
    """Vital signs; values may be numbers or strings such as "120/80" """
    blood_glucose: Optional[Any] = None
    blood_pressure: Optional[Any] = None
    heart_rate: Optional[Any] = None
    temperature: Optional[Any] = None


class PatientContext(BaseModel):
    diabetes_type: Optional[str] = None
    medications: List[str] = Field(default_factory=list)
    allergies: List[str] = Field(default_factory=list)
    medical_history: Optional[str] = None


class SubmitQueryRequest(BaseModel):
    """Request model for a new patient query"""
    patient_id: str
    title: str
    description: str
    vitals: Optional[Vitals] = None
    patient_context: Optional[PatientContext] = None


def serialize_query(query: MedicalQuery) -> Dict[str, Any]:
    return {
        "id": query.id,
        "patient_id": query.patient_id,
        "clinician_id": query.clinician_id,
        "title": query.title,
        "description": query.description,
        "vitals": query.vitals or {},
        "status": query.status.value,
        "draft_text": query.draft_text,
        "draft_source": query.draft_source.value if query.draft_source else None,
        "safety_score": query.safety_score,
        "urgency": query.urgency.value if query.urgency else None,
        "final_response": query.final_response,
        "rejection_reason": query.rejection_reason,
        "created_at": query.created_at.isoformat() if query.created_at else None,
        "updated_at": query.updated_at.isoformat() if query.updated_at else None,
        "completed_at": query.completed_at.isoformat() if query.completed_at else None,
    }


def run_pipeline(lifecycle: QueryLifecycle, query_id: str) -> None:
    """Background task: draft, score and route a submitted query"""
    try:
        lifecycle.process_with_retry(query_id)
    except Exception:
        # The HTTP response has already been sent; the query stays in processing
        # until the maintenance sweep resumes it
        logger.exception(f"Processing failed for query {query_id}")


@router.post("/queries", status_code=202)
def submit_query(
    request: SubmitQueryRequest,
    background_tasks: BackgroundTasks,
    lifecycle: QueryLifecycle = Depends(get_lifecycle),
):
    """
    Submit a patient query.

    Returns as soon as the query is stored; drafting, scoring and routing run
    in the background and progress is pushed over the live channel.
    """
    try:
        query = lifecycle.submit(
            patient_id=request.patient_id,
            title=request.title,
            description=request.description,
            vitals=request.vitals.model_dump(exclude_none=True) if request.vitals else None,
            patient_context=request.patient_context.model_dump() if request.patient_context else None,
        )
    except CareFlowError as e:
        raise http_error(e)

    background_tasks.add_task(run_pipeline, lifecycle, query.id)
    return {"query_id": query.id, "status": query.status.value}


@router.get("/queries/stats")
def get_query_stats(
    hours: int = Query(24, ge=1, le=24 * 30),
    db: Session = Depends(get_db),
):
    """Routing and review statistics for the monitoring dashboard"""
    return QueueStatsService(db).get_routing_stats(hours=hours)


@router.get("/queries/{query_id}")
def get_query(query_id: str, lifecycle: QueryLifecycle = Depends(get_lifecycle)):
    """Get a single query with its current status"""
    try:
        return serialize_query(lifecycle.get_query(query_id))
    except CareFlowError as e:
        raise http_error(e)


@router.get("/queries/{query_id}/history")
def get_query_history(query_id: str, lifecycle: QueryLifecycle = Depends(get_lifecycle)):
    """Every status change of a query, oldest first"""
    try:
        transitions = lifecycle.get_history(query_id)
    except CareFlowError as e:
        raise http_error(e)

    return [
        {
            "from_status": t.from_status.value if t.from_status else None,
            "to_status": t.to_status.value,
            "actor": t.actor,
            "detail": t.detail,
            "timestamp": t.timestamp.isoformat() if t.timestamp else None,
        }
        for t in transitions
    ]


@router.get("/patients/{patient_id}/queries")
def list_patient_queries(
    patient_id: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    lifecycle: QueryLifecycle = Depends(get_lifecycle),
):
    """A patient's queries, newest first"""
    queries = lifecycle.list_patient_queries(patient_id, limit=limit, offset=offset)
    return {
        "patient_id": patient_id,
        "queries": [serialize_query(q) for q in queries],
        "count": len(queries),
    }

"""WebSocket endpoints for live query updates"""
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from careflow.api.dependencies import get_bridge, get_lifecycle
from careflow.errors import CareFlowError, QueryNotFound
from careflow.models.query import MedicalQuery
from careflow.services.notification_bridge import (
    ConnectionRole,
    EventType,
    NotificationBridge,
    make_event,
)
from careflow.services.query_lifecycle import QueryLifecycle, query_payload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])


def _snapshot(lifecycle: QueryLifecycle, role: ConnectionRole, subscriber_id: str):
    """Current state a reconnecting client needs to catch up"""
    if role == ConnectionRole.PATIENT:
        queries = lifecycle.list_patient_queries(subscriber_id)
        return {"queries": [query_payload(q) for q in queries]}

    entries = lifecycle.list_review_queue()
    return {
        "queue": [
            {
                "queryId": entry.query_id,
                "priority": entry.priority,
                "urgency": entry.urgency.value,
                "clinicianId": entry.clinician_id,
                "title": query.title,
                "safetyScore": query.safety_score,
            }
            for entry, query in entries
        ]
    }


def _visible_query(
    lifecycle: QueryLifecycle, role: ConnectionRole, subscriber_id: str, query_id: str
) -> MedicalQuery:
    # Patients only ever see their own queries; anything else looks missing
    query = lifecycle.get_query(query_id)
    if role == ConnectionRole.PATIENT and query.patient_id != subscriber_id:
        raise QueryNotFound(query_id)
    return query


def _query_status(lifecycle, role, subscriber_id, query_id) -> Dict[str, Any]:
    return query_payload(_visible_query(lifecycle, role, subscriber_id, query_id))


def _query_history(lifecycle, role, subscriber_id, query_id) -> Dict[str, Any]:
    _visible_query(lifecycle, role, subscriber_id, query_id)
    return {
        "queryId": query_id,
        "history": [
            {
                "fromStatus": t.from_status.value if t.from_status else None,
                "toStatus": t.to_status.value,
                "detail": t.detail,
                "timestamp": t.timestamp.isoformat() if t.timestamp else None,
            }
            for t in lifecycle.get_history(query_id)
        ],
    }


QUERY_REQUESTS = {
    "query_status": (EventType.QUERY_STATUS, _query_status),
    "get_history": (EventType.QUERY_HISTORY, _query_history),
}


async def _serve(
    websocket: WebSocket,
    bridge: NotificationBridge,
    lifecycle: QueryLifecycle,
    role: ConnectionRole,
    subscriber_id: str,
):
    connection = await bridge.connect(websocket, role, subscriber_id)
    connection_id = connection.connection_id

    try:
        while True:
            data = await websocket.receive_text()
            if not bridge.heartbeat(connection_id):
                # Evicted while we were waiting; the client reconnects and resyncs
                logger.info(f"Connection {connection_id} no longer registered, closing")
                break

            try:
                message = json.loads(data)
                message_type = message.get("type")
            except (ValueError, AttributeError):
                bridge.send(connection_id, make_event(EventType.ERROR, {"message": "Invalid JSON"}))
                continue

            if message_type == "ping":
                bridge.send(connection_id, make_event(EventType.PONG, {}))
            elif message_type == "resync":
                snapshot = await run_in_threadpool(_snapshot, lifecycle, role, subscriber_id)
                bridge.send(connection_id, make_event(EventType.RESYNC, snapshot))
            elif message_type in QUERY_REQUESTS:
                event_type, handler = QUERY_REQUESTS[message_type]
                query_id = message.get("queryId")
                if not query_id:
                    bridge.send(connection_id, make_event(EventType.ERROR, {"message": "queryId is required"}))
                    continue
                try:
                    payload = await run_in_threadpool(handler, lifecycle, role, subscriber_id, query_id)
                except CareFlowError as e:
                    bridge.send(connection_id, make_event(EventType.ERROR, {"message": str(e)}))
                    continue
                bridge.send(connection_id, make_event(event_type, payload))
            else:
                bridge.send(connection_id, make_event(
                    EventType.ERROR, {"message": f"Unknown message type: {message_type}"}
                ))
    except WebSocketDisconnect:
        logger.info(f"{role.value} {subscriber_id} disconnected")
    except RuntimeError as e:
        # Socket already closed by the bridge (stale or slow consumer)
        if bridge.get_connection(connection_id) is not None:
            raise
        logger.debug(f"Connection {connection_id} closed by server: {e}")
    finally:
        await bridge.disconnect(connection_id)


@router.websocket("/ws/patients/{patient_id}")
async def patient_updates(
    websocket: WebSocket,
    patient_id: str,
    bridge: NotificationBridge = Depends(get_bridge),
    lifecycle: QueryLifecycle = Depends(get_lifecycle),
):
    """Status updates for one patient's queries"""
    await _serve(websocket, bridge, lifecycle, ConnectionRole.PATIENT, patient_id)


@router.websocket("/ws/clinicians/{clinician_id}")
async def clinician_updates(
    websocket: WebSocket,
    clinician_id: str,
    bridge: NotificationBridge = Depends(get_bridge),
    lifecycle: QueryLifecycle = Depends(get_lifecycle),
):
    """Review queue changes for clinicians"""
    await _serve(websocket, bridge, lifecycle, ConnectionRole.CLINICIAN, clinician_id)

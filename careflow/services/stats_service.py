"""Queue Stats Service - routing and review statistics for monitoring"""
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import numpy as np
from sqlalchemy.orm import Session

from careflow.models.query import DraftSource, MedicalQuery, QueryStatus, Urgency
from careflow.models.review import ReviewQueueEntry


def _summary(values: List[float], digits: int = 1) -> Dict[str, Optional[float]]:
    """mean / median / p90 of a sample, None for an empty one"""
    if not values:
        return {"mean": None, "median": None, "p90": None}
    arr = np.array(values, dtype=float)
    return {
        "mean": round(float(np.mean(arr)), digits),
        "median": round(float(np.median(arr)), digits),
        "p90": round(float(np.percentile(arr, 90)), digits),
    }


class QueueStatsService:
    """Aggregates over recently created queries"""

    def __init__(self, db: Session):
        self.db = db

    def get_routing_stats(self, hours: int = 24) -> Dict:
        """
        Routing statistics for the monitoring endpoint.

        Covers queries created in the last `hours`: counts by status and
        urgency, review and fallback rates, the safety score distribution and
        review turnaround (queued until completed).
        """
        now = datetime.now()
        cutoff = now - timedelta(hours=hours)

        rows = self.db.query(
            MedicalQuery.status,
            MedicalQuery.urgency,
            MedicalQuery.safety_score,
            MedicalQuery.draft_source,
            MedicalQuery.queued_at,
            MedicalQuery.completed_at,
        ).filter(MedicalQuery.created_at >= cutoff).all()

        status_counts = Counter(row.status for row in rows)
        urgency_counts = Counter(row.urgency for row in rows if row.urgency is not None)

        scored = [row for row in rows if row.safety_score is not None]
        reviewed = [row for row in scored if row.queued_at is not None]
        fallbacks = [row for row in scored if row.draft_source == DraftSource.FALLBACK]

        turnaround = [
            (row.completed_at - row.queued_at).total_seconds()
            for row in reviewed
            if row.completed_at is not None
        ]

        pending = self.db.query(ReviewQueueEntry.enqueued_at).all()
        pending_waits = [(now - enqueued_at).total_seconds() for (enqueued_at,) in pending]

        return {
            "period_hours": hours,
            "total_queries": len(rows),
            "by_status": {status.value: status_counts.get(status, 0) for status in QueryStatus},
            "by_urgency": {urgency.value: urgency_counts.get(urgency, 0) for urgency in Urgency},
            "review_rate": round(len(reviewed) / len(scored), 3) if scored else 0.0,
            "fallback_rate": round(len(fallbacks) / len(scored), 3) if scored else 0.0,
            "safety_score": _summary([row.safety_score for row in scored]),
            "review_turnaround_seconds": _summary(turnaround),
            "pending_reviews": len(pending_waits),
            "oldest_pending_seconds": round(max(pending_waits), 1) if pending_waits else None,
        }

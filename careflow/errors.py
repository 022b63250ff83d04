"""Error taxonomy for the query pipeline"""
from typing import Optional


class CareFlowError(Exception):
    """Base class for all pipeline errors surfaced to callers"""


class ValidationError(CareFlowError):
    """Empty or oversized input, rejected before any state is created"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class RateLimitExceeded(CareFlowError):
    """Patient exceeded the rolling submission cap"""

    def __init__(self, patient_id: str, retry_after: float):
        super().__init__(
            f"Rate limit exceeded for patient {patient_id}; retry after {retry_after:.0f}s"
        )
        self.patient_id = patient_id
        self.retry_after = retry_after


class ModelUnavailable(CareFlowError):
    """A single model call failed. Always absorbed by the fallback path."""

    def __init__(self, message: str, retryable: bool = True, timed_out: bool = False):
        super().__init__(message)
        self.retryable = retryable
        self.timed_out = timed_out


class QueryNotFound(CareFlowError):
    def __init__(self, query_id: str):
        super().__init__(f"Query {query_id} not found")
        self.query_id = query_id


class AlreadyClaimed(CareFlowError):
    """Another clinician owns the claim on this query"""

    def __init__(self, query_id: str, clinician_id: Optional[str] = None):
        super().__init__(f"Query {query_id} is already claimed")
        self.query_id = query_id
        self.clinician_id = clinician_id


class NotClaimedByCaller(CareFlowError):
    """Clinician acted on a query they do not hold the claim for"""

    def __init__(self, query_id: str, clinician_id: str):
        super().__init__(f"Query {query_id} is not claimed by clinician {clinician_id}")
        self.query_id = query_id
        self.clinician_id = clinician_id


class InvalidTransition(CareFlowError):
    """Action attempted on a query that is not in the required state"""

    def __init__(self, query_id: str, current: Optional[str], target: str):
        super().__init__(f"Query {query_id} cannot move from {current} to {target}")
        self.query_id = query_id
        self.current = current
        self.target = target

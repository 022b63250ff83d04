"""
Draft Requester

Calls the remote language-model endpoint for a draft answer. Transient
failures are retried with exponential backoff; when every attempt fails the
caller still gets a deterministic, condition-aware fallback text so the
pipeline never stalls on the model.
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from careflow.config import settings
from careflow.errors import ModelUnavailable
from careflow.services.safety_routing_service import parse_vital

logger = logging.getLogger(__name__)


class DraftOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    EXHAUSTED_WITH_FALLBACK = "exhausted_with_fallback"


@dataclass(frozen=True)
class DraftResult:
    text: str
    outcome: DraftOutcome
    attempts: int
    error: Optional[str] = None

    @property
    def used_fallback(self) -> bool:
        return self.outcome == DraftOutcome.EXHAUSTED_WITH_FALLBACK


FALLBACK_RESPONSES = {
    "emergency": (
        "1. This may be an emergency situation.\n"
        "2. Go to the nearest hospital or clinic immediately.\n"
        "3. Monitor your blood sugar closely.\n"
        "4. Have someone stay with you."
    ),
    "network": (
        "1. We could not prepare an automated answer right now; a clinician will follow up.\n"
        "2. If your symptoms are severe, go to a clinic without waiting.\n"
        "3. Contact your doctor directly if needed.\n"
        "4. Monitor your condition closely."
    ),
    "general": (
        "1. Consult your healthcare provider about your symptoms.\n"
        "2. Monitor your blood glucose regularly.\n"
        "3. Take your medications as prescribed.\n"
        "4. Seek medical care if your symptoms get worse."
    ),
}

SYSTEM_PROMPT = """You are a medical assistant drafting answers to patient questions for diabetes care.
Every answer is checked for safety and may be reviewed by a clinician before the patient sees it.

RESPONSE REQUIREMENTS:
1. Give a short safety assessment (CRITICAL/URGENT/NORMAL)
2. Explain in plain language
3. End with numbered action steps (1., 2., 3., ...)
4. Say when the patient must visit a clinic or hospital
5. Never tell the patient to stop prescribed medication

SAFETY PROTOCOLS:
- Blood glucose below 70 mg/dL or above 250 mg/dL: mark as URGENT
- Severe symptoms mentioned: mark as CRITICAL
- Always err on the side of caution"""


def build_system_prompt(patient_context: Optional[Mapping[str, Any]]) -> str:
    context = patient_context or {}
    lines = [SYSTEM_PROMPT]
    profile = []
    if context.get("diabetes_type"):
        profile.append(f"- Diabetes Type: {context['diabetes_type']}")
    if context.get("medications"):
        profile.append(f"- Current Medications: {', '.join(context['medications'])}")
    if context.get("allergies"):
        profile.append(f"- Known Allergies: {', '.join(context['allergies'])}")
    if context.get("medical_history"):
        profile.append(f"- Medical History: {context['medical_history']}")
    if profile:
        lines.append("\nPATIENT MEDICAL PROFILE:")
        lines.extend(profile)
    return "\n".join(lines)


def format_query(query_text: str, vitals: Optional[Mapping[str, Any]]) -> str:
    message = f"PATIENT QUERY: {query_text}"
    if vitals:
        labels = [
            ("blood_glucose", "Blood Glucose", " mg/dL"),
            ("blood_pressure", "Blood Pressure", ""),
            ("heart_rate", "Heart Rate", " BPM"),
            ("temperature", "Temperature", " C"),
        ]
        readings = [
            f"- {label}: {vitals[key]}{unit}"
            for key, label, unit in labels
            if vitals.get(key) not in (None, "")
        ]
        if readings:
            message += "\n\nCURRENT VITAL SIGNS:\n" + "\n".join(readings)
    return message


def fallback_text(vitals: Optional[Mapping[str, Any]], timed_out_or_network: bool) -> str:
    """Pick the fallback deterministically from the vitals and the kind of failure."""
    glucose = parse_vital((vitals or {}).get("blood_glucose"))
    if glucose is not None and (glucose < 70 or glucose > 300):
        return FALLBACK_RESPONSES["emergency"]
    if timed_out_or_network:
        return FALLBACK_RESPONSES["network"]
    return FALLBACK_RESPONSES["general"]


class DraftRequester:
    """Outbound client for the drafting model"""

    def __init__(
        self,
        endpoint_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.endpoint_url = endpoint_url if endpoint_url is not None else settings.MODEL_ENDPOINT_URL
        self.api_key = api_key if api_key is not None else settings.MODEL_API_KEY
        self.timeout = settings.MODEL_TIMEOUT_SECONDS if timeout is None else timeout
        self.max_retries = settings.MODEL_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_base = (
            settings.MODEL_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        )
        self.session = session or requests.Session()
        self._sleep = sleep

    def request_draft(
        self,
        query_text: str,
        patient_context: Optional[Mapping[str, Any]] = None,
        vitals: Optional[Mapping[str, Any]] = None,
    ) -> DraftResult:
        """
        Get a draft answer, falling back to canned text if the model cannot be reached.

        Args:
            query_text: The patient's question
            patient_context: Optional profile (diabetes_type, medications, allergies, medical_history)
            vitals: Optional vital signs, included in the prompt and used to pick the fallback

        Returns:
            DraftResult with outcome SUCCESS or EXHAUSTED_WITH_FALLBACK
        """
        if not self.endpoint_url:
            logger.warning("No model endpoint configured, using fallback draft")
            return DraftResult(
                text=fallback_text(vitals, timed_out_or_network=True),
                outcome=DraftOutcome.EXHAUSTED_WITH_FALLBACK,
                attempts=0,
                error="model endpoint not configured",
            )

        payload = self._build_payload(query_text, patient_context, vitals)
        total_attempts = self.max_retries + 1
        last: Optional[ModelUnavailable] = None

        for attempt in range(1, total_attempts + 1):
            result, error = self._attempt(payload, attempt)
            if result.outcome == DraftOutcome.SUCCESS:
                return result

            last = error
            if not error.retryable or attempt == total_attempts:
                break

            delay = self.backoff_base * (2 ** (attempt - 1))
            logger.info(
                f"Model call failed ({error}), retrying in {delay:.1f}s "
                f"(attempt {attempt}/{total_attempts})"
            )
            self._sleep(delay)

        logger.error(f"Model unavailable after {attempt} attempt(s): {last}; using fallback draft")
        network_failure = last.timed_out or last.retryable
        return DraftResult(
            text=fallback_text(vitals, timed_out_or_network=network_failure),
            outcome=DraftOutcome.EXHAUSTED_WITH_FALLBACK,
            attempts=attempt,
            error=str(last),
        )

    def _build_payload(self, query_text, patient_context, vitals) -> Dict[str, Any]:
        return {
            "model": settings.MODEL_NAME,
            "messages": [
                {"role": "system", "content": build_system_prompt(patient_context)},
                {"role": "user", "content": format_query(query_text, vitals)},
            ],
            "temperature": settings.MODEL_TEMPERATURE,
            "max_tokens": settings.MODEL_MAX_TOKENS,
        }

    def _attempt(self, payload: Dict[str, Any], attempt: int):
        """One outbound call. Returns (DraftResult, ModelUnavailable or None)."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = self.session.post(
                self.endpoint_url, json=payload, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
            text = self._extract_text(response.json())
        except requests.exceptions.Timeout:
            error = ModelUnavailable(f"timed out after {self.timeout}s", retryable=True, timed_out=True)
        except requests.exceptions.ConnectionError as e:
            error = ModelUnavailable(f"connection error: {e}", retryable=True)
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            retryable = status is None or status >= 500 or status == 429
            error = ModelUnavailable(f"HTTP {status}", retryable=retryable)
        except requests.exceptions.RequestException as e:
            error = ModelUnavailable(f"request failed: {e}", retryable=True)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            error = ModelUnavailable(f"malformed model response: {e}", retryable=True)
        else:
            logger.info(f"Model draft received on attempt {attempt}")
            return DraftResult(text=text, outcome=DraftOutcome.SUCCESS, attempts=attempt), None

        result = DraftResult(
            text="", outcome=DraftOutcome.RETRYABLE_FAILURE, attempts=attempt, error=str(error)
        )
        return result, error

    @staticmethod
    def _extract_text(body: Dict[str, Any]) -> str:
        text = body["choices"][0]["message"]["content"]
        if not isinstance(text, str) or not text.strip():
            raise ValueError("empty completion")
        return text.strip()

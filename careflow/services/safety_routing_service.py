"""
Safety Scoring and Review Routing Service

Scores every drafted answer before it reaches the patient, buckets it into an
urgency level and decides whether it can be delivered directly or must wait
for a clinician.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple, Union

from careflow.config import settings
from careflow.models.query import Urgency


class RouteDecision(str, Enum):
    """Routing decision for a scored draft"""
    AUTO_DELIVER = "auto_deliver"          # Safe to deliver the draft
    QUEUE_FOR_REVIEW = "queue_for_review"  # Hold for clinician review


# Phrases in the draft that indicate a potentially life-threatening situation
CRITICAL_SYMPTOM_PATTERNS = [
    r"\bchest pain\b",
    r"\b(difficulty|trouble) breathing\b",
    r"\bshortness of breath\b",
    r"\bunconscious(ness)?\b",
    r"\bseizures?\b",
    r"\bsevere bleeding\b",
    r"\bstroke\b",
    r"\bheart attack\b",
    r"\bcollapsed?\b",
    r"\bsevere abdominal pain\b",
    r"\bsevere headache\b",
    r"\bvision loss\b",
    r"\binability to speak\b",
    r"\bnumbness on one side\b",
]

STOP_MEDICATION_PATTERNS = [
    r"\b(stop|stopping|discontinue|discontinuing|quit)\b.{0,40}\b(medication|medicine|treatment|insulin|tablets?|pills?)\b",
    r"\bskip (your )?insulin\b",
]

PREGNANCY_PATTERNS = [
    r"\bpregnan(t|cy)\b",
]

URGENCY_LANGUAGE_PATTERNS = [
    r"\bemergency\b",
    r"\burgent(ly)?\b",
    r"\bimmediately\b",
    r"\bright away\b",
    r"\bhospital now\b",
]

INFECTION_PATTERNS = [
    r"\bfever\b",
    r"\binfect(ion|ed)\b",
    r"\bpus\b",
    r"\bwound\b",
]

# Fixed deductions from the starting score of 100
TEXT_PENALTIES = {
    "critical_symptom": 60,
    "stop_medication": 40,
    "pregnancy": 30,
    "urgency_language": 20,
    "infection": 15,
}

# (upper bound exclusive, penalty) for low glucose, (lower bound exclusive, penalty) for high glucose
GLUCOSE_PENALTIES = {
    "severe_hypoglycemia": (54, 50),
    "hypoglycemia": (70, 30),
    "severe_hyperglycemia": (400, 45),
    "hyperglycemia": (250, 25),
}

# Drafts that point to tests, procedures or other care a clinician should arrange
COMPLEX_CONDITION_PATTERNS = [
    r"\bspecialist\b",
    r"\breferr(al|ed)\b",
    r"\bfurther testing\b",
    r"\bblood tests?\b",
    r"\bx-?rays?\b",
    r"\bscans?\b",
    r"\bbiopsy\b",
    r"\bsurgery\b",
    r"\bhospitali[sz]ation\b",
]

VITAL_PENALTIES = {
    "temperature_severe": 30,   # > 40 or < 35 C
    "temperature_moderate": 15, # > 38.5 or < 36 C
    "heart_rate_abnormal": 20,  # > 120 or < 50 bpm
    "blood_pressure_abnormal": 25,  # systolic > 180 or < 90
}

VitalValue = Union[int, float, str, None]

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


def parse_vital(value: VitalValue) -> Optional[float]:
    """Read the leading number out of a vital sign ("60", 60, "60 mg/dL", "120/80")."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = _NUMBER.search(str(value))
    if not match:
        return None
    return float(match.group(0))


def _matches_any(patterns, text: str) -> bool:
    return any(re.search(pattern, text, re.IGNORECASE) for pattern in patterns)


def has_critical_glucose(
    vitals: Optional[Mapping[str, VitalValue]],
    low: Optional[float] = None,
    high: Optional[float] = None,
) -> bool:
    """Glucose below `low` or above `high` needs a clinician whatever the draft says"""
    glucose = parse_vital((vitals or {}).get("blood_glucose"))
    if glucose is None:
        return False
    low = settings.CRITICAL_GLUCOSE_LOW if low is None else low
    high = settings.CRITICAL_GLUCOSE_HIGH if high is None else high
    return glucose < low or glucose > high


def has_complex_conditions(draft_text: Optional[str]) -> bool:
    return _matches_any(COMPLEX_CONDITION_PATTERNS, draft_text or "")


class SafetyScorer:
    """
    Deterministic safety score over draft text and structured vitals.

    Starts at 100 and subtracts fixed penalties. Each text category is applied
    at most once per call however many phrases match, and the result is
    clamped to [0, 100].
    """

    def score(self, draft_text: Optional[str], vitals: Optional[Mapping[str, VitalValue]] = None) -> int:
        total, _ = self.score_with_breakdown(draft_text, vitals)
        return total

    def score_with_breakdown(
        self,
        draft_text: Optional[str],
        vitals: Optional[Mapping[str, VitalValue]] = None
    ) -> Tuple[int, Dict[str, int]]:
        """
        Compute the score and the penalties that produced it.

        Args:
            draft_text: Model output (or fallback text)
            vitals: Mapping with optional blood_glucose, blood_pressure,
                heart_rate and temperature entries

        Returns:
            Tuple of (score, {penalty_name: deduction})
        """
        text = (draft_text or "").lower()
        vitals = vitals or {}
        penalties: Dict[str, int] = {}

        if _matches_any(CRITICAL_SYMPTOM_PATTERNS, text):
            penalties["critical_symptom"] = TEXT_PENALTIES["critical_symptom"]
        if _matches_any(STOP_MEDICATION_PATTERNS, text):
            penalties["stop_medication"] = TEXT_PENALTIES["stop_medication"]
        if _matches_any(PREGNANCY_PATTERNS, text):
            penalties["pregnancy"] = TEXT_PENALTIES["pregnancy"]
        if _matches_any(URGENCY_LANGUAGE_PATTERNS, text):
            penalties["urgency_language"] = TEXT_PENALTIES["urgency_language"]
        if _matches_any(INFECTION_PATTERNS, text):
            penalties["infection"] = TEXT_PENALTIES["infection"]

        penalties.update(self._glucose_penalty(parse_vital(vitals.get("blood_glucose"))))
        penalties.update(self._vital_penalties(vitals))

        score = 100 - sum(penalties.values())
        return max(0, min(100, score)), penalties

    def _glucose_penalty(self, glucose: Optional[float]) -> Dict[str, int]:
        if glucose is None:
            return {}
        for name in ("severe_hypoglycemia", "hypoglycemia"):
            bound, penalty = GLUCOSE_PENALTIES[name]
            if glucose < bound:
                return {name: penalty}
        for name in ("severe_hyperglycemia", "hyperglycemia"):
            bound, penalty = GLUCOSE_PENALTIES[name]
            if glucose > bound:
                return {name: penalty}
        return {}

    def _vital_penalties(self, vitals: Mapping[str, VitalValue]) -> Dict[str, int]:
        penalties = {}

        temperature = parse_vital(vitals.get("temperature"))
        if temperature is not None:
            if temperature > 40 or temperature < 35:
                penalties["temperature_severe"] = VITAL_PENALTIES["temperature_severe"]
            elif temperature > 38.5 or temperature < 36:
                penalties["temperature_moderate"] = VITAL_PENALTIES["temperature_moderate"]

        heart_rate = parse_vital(vitals.get("heart_rate"))
        if heart_rate is not None and (heart_rate > 120 or heart_rate < 50):
            penalties["heart_rate_abnormal"] = VITAL_PENALTIES["heart_rate_abnormal"]

        systolic = parse_vital(vitals.get("blood_pressure"))
        if systolic is not None and (systolic > 180 or systolic < 90):
            penalties["blood_pressure_abnormal"] = VITAL_PENALTIES["blood_pressure_abnormal"]

        return penalties


class UrgencyClassifier:
    """Maps a safety score onto LOW / MEDIUM / HIGH"""

    def __init__(self, high_below: Optional[int] = None, medium_below: Optional[int] = None):
        self.high_below = settings.URGENCY_HIGH_BELOW if high_below is None else high_below
        self.medium_below = settings.URGENCY_MEDIUM_BELOW if medium_below is None else medium_below

    def classify(self, score: int, vitals: Optional[Mapping[str, VitalValue]] = None) -> Urgency:
        """Bucket the score; a critical glucose reading is never LOW"""
        if score < self.high_below:
            return Urgency.HIGH
        if score < self.medium_below:
            return Urgency.MEDIUM
        if has_critical_glucose(vitals):
            return Urgency.MEDIUM
        return Urgency.LOW


@dataclass(frozen=True)
class RoutingDecision:
    decision: RouteDecision
    score: int
    urgency: Urgency
    reasoning: str

    @property
    def needs_review(self) -> bool:
        return self.decision == RouteDecision.QUEUE_FOR_REVIEW


class ReviewRouter:
    """
    Decides between direct delivery and clinician review.

    Deliberately over-routes: any score under the threshold, any HIGH urgency,
    and any MEDIUM urgency at or above the floor goes to a clinician. When the
    draft and vitals are supplied, a critical glucose reading or a draft that
    mentions referrals, tests or procedures also goes to a clinician.
    """

    def __init__(
        self,
        score_threshold: Optional[int] = None,
        medium_score_floor: Optional[int] = None,
        complex_conditions: Optional[bool] = None,
    ):
        self.score_threshold = (
            settings.REVIEW_SCORE_THRESHOLD if score_threshold is None else score_threshold
        )
        self.medium_score_floor = (
            settings.REVIEW_MEDIUM_SCORE_FLOOR if medium_score_floor is None else medium_score_floor
        )
        self.complex_conditions = (
            settings.REVIEW_COMPLEX_CONDITIONS if complex_conditions is None else complex_conditions
        )

    def needs_review(
        self,
        score: int,
        urgency: Urgency,
        draft_text: Optional[str] = None,
        vitals: Optional[Mapping[str, VitalValue]] = None,
    ) -> bool:
        return bool(self._review_reasons(score, urgency, draft_text, vitals))

    def route(
        self,
        score: int,
        urgency: Urgency,
        draft_text: Optional[str] = None,
        vitals: Optional[Mapping[str, VitalValue]] = None,
    ) -> RoutingDecision:
        reasons = self._review_reasons(score, urgency, draft_text, vitals)
        if reasons:
            decision = RouteDecision.QUEUE_FOR_REVIEW
        else:
            decision = RouteDecision.AUTO_DELIVER
            reasons = [f"Safety score ({score}) with {urgency.value} urgency suitable for direct delivery"]
        return RoutingDecision(
            decision=decision,
            score=score,
            urgency=urgency,
            reasoning="; ".join(reasons),
        )

    def _review_reasons(
        self,
        score: int,
        urgency: Urgency,
        draft_text: Optional[str],
        vitals: Optional[Mapping[str, VitalValue]],
    ) -> List[str]:
        """Human-readable reasons the draft must be reviewed; empty when it may be delivered"""
        reasons = []
        if score < self.score_threshold:
            reasons.append(f"Safety score ({score}) below review threshold ({self.score_threshold})")
        if urgency == Urgency.HIGH:
            reasons.append("High urgency always requires clinician review")
        if urgency == Urgency.MEDIUM and score >= self.medium_score_floor:
            reasons.append("Medium urgency routed to clinician review")
        if has_critical_glucose(vitals):
            reasons.append("Blood glucose outside the safe range")
        if self.complex_conditions and has_complex_conditions(draft_text):
            reasons.append("Draft mentions referrals, tests or procedures")
        return reasons

    def get_thresholds(self, classifier: UrgencyClassifier) -> Dict:
        return {
            "review_score_threshold": self.score_threshold,
            "review_medium_score_floor": self.medium_score_floor,
            "review_complex_conditions": self.complex_conditions,
            "urgency_high_below": classifier.high_below,
            "urgency_medium_below": classifier.medium_below,
            "critical_glucose_low": settings.CRITICAL_GLUCOSE_LOW,
            "critical_glucose_high": settings.CRITICAL_GLUCOSE_HIGH,
        }

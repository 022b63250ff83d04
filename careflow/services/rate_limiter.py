"""Per-patient sliding-window submission limiter"""
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, Optional

from careflow.config import settings
from careflow.utils.locks import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: float  # seconds until a slot frees up; 0 when allowed
    remaining: int
    recorded_at: Optional[float] = None  # timestamp taken by an allowed submission


class RateLimiter:
    """
    Rolling-window counter keyed by patient id.

    The check and the record happen under the patient's lock, so concurrent
    submissions from several connections cannot both take the last slot.
    Rejected attempts are not recorded. A patient whose window empties is
    forgotten.
    """

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        locks: Optional[KeyedLocks] = None,
    ):
        self.max_requests = settings.RATE_LIMIT_MAX_REQUESTS if max_requests is None else max_requests
        self.window_seconds = (
            settings.RATE_LIMIT_WINDOW_SECONDS if window_seconds is None else window_seconds
        )
        self._clock = clock
        self._locks = locks or KeyedLocks()
        self._windows: Dict[str, Deque[float]] = {}

    def _current_window(self, patient_id: str, now: float) -> Deque[float]:
        """Evicted window for the patient; caller holds the patient's lock"""
        window = self._windows.get(patient_id)
        if window is None:
            return deque()
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        if not window:
            del self._windows[patient_id]
        return window

    def check(self, patient_id: str) -> RateDecision:
        """Atomically test the window and, if there is room, record this submission."""
        with self._locks.hold(patient_id):
            now = self._clock()
            window = self._current_window(patient_id, now)

            if len(window) >= self.max_requests:
                oldest = window[0] if window else now
                retry_after = max(0.0, oldest + self.window_seconds - now)
                logger.info(
                    f"Rate limit hit for patient {patient_id}: "
                    f"{len(window)}/{self.max_requests}, retry after {retry_after:.1f}s"
                )
                return RateDecision(allowed=False, retry_after=retry_after, remaining=0)

            window.append(now)
            self._windows[patient_id] = window
            return RateDecision(
                allowed=True,
                retry_after=0.0,
                remaining=self.max_requests - len(window),
                recorded_at=now,
            )

    def allow(self, patient_id: str) -> bool:
        return self.check(patient_id).allowed

    def release(self, patient_id: str, recorded_at: Optional[float]) -> None:
        """Give back a slot taken by a submission that was never stored"""
        if recorded_at is None:
            return
        with self._locks.hold(patient_id):
            window = self._windows.get(patient_id)
            if window is None:
                return
            try:
                window.remove(recorded_at)
            except ValueError:
                return
            if not window:
                del self._windows[patient_id]

    def retry_after(self, patient_id: str) -> float:
        """Seconds until the oldest entry leaves the window, without recording anything."""
        with self._locks.hold(patient_id):
            now = self._clock()
            window = self._current_window(patient_id, now)
            if not window or len(window) < self.max_requests:
                return 0.0
            return max(0.0, window[0] + self.window_seconds - now)

    def prune(self) -> int:
        """Forget every patient whose window has emptied; returns how many were dropped"""
        dropped = 0
        for patient_id in list(self._windows):
            with self._locks.hold(patient_id):
                if patient_id in self._windows and not self._current_window(patient_id, self._clock()):
                    dropped += 1
        if dropped:
            logger.debug(f"Pruned {dropped} idle rate-limit window(s)")
        return dropped

    @property
    def tracked_patients(self) -> int:
        return len(self._windows)

    def rebuild(self, patient_id: str, timestamps: Iterable[float]) -> None:
        """Seed a patient's window from persisted submission times (e.g. after a restart)."""
        with self._locks.hold(patient_id):
            now = self._clock()
            window = deque(sorted(t for t in timestamps if t > now - self.window_seconds))
            # Keep only the newest entries if history exceeds the cap
            while len(window) > self.max_requests:
                window.popleft()
            if window:
                self._windows[patient_id] = window
            else:
                self._windows.pop(patient_id, None)

"""
Per-subject single-flight debounce for prediction requests.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

DEFAULT_MIN_INTERVAL_SECONDS = 30.0


@dataclass
class _SubjectSlot:
    in_flight: bool = False
    last_dispatch: Optional[float] = None


class PredictionThrottle:
    """
    At most one in-flight request per subject, and at most one dispatch per
    `min_interval` seconds. Rejected triggers are dropped, not queued.
    """

    def __init__(
        self,
        min_interval: float = DEFAULT_MIN_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._slots: Dict[str, _SubjectSlot] = {}
        self._lock = threading.Lock()

    def should_dispatch(self, subject_id: str) -> bool:
        """Claim the dispatch slot for subject_id. True means the caller must call complete()."""
        return self.acquire(subject_id) is None

    def acquire(self, subject_id: str) -> Optional[str]:
        """Claim the slot. Returns None on success, else the rejection reason."""
        with self._lock:
            slot = self._slots.setdefault(subject_id, _SubjectSlot())
            now = self._clock()
            if slot.in_flight:
                return "in_flight"
            if slot.last_dispatch is not None and now - slot.last_dispatch < self.min_interval:
                return "too_soon"
            slot.in_flight = True
            slot.last_dispatch = now
            return None

    def complete(self, subject_id: str):
        with self._lock:
            slot = self._slots.get(subject_id)
            if slot is not None:
                slot.in_flight = False

    def is_in_flight(self, subject_id: str) -> bool:
        with self._lock:
            slot = self._slots.get(subject_id)
            return bool(slot and slot.in_flight)

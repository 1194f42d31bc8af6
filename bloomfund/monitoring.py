"""
Request monitoring: a bounded window of recent request outcomes.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

DEFAULT_WINDOW_SECONDS = 60 * 60


@dataclass
class RequestSample:
    timestamp: float
    method: str
    path: str
    status_code: int
    duration_ms: float

    @property
    def failed(self) -> bool:
        return self.status_code >= 500


class RequestMonitor:
    """
    Keeps the last ``window_size`` requests and derives error rate and
    average response time over a trailing time window.
    """

    def __init__(
        self,
        window_size: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        self._samples: Deque[RequestSample] = deque(maxlen=max(window_size, 1))
        self._clock = clock
        self._lock = threading.Lock()

    def record(self, method: str, path: str, status_code: int, duration_ms: float) -> None:
        sample = RequestSample(self._clock(), method, path, status_code, duration_ms)
        with self._lock:
            self._samples.append(sample)

    def _recent(self, window_seconds: float) -> List[RequestSample]:
        cutoff = self._clock() - window_seconds
        with self._lock:
            return [s for s in self._samples if s.timestamp > cutoff]

    def error_rate(self, window_seconds: float = DEFAULT_WINDOW_SECONDS) -> float:
        """Percentage of requests in the window that ended in a 5xx."""
        recent = self._recent(window_seconds)
        if not recent:
            return 0.0
        return sum(1 for s in recent if s.failed) * 100 / len(recent)

    def average_response_time(self, window_seconds: float = DEFAULT_WINDOW_SECONDS) -> float:
        recent = self._recent(window_seconds)
        if not recent:
            return 0.0
        return sum(s.duration_ms for s in recent) / len(recent)

    def status(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        recent_errors: int = 10,
    ) -> dict:
        recent = self._recent(window_seconds)
        errors = [s for s in recent if s.failed]
        average: Optional[float] = None
        if recent:
            average = sum(s.duration_ms for s in recent) / len(recent)
        return {
            "window_seconds": window_seconds,
            "requests": len(recent),
            "errors": len(errors),
            "error_rate": len(errors) * 100 / len(recent) if recent else 0.0,
            "average_response_time_ms": average or 0.0,
            "recent_errors": [
                {
                    "method": s.method,
                    "path": s.path,
                    "status_code": s.status_code,
                    "timestamp": s.timestamp,
                }
                for s in errors[-recent_errors:]
            ],
        }

"""Request metrics.

A bounded-memory sink fed one observation per completed dispatch.
"""

from __future__ import annotations

import resource
import threading
import time
from collections import deque
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

# Number of most recent durations kept for the average
DEFAULT_WINDOW = 1000


def memory_usage() -> dict[str, Any]:
    """Resource usage of this process (maxRss in kilobytes on Linux)."""
    usage = resource.getrusage(resource.RUSAGE_SELF)
    return {
        "maxRss": usage.ru_maxrss,
        "userTime": usage.ru_utime,
        "systemTime": usage.ru_stime,
    }


class Metrics(BaseModel):
    """Point-in-time metrics snapshot."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    requests_total: int = 0
    requests_per_second: float = 0.0
    average_response_time: float = 0.0  # milliseconds
    error_rate: float = 0.0
    active_connections: int = 0
    memory_usage: dict[str, Any] = {}


class MetricsCollector:
    """Counter/timer store.

    Safe to call from any thread; the dispatch core records from the event
    loop but snapshots may be taken elsewhere.
    """

    def __init__(self, window: int = DEFAULT_WINDOW) -> None:
        self._lock = threading.Lock()
        self._window = window
        self._durations: deque[float] = deque(maxlen=window)
        self._requests = 0
        self._errors = 0
        self._started = time.monotonic()

    def record_request(self, duration_ms: float, success: bool) -> None:
        with self._lock:
            self._requests += 1
            if not success:
                self._errors += 1
            self._durations.append(duration_ms)

    @property
    def requests_total(self) -> int:
        return self._requests

    @property
    def errors_total(self) -> int:
        return self._errors

    def snapshot(self, active_connections: int = 0) -> Metrics:
        with self._lock:
            elapsed = time.monotonic() - self._started
            durations = list(self._durations)
            requests = self._requests
            errors = self._errors

        return Metrics(
            requests_total=requests,
            requests_per_second=requests / elapsed if elapsed > 0 else 0.0,
            average_response_time=sum(durations) / len(durations) if durations else 0.0,
            error_rate=errors / requests if requests else 0.0,
            active_connections=active_connections,
            memory_usage=memory_usage(),
        )

    def reset(self) -> None:
        with self._lock:
            self._durations = deque(maxlen=self._window)
            self._requests = 0
            self._errors = 0
            self._started = time.monotonic()

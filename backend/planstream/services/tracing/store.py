import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Protocol

from planstream.logging import get_logger

logger = get_logger(__name__)


class TraceStore(Protocol):
    def save(self, trace: dict) -> None: ...

    def get(self, trace_id: str) -> Optional[dict]: ...

    def delete(self, trace_id: str) -> bool: ...

    def all(self) -> list[dict]: ...

    def clear(self) -> None: ...


class InMemoryTraceStore:
    """Bounded in-process trace buffer.

    Holds at most ``max_runs`` traces (oldest evicted first) and drops traces
    older than ``ttl_s`` whenever the store is touched. Not durable.
    """

    def __init__(
        self,
        max_runs: int = 1000,
        ttl_s: float = 24 * 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_runs = max_runs
        self.ttl_s = ttl_s
        self._clock = clock
        self._traces: "OrderedDict[str, dict]" = OrderedDict()
        self._lock = threading.Lock()

    def _evict_expired(self) -> None:
        cutoff_ms = (self._clock() - self.ttl_s) * 1000
        expired = [tid for tid, t in self._traces.items() if t.get("createdAtMs", 0) < cutoff_ms]
        for tid in expired:
            del self._traces[tid]
        if expired:
            logger.info("trace.evicted reason=ttl count=%s", len(expired))

    def save(self, trace: dict) -> None:
        with self._lock:
            trace_id = trace["traceId"]
            is_new = trace_id not in self._traces
            self._traces[trace_id] = trace
            if is_new:
                while len(self._traces) > self.max_runs:
                    oldest, _ = self._traces.popitem(last=False)
                    logger.info("trace.evicted reason=capacity trace=%s", oldest)

    def get(self, trace_id: str) -> Optional[dict]:
        with self._lock:
            self._evict_expired()
            return self._traces.get(trace_id)

    def delete(self, trace_id: str) -> bool:
        with self._lock:
            return self._traces.pop(trace_id, None) is not None

    def all(self) -> list[dict]:
        with self._lock:
            self._evict_expired()
            return list(self._traces.values())

    def clear(self) -> None:
        with self._lock:
            self._traces.clear()

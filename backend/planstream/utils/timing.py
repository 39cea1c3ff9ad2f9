"""Timing helpers for spans worth grepping in logs."""

import time
from contextlib import contextmanager
from typing import Optional

from planstream.logging import get_logger

logger = get_logger(__name__)

# Prefix for all timing logs so they stand out and are easy to grep
_TIMING_PREFIX = "[TIMING]"


def _format_duration(ms: int) -> str:
    """Return human-readable duration: e.g. 12500 -> '12.5s', 750 -> '750ms'."""
    if ms >= 1000:
        return f"{ms / 1000:.1f}s"
    return f"{ms}ms"


class Stopwatch:
    """Elapsed milliseconds since construction (monotonic)."""

    def __init__(self) -> None:
        self._start = time.perf_counter()
        self._stopped: Optional[int] = None

    @property
    def elapsed_ms(self) -> int:
        if self._stopped is not None:
            return self._stopped
        return int((time.perf_counter() - self._start) * 1000)

    def stop(self) -> int:
        self._stopped = int((time.perf_counter() - self._start) * 1000)
        return self._stopped


@contextmanager
def time_span(name: str, **extra: object):
    """Context manager for timing a block with optional extra log fields."""
    watch = Stopwatch()
    try:
        yield watch
    finally:
        elapsed = watch.stop()
        parts = [f"elapsed_ms={elapsed}", f"({_format_duration(elapsed)})"] + [
            f"{k}={v}" for k, v in extra.items()
        ]
        logger.info("%s %s %s", _TIMING_PREFIX, name, " ".join(parts))

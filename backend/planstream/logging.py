import logging
import sys
from typing import Any, Optional


LOG_FORMAT = (
    "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
)


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name or "planstream")


class RunLogger(logging.LoggerAdapter):
    """Logger bound to one plan run.

    Every line gets a ``trace=<id>`` suffix. When a stream emitter is attached,
    INFO and above are also mirrored to the client as ``log_message`` events.
    Callers may pass ``tag=`` to label the mirrored line (defaults to the logger name).
    """

    def __init__(self, logger: logging.Logger, trace_id: str, emitter: Any = None) -> None:
        super().__init__(logger, {"trace_id": trace_id})
        self.trace_id = trace_id
        self.emitter = emitter

    def process(self, msg, kwargs):
        return f"{msg} trace={self.trace_id}", kwargs

    def log(self, level, msg, *args, tag: Optional[str] = None, **kwargs):
        super().log(level, msg, *args, **kwargs)
        if self.emitter is None or level < logging.INFO or getattr(self.emitter, "closed", False):
            return
        try:
            text = msg % args if args else str(msg)
        except (TypeError, ValueError):
            text = str(msg)
        self.emitter.log_message(logging.getLevelName(level), tag or self.logger.name, text)

"""
Logging setup for the orchestrator.

Every record is tagged with the runner set being reconciled and, where one is
being acted on, the runner. Both are tracked in context variables so concurrent
reconciles of different sets never mix up their tags.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Optional

_current_runner_set: ContextVar[Optional[str]] = ContextVar("current_runner_set", default=None)
_current_runner: ContextVar[Optional[str]] = ContextVar("current_runner", default=None)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(runner_set)s%(runner_suffix)s] %(name)s: %(message)s"


def set_current_runner_set(key: Optional[str]) -> None:
    _current_runner_set.set(key)


def set_current_runner(name: Optional[str]) -> None:
    _current_runner.set(name)


class ReconcileContextFilter(logging.Filter):
    """Attach runner set / runner context to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        runner = _current_runner.get()
        record.runner_set = _current_runner_set.get() or "-"
        record.runner_suffix = f"/{runner}" if runner else ""
        return True


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging once at startup."""
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ReconcileContextFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

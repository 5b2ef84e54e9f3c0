"""
Structured logging configuration with request and generation correlation.

Every log line written through ``get_logger`` carries the correlation ids of
the surrounding ``correlation`` block, so a single CLI command or a single
draft generation can be followed across the version store, the draft
controller and the change notifier. Correlation ids live in context
variables and therefore follow asyncio tasks.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, List, Optional

import structlog
from structlog.stdlib import LoggerFactory

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
character_id_var: ContextVar[Optional[str]] = ContextVar("character_id", default=None)
generation_id_var: ContextVar[Optional[str]] = ContextVar(
    "generation_id", default=None
)

_CORRELATION_VARS: Dict[str, ContextVar[Optional[str]]] = {
    "request_id": request_id_var,
    "character_id": character_id_var,
    "generation_id": generation_id_var,
}


def current_correlation() -> Dict[str, str]:
    """Correlation ids that are set in the current context."""
    return {
        name: value
        for name, var in _CORRELATION_VARS.items()
        if (value := var.get()) is not None
    }


@contextmanager
def correlation(**ids: Optional[str]) -> Iterator[Dict[str, str]]:
    """
    Bind correlation ids for the duration of a block.

    Ids passed as ``None`` leave the outer value in place. On exit every
    variable is reset to what it was on entry, so nested blocks restore the
    enclosing ids.

    Raises:
        ValueError: If an unknown correlation id is given.
    """
    unknown = set(ids) - set(_CORRELATION_VARS)
    if unknown:
        raise ValueError(f"Unknown correlation ids: {sorted(unknown)}")

    tokens = [
        (_CORRELATION_VARS[name], _CORRELATION_VARS[name].set(value))
        for name, value in ids.items()
        if value is not None
    ]
    try:
        yield current_correlation()
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def generate_request_id() -> str:
    """Generate a unique request ID."""
    return uuid.uuid4().hex[:12]


class StructuredLogger:
    """structlog wrapper that stamps correlation ids onto every event."""

    def __init__(self, name: str):
        self.name = name
        self.logger = structlog.get_logger(name)

    def _emit(self, level: str, message: str, fields: Dict[str, Any]) -> None:
        # Explicit fields win over ambient correlation ids
        event = current_correlation()
        event.update(fields)
        getattr(self.logger, level)(message, **event)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._emit("debug", message, kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._emit("info", message, kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._emit("warning", message, kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._emit("error", message, kwargs)

    def log_processing_step(
        self,
        step: str,
        component: str,
        duration_ms: Optional[float] = None,
        **kwargs: Any,
    ) -> None:
        """Log a timed step of a larger operation (e.g. an inference phase)."""
        if duration_ms is not None:
            kwargs["duration_ms"] = duration_ms
        self._emit(
            "info", f"Processing step: {step}", {"step": step, "component": component, **kwargs}
        )

    def log_version_event(
        self, event_type: str, character_id: str, **kwargs: Any
    ) -> None:
        """Log a change to a character's version history."""
        self._emit(
            "info",
            f"Version event: {event_type}",
            {"event_type": event_type, "character_id": character_id, **kwargs},
        )

    def log_draft_transition(
        self, character_id: str, from_state: str, to_state: str, **kwargs: Any
    ) -> None:
        """Log a draft lifecycle transition such as GENERATING -> PENDING."""
        self._emit(
            "info",
            f"Draft transition: {from_state} -> {to_state}",
            {
                "character_id": character_id,
                "from_state": from_state,
                "to_state": to_state,
                **kwargs,
            },
        )


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure structlog and the standard library root logger.

    Args:
        level: Minimum level name, e.g. ``"WARNING"``.
        json_format: Render JSON lines instead of the console renderer.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.add_log_level,
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=numeric_level, format="%(message)s")


class ProcessingTimer:
    """Context manager that logs how long a step took and whether it failed."""

    def __init__(
        self, logger: StructuredLogger, step: str, component: str, **kwargs: Any
    ):
        self.logger = logger
        self.step = step
        self.component = component
        self.kwargs = kwargs
        self.start_time: Optional[float] = None
        self.duration_ms: Optional[float] = None

    def __enter__(self) -> "ProcessingTimer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self.start_time is None:
            return
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000
        self.logger.log_processing_step(
            self.step,
            self.component,
            duration_ms=round(self.duration_ms, 3),
            status="success" if exc_type is None else "error",
            **self.kwargs,
        )

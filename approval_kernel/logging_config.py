"""
Structured JSON logging for the approval kernel.

Every record under the ``approval_kernel`` logger tree is rendered as one
JSON object per line: a fixed envelope (``ts``, ``level``, ``logger``,
``message``), the request-scoped fields held by ``LogContext``, then any
``extra=`` keys passed at the call site.  Kernel exceptions logged with
``exc_info`` contribute their ``code`` and public attributes as
``exc_<name>`` keys so failures can be filtered without parsing text.

Call-site convention: the message is a snake_case event name
(``approval_action_taken``), details go in ``extra``.  Extra keys must not
collide with ``logging.LogRecord`` attributes (``created``, ``name``,
``module`` ...); the stdlib raises ``KeyError`` for those.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

ROOT_LOGGER_NAME = "approval_kernel"


# ---------------------------------------------------------------------------
# Request-scoped context
# ---------------------------------------------------------------------------

_context: ContextVar[Mapping[str, str]] = ContextVar("approval_log_context", default={})


class LogContext:
    """
    Fields stamped on every record emitted in the current thread or task.

    Backed by a single ContextVar holding an immutable snapshot, so nested
    ``bind`` blocks and concurrent tasks never see each other's values.
    """

    FIELDS = ("correlation_id", "workflow_id", "invoice_id", "actor_id")

    @classmethod
    def _merge(cls, values: Mapping[str, Any]) -> dict[str, str]:
        merged = dict(_context.get())
        for key, value in values.items():
            if key in cls.FIELDS and value is not None:
                merged[key] = str(value)
        return merged

    @classmethod
    def set(
        cls,
        *,
        correlation_id: str | None = None,
        workflow_id: str | None = None,
        invoice_id: str | None = None,
        actor_id: str | None = None,
    ) -> None:
        """Overwrite the given fields; ``None`` leaves a field untouched."""
        _context.set(
            cls._merge(
                {
                    "correlation_id": correlation_id,
                    "workflow_id": workflow_id,
                    "invoice_id": invoice_id,
                    "actor_id": actor_id,
                }
            )
        )

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_context.get())

    @classmethod
    def clear(cls) -> None:
        _context.set({})

    @classmethod
    @contextmanager
    def bind(cls, **values: Any) -> Iterator[type["LogContext"]]:
        """Scope fields to a ``with`` block.  Unknown keys are ignored."""
        token = _context.set(cls._merge(values))
        try:
            yield cls
        finally:
            _context.reset(token)


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------

_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def _json_default(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def _exception_payload(exc: BaseException) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        payload["exc_code"] = code
    for name, value in vars(exc).items():
        if not name.startswith("_"):
            payload[f"exc_{name}"] = value
    return payload


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(LogContext.get_all())

        for key, value in vars(record).items():
            if key in _RECORD_ATTRIBUTES or key in payload:
                continue
            payload[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_payload(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """``get_logger("services.audit_ledger")`` -> ``approval_kernel.services.audit_ledger``."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


_setup_lock = threading.Lock()
_setup_done = False


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach a JSON handler to the ``approval_kernel`` logger.

    Only the first call has an effect until ``reset_logging``.  Records do
    not propagate to the root logger, so host applications that configure
    their own logging never see kernel records twice.
    """
    global _setup_done
    with _setup_lock:
        if _setup_done:
            return
        _setup_done = True

    if handler is None:
        handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredFormatter())

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    root.propagate = False
    root.addHandler(handler)


def reset_logging() -> None:
    """Detach every handler and allow ``configure_logging`` again.  Tests only."""
    global _setup_done
    with _setup_lock:
        _setup_done = False
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.WARNING)

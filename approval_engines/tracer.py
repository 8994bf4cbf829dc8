"""
approval_engines.tracer -- APPROVAL_ENGINE_TRACE records for pure engine calls.

``@traced_engine`` wraps an engine function and, after it returns, logs
the engine name and version, a fingerprint of selected arguments,
the call duration and, for list results, how many items came back.  The
fingerprint lets an operator confirm that two rule selections for the same
invoice saw identical inputs; dataclass arguments (``InvoiceSnapshot``) are
fingerprinted by value.

Engines stay pure: the decorator reads arguments and writes one log record.
"""

from __future__ import annotations

import dataclasses
import functools
import hashlib
import inspect
import logging
import time
from collections.abc import Callable
from typing import Any

from approval_kernel.utils.hashing import canonicalize_json

_logger = logging.getLogger("approval_kernel.engines.tracer")


def _render(value: Any) -> str:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)
    try:
        return canonicalize_json(value)
    except TypeError:
        return repr(value)


def compute_input_fingerprint(fields: tuple[str, ...], kwargs: dict[str, Any]) -> str:
    """First 16 hex chars of SHA-256 over ``field=value`` pairs; absent fields render as null."""
    joined = "|".join(f"{name}={_render(kwargs.get(name))}" for name in fields)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            started = time.monotonic()
            result = func(*args, **kwargs)
            arguments = signature.bind_partial(*args, **kwargs).arguments
            trace: dict[str, Any] = {
                "trace_type": "APPROVAL_ENGINE_TRACE",
                "engine_name": engine_name,
                "engine_version": engine_version,
                "input_fingerprint": (
                    compute_input_fingerprint(fingerprint_fields, arguments)
                    if fingerprint_fields else ""
                ),
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
                "function": func.__qualname__,
            }
            if isinstance(result, list):
                trace["result_count"] = len(result)
            _logger.info("APPROVAL_ENGINE_TRACE", extra=trace)
            return result

        return wrapper

    return decorator

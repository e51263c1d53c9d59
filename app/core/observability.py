
import inspect
import logging
import uuid
import contextvars
import time
from enum import Enum
from functools import wraps
from typing import Optional, Dict, Any, Iterable

# Context Variables for Trace Context
_trace_id_ctx = contextvars.ContextVar("trace_id", default=None)
_span_id_ctx = contextvars.ContextVar("span_id", default=None)

_trace_logger = logging.getLogger("app.trace")

class TraceManager:
    """
    Request-scoped trace and span ids plus structured trace events.

    The trace id is set once per HTTP request by the API middleware and
    inherited by every task spawned from it, so the per-user calls of one
    bulk run share it. Events go through the "app.trace" logger and are
    rendered by the JSON formatter in app.core.logging.
    """

    @staticmethod
    def get_trace_id() -> str:
        tid = _trace_id_ctx.get()
        if not tid:
            tid = str(uuid.uuid4())
            _trace_id_ctx.set(tid)
        return tid

    @staticmethod
    def current_trace_id() -> Optional[str]:
        return _trace_id_ctx.get()

    @staticmethod
    def current_span_id() -> Optional[str]:
        return _span_id_ctx.get()

    @staticmethod
    def set_trace_id(trace_id: str):
        _trace_id_ctx.set(trace_id)

    @staticmethod
    def log(level: str, message: str, extra: Optional[Dict[str, Any]] = None):
        fields = {
            "span_id": _span_id_ctx.get(),
            **(extra or {})
        }
        _trace_logger.log(
            logging.getLevelName(level.upper()),
            message,
            extra={"trace_id": TraceManager.get_trace_id(), "fields": fields},
        )

    @staticmethod
    def info(message: str, **kwargs):
        TraceManager.log("INFO", message, kwargs)

    @staticmethod
    def warning(message: str, **kwargs):
        TraceManager.log("WARNING", message, kwargs)

    @staticmethod
    def error(message: str, exc: Optional[Exception] = None, **kwargs):
        extra = kwargs
        if exc:
            extra["error"] = str(exc)
            extra["error_type"] = type(exc).__name__
        TraceManager.log("ERROR", message, extra)

    @staticmethod
    def span(name: str, record_args: Iterable[str] = ()):
        """
        Decorator to trace a coroutine as a span.

        `record_args` names call arguments (e.g. "kind", "identifier") that
        are attached to the span's start event.
        """
        record_args = tuple(record_args)

        def decorator(func):
            signature = inspect.signature(func)

            @wraps(func)
            async def wrapper(*args, **kwargs):
                parent_span = _span_id_ctx.get()
                token = _span_id_ctx.set(str(uuid.uuid4()))

                attrs = {}
                if record_args:
                    bound = signature.bind_partial(*args, **kwargs).arguments
                    attrs = {key: _plain(bound[key]) for key in record_args if key in bound}

                start_time = time.time()
                TraceManager.info(f"Start Span: {name}", span_name=name, parent_span=parent_span, **attrs)

                try:
                    result = await func(*args, **kwargs)
                    duration = time.time() - start_time
                    TraceManager.info(f"End Span: {name}", span_name=name, duration_ms=duration*1000)
                    return result
                except Exception as e:
                    duration = time.time() - start_time
                    TraceManager.error(f"Error Span: {name}", exc=e, span_name=name, duration_ms=duration*1000)
                    raise
                finally:
                    _span_id_ctx.reset(token)
            return wrapper
        return decorator


def _plain(value: Any) -> Any:
    # Enums log by value; identifier lists by size
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return f"<{len(value)} item(s)>"
    return value


import logging
import sys
import json
from .settings import settings
from .observability import TraceManager

class TraceContextFilter(logging.Filter):
    """
    Stamps every record with the active trace and span ids, so module
    loggers (resolver, gateway, bulk) correlate with the request that
    triggered them without passing ids around.
    """

    def filter(self, record):
        if getattr(record, "trace_id", None) is None:
            record.trace_id = TraceManager.current_trace_id()
        if getattr(record, "span_id", None) is None:
            record.span_id = TraceManager.current_span_id()
        return True

class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_obj = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "trace_id": getattr(record, "trace_id", None),
            "span_id": getattr(record, "span_id", None),
        }
        # Structured fields from TraceManager events
        fields = getattr(record, "fields", None)
        if fields:
            log_obj.update(fields)
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str)

def setup_logging(level: str = None):
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())

    # uvicorn reload and the test suite both import the app more than once
    if not any(isinstance(h.formatter, JSONFormatter) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        handler.addFilter(TraceContextFilter())
        root.addHandler(handler)

    # httpx logs every request line at INFO; the gateway logs its own
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root

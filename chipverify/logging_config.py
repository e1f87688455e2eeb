"""
Structured logging for the chip verification service.

Log records are JSON lines tagged with the current request id. Scan-related
records additionally carry an event_type and flat fields so the log stream
can be filtered the same way as the chip_scan_events table. Chip secrets and
presented signatures are never passed to any of these methods.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

SERVICE_NAME = "chipverify"

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIdFilter(logging.Filter):
    """Stamps every record with the request id of the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", "")
        if request_id:
            entry["request_id"] = request_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(getattr(record, "event_fields", {}))
        return json.dumps(entry, default=str)


class EventLogger:
    """Typed scan events on the chipverify.events logger."""

    def __init__(self, name: str = "chipverify.events"):
        self._logger = logging.getLogger(name)

    def _emit(self, level: int, event_type: str, message: str, **fields) -> None:
        if not self._logger.isEnabledFor(level):
            return
        fields["event_type"] = event_type
        self._logger.log(level, "%s: %s", event_type, message, extra={"event_fields": fields})

    def scan_request(
        self,
        tag_id: Optional[str],
        key_id: Optional[str],
        page_artwork_id: Optional[str],
        ip: Optional[str]
    ) -> None:
        self._emit(
            logging.INFO, "SCAN_REQUEST", f"scan for tag {tag_id}",
            tag_id=tag_id, key_id=key_id, page_artwork_id=page_artwork_id, ip=ip,
        )

    def scan_outcome(
        self,
        state: str,
        chip_id: Optional[str],
        artwork_id: Optional[str],
        scan_event_id: str
    ) -> None:
        """The classification just written to the audit trail."""
        level = logging.INFO if state in ("authentic", "mismatch") else logging.WARNING
        self._emit(
            level, "SCAN_OUTCOME", f"classified {state}",
            state=state, chip_id=chip_id, artwork_id=artwork_id, scan_event_id=scan_event_id,
        )

    def request_rejected(self, error: str, tag_id: Optional[str] = None, **details) -> None:
        """A request refused with a 4xx before (or instead of) classification."""
        self._emit(logging.WARNING, "REQUEST_REJECTED", error, error=error, tag_id=tag_id, **details)

    def security_event(self, event: str, severity: str = "medium", **details) -> None:
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
        }.get(severity, logging.WARNING)
        self._emit(level, "SECURITY_EVENT", event, security_event=event, severity=severity, **details)


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        level: Root log level name
        json_format: JSON lines when True, plain text otherwise (local runs)
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"
        ))
    root.addHandler(handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id (generated when None) to the current context and return it."""
    request_id = request_id or uuid.uuid4().hex
    request_id_var.set(request_id)
    return request_id


event_log = EventLogger()

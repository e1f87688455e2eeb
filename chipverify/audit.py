"""
Scan audit trail.

Every classified verification attempt is appended as one ScanEvent. The
audit trail is a compliance requirement: if the append fails after a state
has been computed, the failure is raised rather than hidden, and the state
itself is left untouched for the caller to report.
"""

import logging
from typing import Optional

from .audit_backends import ScanEventMirror
from .exceptions import AuditWriteError, RegistryError
from .logging_config import event_log
from .models import ScanEvent, ScanState
from .registry import ChipRegistry

logger = logging.getLogger(__name__)


class AuditLogger:
    def __init__(self, registry: ChipRegistry, mirror: Optional[ScanEventMirror] = None):
        self._registry = registry
        self._mirror = mirror

    def record(
        self,
        state: ScanState,
        chip_id: Optional[str],
        artwork_id: Optional[str],
        ip: Optional[str],
        user_agent: Optional[str]
    ) -> ScanEvent:
        """
        Append one scan event.

        Raises:
            AuditWriteError: If the store (or the WORM mirror, when configured)
                rejects the event
        """
        event = ScanEvent(
            chip_id=chip_id,
            artwork_id=artwork_id,
            state=state,
            ip=ip,
            user_agent=user_agent,
        )
        try:
            self._registry.append_scan_event(event)
        except RegistryError as e:
            raise AuditWriteError(f"scan event {event.id} not stored: {e}", state=state.value) from e

        if self._mirror is not None:
            try:
                self._mirror.write_event(event)
            except Exception as e:
                raise AuditWriteError(f"scan event {event.id} not mirrored: {e}", state=state.value) from e

        event_log.scan_outcome(state.value, chip_id, artwork_id, event.id)
        return event

    def owner_handle(self, artwork_id: Optional[str]) -> Optional[str]:
        """
        Current owner's handle for display. Enrichment only: a failed lookup
        is logged and yields None.
        """
        if not artwork_id:
            return None
        try:
            return self._registry.get_owner_handle(artwork_id)
        except RegistryError as e:
            logger.warning("owner lookup failed for artwork %s: %s", artwork_id, e)
            return None

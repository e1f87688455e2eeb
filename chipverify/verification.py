"""
Chip Verification Orchestrator

Composes signature verification, replay protection, link resolution and the
audit trail into the verdict returned for one scan.

Rules, first match wins:
    1. missing a / c / ctr        -> 400 missing_params (audited as invalid)
    2. unknown tag                -> invalid
    3. bad signature              -> invalid
    4. unparseable counter        -> 400 bad_counter (not audited)
    5. counter <= stored          -> cloned (counter untouched)
    6. otherwise                  -> authentic | mismatch (counter advanced)

Authenticity failures are outcomes, not exceptions. Infrastructure failures
(RegistryError, AuditWriteError) propagate to the HTTP layer.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .audit import AuditLogger
from .audit_backends import ScanEventMirror
from .exceptions import CounterParseError
from .links import LinkResolver
from .logging_config import event_log
from .models import ScanEvent, ScanState, VerifyRequest
from .registry import ChipRegistry
from .replay import ReplayGuard, ReplayResult
from .security import MAX_TAG_ID_LENGTH
from .signature import SignatureVerifier


MISSING_PARAMS = "missing_params"
BAD_COUNTER = "bad_counter"
SERVER_ERROR = "server_error"


@dataclass
class VerificationOutcome:
    """Verdict for one scan, plus the HTTP status it is reported with."""
    status_code: int
    state: Optional[ScanState] = None
    error: Optional[str] = None
    linked_artwork_id: Optional[str] = None
    owner_handle: Optional[str] = None
    scan_event_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state in (ScanState.AUTHENTIC, ScanState.MISMATCH)

    @classmethod
    def rejected(cls, error: str, scan_event: Optional[ScanEvent] = None) -> 'VerificationOutcome':
        return cls(status_code=400, error=error,
                   scan_event_id=scan_event.id if scan_event else None)

    @classmethod
    def failed(cls, state: ScanState, scan_event: ScanEvent) -> 'VerificationOutcome':
        return cls(status_code=200, state=state, scan_event_id=scan_event.id)

    @classmethod
    def verified(cls, state: ScanState, linked_artwork_id: Optional[str],
                 owner_handle: Optional[str], scan_event: ScanEvent) -> 'VerificationOutcome':
        return cls(status_code=200, state=state, linked_artwork_id=linked_artwork_id,
                   owner_handle=owner_handle, scan_event_id=scan_event.id)

    def to_dict(self) -> Dict[str, Any]:
        if self.error:
            return {"ok": False, "error": self.error}
        if not self.ok:
            return {"ok": False, "state": self.state.value}
        return {
            "ok": True,
            "state": self.state.value,
            "linked_artwork_id": self.linked_artwork_id,
            "owner_handle": self.owner_handle,
        }


class ChipVerifier:
    """
    The verification orchestrator.

    Holds no per-request state; the registry, signature verifier and optional
    audit mirror are injected once at startup.
    """

    def __init__(
        self,
        registry: ChipRegistry,
        signatures: SignatureVerifier,
        mirror: Optional[ScanEventMirror] = None
    ):
        self._registry = registry
        self._signatures = signatures
        self._replay = ReplayGuard(registry)
        self._links = LinkResolver(registry)
        self._audit = AuditLogger(registry, mirror)

    def verify(
        self,
        request: VerifyRequest,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> VerificationOutcome:
        tag_id = request.a
        page_artwork_id = request.page_artwork_id
        event_log.scan_request(tag_id, request.t, page_artwork_id, ip)

        # 1. Required inputs
        missing = request.missing_fields()
        if missing:
            event = self._audit.record(ScanState.INVALID, None, page_artwork_id, ip, user_agent)
            event_log.request_rejected(MISSING_PARAMS, tag_id=tag_id, missing=missing)
            return VerificationOutcome.rejected(MISSING_PARAMS, event)

        # 2. Known chip; oversize tag ids are never sent to the store
        chip = None if len(tag_id) > MAX_TAG_ID_LENGTH else self._registry.get_chip_by_tag(tag_id)
        if chip is None:
            event = self._audit.record(ScanState.INVALID, None, page_artwork_id, ip, user_agent)
            event_log.security_event("unknown_tag", "low", tag_id=tag_id, page_artwork_id=page_artwork_id)
            return VerificationOutcome.failed(ScanState.INVALID, event)

        # 3. Signature over "<tag>|<ctr>" as presented
        if not self._signatures.verify(chip, tag_id, request.ctr, request.c):
            event = self._audit.record(ScanState.INVALID, chip.id, page_artwork_id, ip, user_agent)
            event_log.security_event("invalid_signature", "medium", chip_id=chip.id, tag_id=tag_id)
            return VerificationOutcome.failed(ScanState.INVALID, event)

        # 4. Counter format
        try:
            presented = self._replay.parse(request.ctr)
        except CounterParseError:
            event_log.request_rejected(BAD_COUNTER, tag_id=tag_id, chip_id=chip.id)
            return VerificationOutcome.rejected(BAD_COUNTER)

        # 5. Replay: a stale counter is cloned without touching the store again
        decision = self._replay.check(chip, presented)
        if decision is None:
            # Read-only; resolved before the counter moves so a store failure
            # here leaves the chip untouched.
            link = self._links.resolve(chip.id, page_artwork_id)
            decision = self._replay.advance(chip, presented)
        if not decision.accepted():
            event = self._audit.record(ScanState.CLONED, chip.id, page_artwork_id, ip, user_agent)
            event_log.security_event(
                "counter_replay",
                "high",
                chip_id=chip.id,
                presented_counter=decision.presented,
                stored_counter=decision.stored,
                race_lost=decision.result == ReplayResult.RACE_LOST,
            )
            return VerificationOutcome.failed(ScanState.CLONED, event)

        # 6. Accepted
        event = self._audit.record(
            link.state, chip.id, page_artwork_id or link.linked_artwork_id, ip, user_agent
        )
        if link.state == ScanState.MISMATCH:
            event_log.security_event(
                "artwork_mismatch",
                "medium",
                chip_id=chip.id,
                linked_artwork_id=link.linked_artwork_id,
                page_artwork_id=page_artwork_id,
            )

        owner_handle = self._audit.owner_handle(link.linked_artwork_id)
        return VerificationOutcome.verified(link.state, link.linked_artwork_id, owner_handle, event)

"""
Orchestrator state machine tests against the in-memory registry.
"""

import pytest

from chipverify.audit_backends import ScanEventMirror
from chipverify.exceptions import AuditWriteError, RegistryError
from chipverify.models import Chip, ScanState, VerifyRequest, parse_verify_request
from chipverify.registry import InMemoryChipRegistry
from chipverify.signature import DevelopmentSignatureVerifier, ProductionSignatureVerifier
from chipverify.util import hmac_sha256_hex
from chipverify.verification import ChipVerifier

SECRET = "s3cr3t"


def signed(ctr, tag_id="TAG123", secret=SECRET, **extra):
    return VerifyRequest(a=tag_id, c=hmac_sha256_hex(secret, f"{tag_id}|{ctr}"), ctr=str(ctr), **extra)


@pytest.fixture
def registry():
    reg = InMemoryChipRegistry()
    reg.add_chip(Chip(id="chip-1", tag_id="TAG123", counter=1), secret=SECRET)
    return reg


@pytest.fixture
def verifier(registry):
    return ChipVerifier(registry, ProductionSignatureVerifier())


def counter_of(registry, tag_id="TAG123"):
    return registry.get_chip_by_tag(tag_id).counter


def test_same_counter_twice_is_cloned(verifier, registry):
    first = verifier.verify(signed(2))
    second = verifier.verify(signed(2))
    assert first.state == ScanState.AUTHENTIC
    assert second.state == ScanState.CLONED
    assert second.to_dict() == {"ok": False, "state": "cloned"}
    assert counter_of(registry) == 2


def test_increasing_counters_never_cloned(verifier, registry):
    states = [verifier.verify(signed(n)).state for n in (2, 3, 10)]
    assert ScanState.CLONED not in states
    assert counter_of(registry) == 10


def test_rollback_is_cloned(verifier, registry):
    verifier.verify(signed(10))
    outcome = verifier.verify(signed(4))
    assert outcome.state == ScanState.CLONED
    assert counter_of(registry) == 10


def test_counter_equal_to_stored_is_cloned(verifier, registry):
    outcome = verifier.verify(signed(1))
    assert outcome.state == ScanState.CLONED
    assert counter_of(registry) == 1


def test_unknown_tag_never_mutates_counters(verifier, registry):
    outcome = verifier.verify(signed(99, tag_id="OTHER"))
    assert outcome.state == ScanState.INVALID
    assert counter_of(registry) == 1
    assert registry.events[-1].chip_id is None


def test_every_classified_attempt_writes_one_event(verifier, registry):
    verifier.verify(signed(2))                          # authentic
    verifier.verify(signed(2))                          # cloned
    verifier.verify(signed(3, secret="wrong"))          # invalid signature
    verifier.verify(signed(3, tag_id="NOPE"))           # unknown tag
    states = [e.state for e in registry.events]
    assert states == [ScanState.AUTHENTIC, ScanState.CLONED, ScanState.INVALID, ScanState.INVALID]


def test_bad_counter_writes_no_event(verifier, registry):
    outcome = verifier.verify(signed("1.5"))
    assert outcome.status_code == 400
    assert outcome.to_dict() == {"ok": False, "error": "bad_counter"}
    assert registry.events == []


def test_negative_counter_is_bad_counter(verifier, registry):
    outcome = verifier.verify(signed("-3"))
    assert outcome.error == "bad_counter"
    assert counter_of(registry) == 1


def test_signature_checked_before_counter_format(verifier, registry):
    outcome = verifier.verify(VerifyRequest(a="TAG123", c="00" * 32, ctr="abc"))
    assert outcome.state == ScanState.INVALID
    assert registry.events[0].chip_id == "chip-1"


def test_missing_params_audited_without_chip(verifier, registry):
    outcome = verifier.verify(VerifyRequest(a="TAG123", page_artwork_id="art-1"))
    assert outcome.status_code == 400
    assert outcome.error == "missing_params"
    assert registry.events[0].chip_id is None
    assert registry.events[0].artwork_id == "art-1"
    assert registry.events[0].state == ScanState.INVALID


def test_mismatch_advances_counter_and_records_page_artwork(verifier, registry):
    registry.link("chip-1", "X")
    outcome = verifier.verify(signed(2, page_artwork_id="Y"))
    assert outcome.to_dict() == {"ok": True, "state": "mismatch", "linked_artwork_id": "X", "owner_handle": None}
    assert counter_of(registry) == 2
    assert registry.events[0].artwork_id == "Y"


def test_authentic_event_falls_back_to_linked_artwork(verifier, registry):
    registry.link("chip-1", "X")
    registry.set_owner("X", "user-9", "bob")
    outcome = verifier.verify(signed(2))
    assert outcome.state == ScanState.AUTHENTIC
    assert outcome.linked_artwork_id == "X"
    assert outcome.owner_handle == "@bob"
    assert registry.events[0].artwork_id == "X"


def test_owner_lookup_failure_does_not_change_verdict(verifier, registry, monkeypatch):
    registry.link("chip-1", "X")

    def broken(artwork_id):
        raise RegistryError("profiles unavailable")

    monkeypatch.setattr(registry, "get_owner_handle", broken)
    outcome = verifier.verify(signed(2, page_artwork_id="X"))
    assert outcome.state == ScanState.AUTHENTIC
    assert outcome.owner_handle is None
    assert counter_of(registry) == 2


def test_audit_failure_raises_after_classification(verifier, registry, monkeypatch):
    def refuse(event):
        raise RegistryError("insert failed")

    monkeypatch.setattr(registry, "append_scan_event", refuse)
    with pytest.raises(AuditWriteError) as excinfo:
        verifier.verify(signed(2))
    assert excinfo.value.state == "authentic"


def test_link_lookup_failure_leaves_counter(verifier, registry, monkeypatch):
    def down(chip_id):
        raise RegistryError("links unavailable")

    monkeypatch.setattr(registry, "get_artwork_link", down)
    with pytest.raises(RegistryError):
        verifier.verify(signed(2))
    assert counter_of(registry) == 1
    assert registry.events == []


def test_lost_counter_race_is_cloned(verifier, registry, monkeypatch):
    # Another request advanced the counter between our read and our write
    def lose(chip_id, new_counter):
        return False

    monkeypatch.setattr(registry, "advance_counter", lose)
    outcome = verifier.verify(signed(2))
    assert outcome.state == ScanState.CLONED
    assert registry.events[0].state == ScanState.CLONED


def test_mirror_receives_every_event(registry):
    class RecordingMirror(ScanEventMirror):
        def __init__(self):
            self.events = []

        def write_event(self, event):
            self.events.append(event)

    mirror = RecordingMirror()
    verifier = ChipVerifier(registry, ProductionSignatureVerifier(), mirror=mirror)
    verifier.verify(signed(2))
    verifier.verify(signed(2))
    assert [e.state for e in mirror.events] == [ScanState.AUTHENTIC, ScanState.CLONED]


def test_development_bypass_for_secretless_chip():
    reg = InMemoryChipRegistry()
    reg.add_chip(Chip(id="dev-1", tag_id="DEV1", counter=0))
    verifier = ChipVerifier(reg, DevelopmentSignatureVerifier("letmein"))
    assert verifier.verify(VerifyRequest(a="DEV1", c="letmein", ctr="1")).state == ScanState.AUTHENTIC
    assert verifier.verify(VerifyRequest(a="DEV1", c="letmein", ctr="1")).state == ScanState.CLONED
    assert verifier.verify(VerifyRequest(a="DEV1", c="wrong", ctr="2")).state == ScanState.INVALID


def test_replay_classified_before_link_lookup(verifier, registry, monkeypatch):
    def down(chip_id):
        raise RegistryError("links unavailable")

    monkeypatch.setattr(registry, "get_artwork_link", down)
    outcome = verifier.verify(signed(1))
    assert outcome.state == ScanState.CLONED
    assert registry.events[0].state == ScanState.CLONED


def test_oversize_tag_is_unknown_without_lookup(verifier, registry, monkeypatch):
    def unexpected(tag_id):
        raise AssertionError("store queried")

    monkeypatch.setattr(registry, "get_chip_by_tag", unexpected)
    outcome = verifier.verify(signed(2, tag_id="T" * 300))
    assert outcome.state == ScanState.INVALID
    assert registry.events[0].chip_id is None


@pytest.mark.parametrize("raw,expected", [
    ({"a": "TAG123", "c": "ab", "ctr": 7}, "7"),
    ({"a": "TAG123", "c": "ab", "ctr": 2.0}, "2.0"),
    ({"a": "TAG123", "c": "ab", "ctr": True}, "true"),
    ({"a": "TAG123", "c": "ab", "ctr": "9" * 70}, "9" * 70),
])
def test_scalar_counters_kept_as_presented(raw, expected):
    assert parse_verify_request(raw).ctr == expected


def test_non_scalar_fields_dropped_others_kept():
    req = parse_verify_request({"a": "TAG123", "c": {"x": 1}, "ctr": "2", "page_artwork_id": "art-1"})
    assert req.c is None
    assert req.a == "TAG123"
    assert req.page_artwork_id == "art-1"
    assert req.missing_fields() == ["c"]

import pytest

from chipverify.exceptions import CounterParseError
from chipverify.links import classify_link
from chipverify.models import Chip, ScanState
from chipverify.registry import InMemoryChipRegistry
from chipverify.replay import ReplayGuard, ReplayResult
from chipverify.security import MAX_COUNTER, parse_counter


@pytest.mark.parametrize("raw,expected", [
    ("0", 0),
    ("2", 2),
    ("0007", 7),
    (" 42 ", 42),
    (42, 42),
    (str(MAX_COUNTER), MAX_COUNTER),
    ("0" * 63 + "5", 5),
])
def test_parse_counter_accepts(raw, expected):
    assert parse_counter(raw) == expected


@pytest.mark.parametrize("raw", ["", "abc", "-1", "1.5", "1e3", "+3", "0x10", "9" * 70, "0" * 65 + "1",
                                 str(MAX_COUNTER + 1), None, True, 2.0])
def test_parse_counter_rejects(raw):
    with pytest.raises(CounterParseError):
        parse_counter(raw)


@pytest.fixture
def registry():
    reg = InMemoryChipRegistry()
    reg.add_chip(Chip(id="chip-1", tag_id="TAG123", counter=5), secret="s")
    return reg


def test_strictly_greater_is_accepted_and_persisted(registry):
    guard = ReplayGuard(registry)
    chip = registry.get_chip_by_tag("TAG123")
    decision = guard.check_and_advance(chip, 6)
    assert decision.accepted()
    assert registry.get_chip_by_tag("TAG123").counter == 6


@pytest.mark.parametrize("presented", [0, 4, 5])
def test_not_greater_is_stale(registry, presented):
    guard = ReplayGuard(registry)
    chip = registry.get_chip_by_tag("TAG123")
    decision = guard.check_and_advance(chip, presented)
    assert decision.result == ReplayResult.STALE
    assert registry.get_chip_by_tag("TAG123").counter == 5


def test_stale_snapshot_loses_to_newer_write(registry):
    guard = ReplayGuard(registry)
    snapshot = registry.get_chip_by_tag("TAG123")
    assert guard.check_and_advance(snapshot, 9).accepted()
    # Same stale snapshot, same counter: the conditional update refuses
    decision = guard.check_and_advance(snapshot, 9)
    assert decision.result == ReplayResult.RACE_LOST
    assert not decision.accepted()
    # And a lower one that beat the snapshot but not the stored value
    assert guard.check_and_advance(snapshot, 7).result == ReplayResult.RACE_LOST
    assert registry.get_chip_by_tag("TAG123").counter == 9


@pytest.mark.parametrize("linked,page,state,reported", [
    (None, None, ScanState.AUTHENTIC, None),
    (None, "Y", ScanState.AUTHENTIC, None),
    ("X", None, ScanState.AUTHENTIC, "X"),
    ("X", "X", ScanState.AUTHENTIC, "X"),
    ("X", "Y", ScanState.MISMATCH, "X"),
])
def test_classify_link(linked, page, state, reported):
    resolution = classify_link(linked, page)
    assert resolution.state == state
    assert resolution.linked_artwork_id == reported


def test_check_does_not_touch_store(registry, monkeypatch):
    def unexpected(chip_id, new_counter):
        raise AssertionError("store written")

    monkeypatch.setattr(registry, "advance_counter", unexpected)
    guard = ReplayGuard(registry)
    chip = registry.get_chip_by_tag("TAG123")
    assert guard.check(chip, 5).result == ReplayResult.STALE
    assert guard.check(chip, 6) is None

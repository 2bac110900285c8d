from __future__ import annotations

import pytest

from receipt_points.domain import UNSET, EntryStatus, ProcessingEntry, Stage
from receipt_points.domain.errors import EntryNotFound, InvalidTransition
from receipt_points.domain.models import coerce_points
from receipt_points.orchestrator import EntryStore


def _seeded(*entries: ProcessingEntry) -> EntryStore:
    store = EntryStore()
    for entry in entries:
        store.add(entry)
    return store


def test_add_keeps_newest_first_and_rejects_duplicates() -> None:
    first, second = ProcessingEntry.new(), ProcessingEntry.new()
    store = _seeded(first, second)

    assert [e.id for e in store.entries()] == [second.id, first.id]
    with pytest.raises(ValueError):
        store.add(first)


def test_terminal_status_cannot_change_without_retry() -> None:
    entry = ProcessingEntry.new()
    store = _seeded(entry)
    store.patch(entry.id, status=EntryStatus.VALID, data={"x": 1})

    with pytest.raises(InvalidTransition):
        store.patch(entry.id, status=EntryStatus.INVALID)
    with pytest.raises(InvalidTransition):
        store.patch(entry.id, status=EntryStatus.PROCESSING, retry=True)


def test_retry_reopens_failed_entries() -> None:
    entry = ProcessingEntry.new()
    store = _seeded(entry)
    store.patch(entry.id, status="cancelled", error="Timeout no processamento do OCR.")

    reopened = store.patch(entry.id, retry=True, status=EntryStatus.PROCESSING, error=None)

    assert reopened.status == EntryStatus.PROCESSING
    assert reopened.error is None


def test_error_text_must_match_failed_status() -> None:
    entry = ProcessingEntry.new()
    store = _seeded(entry)

    with pytest.raises(InvalidTransition):
        store.patch(entry.id, status=EntryStatus.ERROR)
    with pytest.raises(InvalidTransition):
        store.patch(entry.id, error="oops")
    assert store.require(entry.id).status == EntryStatus.PROCESSING


def test_points_settle_once_unless_retried() -> None:
    entry = ProcessingEntry.new()
    store = _seeded(entry)
    store.patch(entry.id, status=EntryStatus.VALID)
    store.patch(entry.id, points=None, points_error="Erro ao gerar pontos: 500")

    with pytest.raises(InvalidTransition):
        store.patch(entry.id, points=10)
    with pytest.raises(InvalidTransition):
        store.patch(entry.id, points=UNSET)

    store.patch(entry.id, retry=True, points=UNSET, points_error=None)
    assert store.patch(entry.id, points=10).points == 10


def test_stale_token_updates_are_dropped() -> None:
    entry = ProcessingEntry.new()
    store = _seeded(entry)
    old = store.begin(entry.id, Stage.OCR)
    new = store.begin(entry.id, Stage.OCR)

    assert store.patch(entry.id, token=old, status=EntryStatus.VALID) is None
    assert store.require(entry.id).status == EntryStatus.PROCESSING
    assert store.patch(entry.id, token=new, status=EntryStatus.VALID).status == EntryStatus.VALID


def test_invalidate_only_touches_requested_stage() -> None:
    entry = ProcessingEntry.new()
    store = _seeded(entry)
    ocr = store.begin(entry.id, Stage.OCR)
    points = store.begin(entry.id, Stage.POINTS)

    store.invalidate(entry.id, Stage.OCR)

    assert not store.is_current(entry.id, ocr)
    assert store.is_current(entry.id, points)


def test_patch_on_removed_entry_is_a_no_op() -> None:
    entry = ProcessingEntry.new()
    store = _seeded(entry)
    token = store.begin(entry.id, Stage.OCR)
    store.remove(entry.id)

    assert store.patch(entry.id, token=token, status=EntryStatus.VALID) is None
    assert entry.id not in store
    with pytest.raises(EntryNotFound):
        store.require(entry.id)


def test_remove_clears_selection() -> None:
    a, b = ProcessingEntry.new(), ProcessingEntry.new()
    store = _seeded(a, b)
    store.select(a.id)
    assert store.selected.id == a.id

    store.remove(b.id)
    assert store.selected.id == a.id
    store.remove(a.id)
    assert store.selected is None


def test_listeners_see_every_mutation_and_failures_are_contained() -> None:
    seen = []

    def broken(entries):
        raise RuntimeError("listener bug")

    store = EntryStore()
    store.subscribe(broken)
    unsubscribe = store.subscribe(lambda entries: seen.append([e.status for e in entries]))

    entry = store.add(ProcessingEntry.new())
    store.patch(entry.id, status=EntryStatus.INVALID, data="raw")
    unsubscribe()
    store.remove(entry.id)

    assert seen == [[EntryStatus.PROCESSING], [EntryStatus.INVALID]]


@pytest.mark.parametrize(
    "raw, expected",
    [("15", 15), ("12abc", 12), ("-3", 0), ("abc", 0), (None, 0), (7.9, 7), (20, 20)],
)
def test_coerce_points(raw, expected) -> None:
    assert coerce_points(raw) == expected


def test_entry_dict_omits_unset_points() -> None:
    entry = ProcessingEntry.new(image="data:image/jpeg;base64,AAAA")
    raw = entry.to_dict()
    assert "points" not in raw

    restored = ProcessingEntry.from_dict({**raw, "points": None})
    assert restored.points is None
    assert ProcessingEntry.from_dict(raw).points is UNSET
    assert restored.timestamp == entry.timestamp

    with pytest.raises(ValueError):
        ProcessingEntry.from_dict({"status": "valid"})
    with pytest.raises(ValueError):
        ProcessingEntry.from_dict({"id": "x", "status": "weird", "timestamp": raw["timestamp"]})

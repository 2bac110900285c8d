from __future__ import annotations

import asyncio
import threading
from dataclasses import replace

import pytest

from conftest import VALID_OCR
from receipt_points.domain import UNSET, EntryStatus, Stage
from receipt_points.domain.errors import NetworkError, ProtocolError, UserCancelled
from receipt_points.orchestrator.pipeline import (
    INTERRUPTED_MESSAGE,
    OCR_TIMEOUT_MESSAGE,
    POINTS_TIMEOUT_MESSAGE,
    UNEXPECTED_MESSAGE,
    purchase_value,
)
from receipt_points.domain.models import ProcessingEntry


def test_purchase_value_handles_decimal_comma_and_numbers() -> None:
    assert purchase_value({"valor_total": "45,90"}) == pytest.approx(45.9)
    assert purchase_value({"valor_total": "R$ 1.234,50"}) == pytest.approx(1234.5)
    assert purchase_value({"valor_total": 12}) == 12.0
    with pytest.raises(ProtocolError):
        purchase_value({"valor_total": None})


@pytest.mark.asyncio
async def test_happy_path_reaches_valid_with_points(orchestrator, store, scan_service, points_service, clock) -> None:
    scan_service.responses = [None, None, VALID_OCR]
    points_service.responses = [{"status": "pending"}, {"status": "generated", "points": "15", "matched": [
        {"name": "Dobro", "effect": {"type": "multiply", "value": "2"}}
    ]}]

    entry = await orchestrator.start(b"jpeg-bytes")
    assert entry.status == EntryStatus.PROCESSING
    assert entry.scan_id == "scan-1"
    assert entry.image.startswith("blob:")

    await orchestrator.wait_idle()
    final = store.require(entry.id)
    assert final.status == EntryStatus.VALID
    assert final.data["emitente_cnpj"] == "12.345.678/0001-90"
    assert final.error is None
    assert final.points == 15
    assert final.transaction_id == "tx-1"
    assert [rule.name for rule in final.matched] == ["Dobro"]
    assert points_service.generated[0]["value"] == pytest.approx(45.9)
    assert points_service.generated[0]["token"] == "secret-token"
    assert len(scan_service.verifies) == 3
    # OCR waits 1s between probes, points 5s
    assert clock.sleeps[:3] == [1.0, 1.0, 1.0]
    assert clock.sleeps[3:] == [5.0, 5.0]


@pytest.mark.asyncio
async def test_invalid_ocr_does_not_request_points(orchestrator, store, scan_service, points_service) -> None:
    scan_service.responses = ['{"emitente_cnpj": null, "valor_total": "10,00"}']

    entry = await orchestrator.start(b"x")
    await orchestrator.wait_idle()

    final = store.require(entry.id)
    assert final.status == EntryStatus.INVALID
    assert final.points is UNSET
    assert points_service.generated == []


@pytest.mark.asyncio
async def test_unparsable_ocr_body_keeps_raw_text(orchestrator, store, scan_service) -> None:
    scan_service.responses = ["not json at all"]

    entry = await orchestrator.start(b"x")
    await orchestrator.wait_idle()

    final = store.require(entry.id)
    assert final.status == EntryStatus.INVALID
    assert final.data == "not json at all"


@pytest.mark.asyncio
async def test_ocr_timeout_marks_entry_cancelled(orchestrator, store, clock) -> None:
    entry = await orchestrator.start(b"x")
    await orchestrator.wait_idle()

    final = store.require(entry.id)
    assert final.status == EntryStatus.CANCELLED
    assert final.error == OCR_TIMEOUT_MESSAGE
    assert clock.now == pytest.approx(120.0)


@pytest.mark.asyncio
async def test_transient_verify_errors_are_retried(orchestrator, store, scan_service) -> None:
    scan_service.responses = [NetworkError("Erro ao verificar OCR: 500"), VALID_OCR]
    orchestrator.tokens.set(None)

    entry = await orchestrator.start(b"x")
    await orchestrator.wait_idle()

    assert store.require(entry.id).status == EntryStatus.VALID


@pytest.mark.asyncio
async def test_upload_failure_records_error_and_raises(orchestrator, store, scan_service) -> None:
    scan_service.upload_error = NetworkError("Falha no upload (500).", status_code=500)

    with pytest.raises(NetworkError):
        await orchestrator.start(b"x")

    (entry,) = store.entries()
    assert entry.status == EntryStatus.ERROR
    assert entry.error == "Falha no upload (500)."
    assert scan_service.scans == []


@pytest.mark.asyncio
async def test_scan_failure_records_error_and_raises(orchestrator, store, scan_service) -> None:
    scan_service.scan_error = NetworkError("OCR indisponível", status_code=503)

    with pytest.raises(NetworkError):
        await orchestrator.start(b"x")

    (entry,) = store.entries()
    assert entry.status == EntryStatus.ERROR
    assert entry.error == "OCR indisponível"
    assert entry.scan_id is None


@pytest.mark.asyncio
async def test_missing_token_leaves_points_unset(orchestrator, store, scan_service, points_service) -> None:
    scan_service.responses = [VALID_OCR]
    orchestrator.tokens.set("   ")

    entry = await orchestrator.start(b"x")
    await orchestrator.wait_idle()

    final = store.require(entry.id)
    assert final.status == EntryStatus.VALID
    assert final.points is UNSET
    assert points_service.generated == []


@pytest.mark.asyncio
async def test_generate_failure_sets_points_none_but_keeps_status(
    orchestrator, store, scan_service, points_service
) -> None:
    scan_service.responses = [VALID_OCR]
    points_service.generate_error = NetworkError("Erro ao gerar pontos: 401", status_code=401)

    entry = await orchestrator.start(b"x")
    await orchestrator.wait_idle()

    final = store.require(entry.id)
    assert final.status == EntryStatus.VALID
    assert final.points is None
    assert final.points_error == "Erro ao gerar pontos: 401"
    assert final.error is None


@pytest.mark.asyncio
async def test_points_timeout_sets_points_none(orchestrator, store, scan_service, points_service) -> None:
    scan_service.responses = [VALID_OCR]

    entry = await orchestrator.start(b"x")
    await orchestrator.wait_idle()

    final = store.require(entry.id)
    assert final.status == EntryStatus.VALID
    assert final.points is None
    assert final.points_error == POINTS_TIMEOUT_MESSAGE
    assert len(points_service.verified) == 23


@pytest.mark.asyncio
async def test_points_zero_keeps_polling_until_positive(orchestrator, store, scan_service, points_service) -> None:
    scan_service.responses = [VALID_OCR]
    points_service.responses = [{"status": "generated", "points": 0}, {"status": "generated", "points": 7.9}]

    entry = await orchestrator.start(b"x")
    await orchestrator.wait_idle()

    assert store.require(entry.id).points == 7
    assert len(points_service.verified) == 2


@pytest.mark.asyncio
async def test_points_protocol_error_stops_polling(orchestrator, store, scan_service, points_service) -> None:
    scan_service.responses = [VALID_OCR]
    points_service.responses = [ProtocolError("Resposta de verificação de pontos inválida")]

    entry = await orchestrator.start(b"x")
    await orchestrator.wait_idle()

    final = store.require(entry.id)
    assert final.points is None
    assert final.points_error == "Resposta de verificação de pontos inválida"
    assert len(points_service.verified) == 1


@pytest.mark.asyncio
async def test_cancel_during_upload_raises_user_cancelled(orchestrator, store, scan_service) -> None:
    release = asyncio.Event()
    real_upload = scan_service.upload

    async def slow_upload(image, **kwargs):
        await release.wait()
        return await real_upload(image, **kwargs)

    scan_service.upload = slow_upload
    task = asyncio.ensure_future(orchestrator.start(b"x"))
    while not len(store):
        await asyncio.sleep(0.01)

    (entry,) = store.entries()
    orchestrator.controller.cancel_processing(entry.id)
    release.set()

    with pytest.raises(UserCancelled):
        await task
    final = store.require(entry.id)
    assert final.status == EntryStatus.ERROR
    assert scan_service.scans == []


@pytest.mark.asyncio
async def test_result_arriving_after_cancel_is_discarded(orchestrator, store, scan_service) -> None:
    scan_service.gate = asyncio.Event()
    scan_service.responses = [VALID_OCR]

    entry = await orchestrator.start(b"x")
    for _ in range(10):
        await asyncio.sleep(0)
    assert scan_service.verifies == ["scan-1"]

    orchestrator.controller.cancel_processing(entry.id)
    scan_service.gate.set()
    await orchestrator.wait_idle()

    final = store.require(entry.id)
    assert final.status == EntryStatus.ERROR
    assert final.data is None
    assert orchestrator.task_for(entry.id, Stage.OCR) is None


@pytest.mark.asyncio
async def test_resume_pending_restarts_loops(orchestrator, store, scan_service, points_service) -> None:
    mid_ocr = replace(ProcessingEntry.new(), scan_id="scan-9")
    never_scanned = ProcessingEntry.new()
    awaiting_points = replace(
        ProcessingEntry.new(),
        status=EntryStatus.VALID,
        data={"emitente_cnpj": "1"},
        transaction_id="tx-9",
    )
    store.reset([mid_ocr, never_scanned, awaiting_points])
    scan_service.responses = ['{"emitente_cnpj": ""}']
    points_service.responses = [{"status": "generated", "points": 3}]

    assert orchestrator.resume_pending() == 2
    await orchestrator.wait_idle()

    assert store.require(mid_ocr.id).status == EntryStatus.INVALID
    assert store.require(never_scanned.id).status == EntryStatus.ERROR
    assert store.require(never_scanned.id).error == INTERRUPTED_MESSAGE
    assert store.require(awaiting_points.id).points == 3
    assert scan_service.verifies == ["scan-9"]
    assert points_service.verified == ["tx-9"]


@pytest.mark.asyncio
async def test_deeply_nested_ocr_body_is_invalid(orchestrator, store, scan_service) -> None:
    nested = "[" * 100000 + "]" * 100000
    scan_service.responses = [nested]

    entry = await orchestrator.start(b"x")
    await orchestrator.wait_idle()

    final = store.require(entry.id)
    assert final.status == EntryStatus.INVALID
    assert final.data == nested
    assert orchestrator.task_for(entry.id, Stage.OCR) is None


@pytest.mark.asyncio
async def test_validator_crash_marks_entry_as_error(orchestrator, store, scan_service, points_service) -> None:
    def broken_validator(text):
        raise RuntimeError("boom")

    orchestrator.validator = broken_validator
    scan_service.responses = [VALID_OCR]

    entry = await orchestrator.start(b"x")
    await orchestrator.wait_idle()

    final = store.require(entry.id)
    assert final.status == EntryStatus.ERROR
    assert final.error == UNEXPECTED_MESSAGE
    assert points_service.generated == []


@pytest.mark.asyncio
async def test_normalizer_runs_off_the_event_loop(orchestrator, store) -> None:
    seen = []

    def normalizer(raw: bytes) -> bytes:
        seen.append(threading.get_ident())
        return raw

    orchestrator.normalizer = normalizer
    entry = await orchestrator.create_entry(b"jpeg")

    assert seen and seen[0] != threading.get_ident()
    assert store.require(entry.id).status == EntryStatus.PROCESSING


@pytest.mark.asyncio
async def test_process_refuses_entry_cancelled_before_upload(orchestrator, store, scan_service) -> None:
    entry = await orchestrator.create_entry(b"x")
    orchestrator.controller.cancel_processing(entry.id)

    with pytest.raises(UserCancelled):
        await orchestrator.process(entry.id)
    assert scan_service.uploads == []


@pytest.mark.asyncio
async def test_points_verify_uses_current_token_each_tick(orchestrator, store, scan_service, points_service) -> None:
    scan_service.responses = [VALID_OCR]
    points_service.responses = [{"status": "pending"}, {"status": "generated", "points": 5}]
    real_verify = points_service.verify

    async def verify_then_rotate(token, transaction_id):
        body = await real_verify(token, transaction_id)
        orchestrator.tokens.set("rotated-token")
        return body

    points_service.verify = verify_then_rotate
    entry = await orchestrator.start(b"x")
    await orchestrator.wait_idle()

    assert store.require(entry.id).points == 5
    assert points_service.generated[0]["token"] == "secret-token"
    assert points_service.tokens == ["secret-token", "rotated-token"]

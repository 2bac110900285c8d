"""Retry, cancel, and delete operations on existing entries."""

from __future__ import annotations

from typing import Optional

from ..domain.errors import InvalidTransition, RetryNotPossible
from ..domain.models import RETRYABLE_OCR, UNSET, EntryStatus, ProcessingEntry, Stage
from ..logging import get_logger
from .pipeline import USER_CANCELLED_MESSAGE, PipelineOrchestrator

LOG = get_logger("controller")


class EntryController:
    """Re-enters or terminates the pipeline for an entry, never duplicating it."""

    def __init__(self, orchestrator: PipelineOrchestrator) -> None:
        self.orchestrator = orchestrator
        self.store = orchestrator.store

    def retry_ocr(self, entry_id: str, scan_id: Optional[str] = None) -> ProcessingEntry:
        entry = self.store.require(entry_id)
        scan_id = scan_id or entry.scan_id
        if not scan_id:
            raise RetryNotPossible("Nenhum scan_id disponível para reprocessar o OCR.")

        if entry.status != EntryStatus.PROCESSING:
            if entry.status not in RETRYABLE_OCR:
                raise InvalidTransition(f"OCR retry not allowed from {entry.status.value}")
            self.store.patch(entry_id, retry=True, status=EntryStatus.PROCESSING, error=None, scan_id=scan_id)
        LOG.info(f"Retrying OCR for entry {entry_id} (scan_id={scan_id})")
        self.orchestrator.start_ocr_polling(entry_id, scan_id)
        return self.store.require(entry_id)

    def retry_points(self, entry_id: str, transaction_id: Optional[str] = None) -> ProcessingEntry:
        entry = self.store.require(entry_id)
        if entry.status != EntryStatus.VALID:
            raise InvalidTransition("Pontos só podem ser reprocessados para notas válidas.")
        if self.orchestrator.points_busy(entry_id):
            raise RetryNotPossible("Pontos já estão sendo gerados para esta nota.")

        transaction_id = transaction_id or entry.transaction_id
        changes = {"points": UNSET, "points_error": None}
        if transaction_id:
            changes["transaction_id"] = transaction_id
        self.store.patch(entry_id, retry=True, **changes)

        if transaction_id:
            LOG.info(f"Retrying points polling for entry {entry_id} (transactionId={transaction_id})")
            self.orchestrator.start_points_polling(entry_id, transaction_id)
        else:
            LOG.info(f"No transactionId for entry {entry_id}; generating points again")
            self.orchestrator.regenerate_points(entry_id)
        return self.store.require(entry_id)

    def cancel_processing(self, entry_id: str) -> ProcessingEntry:
        entry = self.store.require(entry_id)
        if entry.status != EntryStatus.PROCESSING:
            raise InvalidTransition("Só é possível cancelar notas em processamento.")
        self.orchestrator.cancel_tasks(entry_id, Stage.OCR)
        LOG.info(f"Processing cancelled for entry {entry_id}")
        return self.store.patch(entry_id, status=EntryStatus.ERROR, error=USER_CANCELLED_MESSAGE)

    def delete_entry(self, entry_id: str) -> ProcessingEntry:
        self.store.require(entry_id)
        self.orchestrator.cancel_tasks(entry_id)
        entry = self.store.remove(entry_id)
        self.orchestrator.blobs.revoke(entry.image)
        return entry

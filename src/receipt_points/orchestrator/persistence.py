"""Flat JSON snapshot of the entry store."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable, List

from ..domain.models import ProcessingEntry
from ..logging import get_logger
from .blobs import BlobRegistry

LOG = get_logger("persistence")

SNAPSHOT_VERSION = 1


class SnapshotStore:
    def __init__(self, path: str, blobs: BlobRegistry) -> None:
        self.path = os.path.abspath(path)
        self.blobs = blobs

    def _durable(self, entry: ProcessingEntry) -> ProcessingEntry:
        image = self.blobs.resolve_durable(entry.image)
        if image == entry.image:
            return entry
        return replace(entry, image=image)

    def load(self) -> List[ProcessingEntry]:
        """Read the snapshot; missing or corrupt data counts as no prior state."""
        if not os.path.isfile(self.path):
            LOG.info(f"No snapshot at {self.path}; starting empty")
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw: Any = json.load(f)
        except (OSError, ValueError) as exc:
            LOG.warning(f"Snapshot unreadable ({exc}); starting empty")
            return []

        records = raw.get("entries") if isinstance(raw, dict) else raw
        if not isinstance(records, list):
            LOG.warning("Snapshot has no entry list; starting empty")
            return []

        entries: List[ProcessingEntry] = []
        seen = set()
        for record in records:
            if not isinstance(record, dict):
                LOG.warning(f"Skipping malformed snapshot record: {record!r:.80}")
                continue
            try:
                entry = ProcessingEntry.from_dict(record)
            except ValueError as exc:
                LOG.warning(f"Skipping snapshot record: {exc}")
                continue
            if entry.id in seen:
                continue
            seen.add(entry.id)
            entries.append(self._durable(entry))
        LOG.info(f"Loaded {len(entries)} entr{'y' if len(entries) == 1 else 'ies'} from {self.path}")
        return entries

    def save(self, entries: Iterable[ProcessingEntry]) -> None:
        payload = {
            "version": SNAPSHOT_VERSION,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "entries": [self._durable(entry).to_dict() for entry in entries],
        }
        folder = os.path.dirname(self.path)
        os.makedirs(folder, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".entries-", suffix=".json", dir=folder)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        LOG.debug(f"Snapshot written: {len(payload['entries'])} entries -> {self.path}")

"""In-memory entry store: the single source of truth for entry state.

Entries are immutable; every change goes through :meth:`EntryStore.patch`,
which replaces the record keyed by id. Each running stage holds a generation
token from :meth:`EntryStore.begin`; a patch carrying an outdated token is
dropped, so a superseded or cancelled loop cannot overwrite newer state.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from ..domain.errors import EntryNotFound, InvalidTransition
from ..domain.models import EntryStatus, ProcessingEntry, Stage, check_points_change, check_transition
from ..logging import get_logger

LOG = get_logger("entry-store")

Listener = Callable[[List[ProcessingEntry]], None]
StageToken = Tuple[Stage, int]

_FAILED = (EntryStatus.ERROR, EntryStatus.CANCELLED)


class EntryStore:
    def __init__(self, entries: Iterable[ProcessingEntry] = ()) -> None:
        self._entries: Dict[str, ProcessingEntry] = {}
        # newest first, as displayed
        self._order: List[str] = []
        self._generations: Dict[Tuple[str, Stage], int] = {}
        self._listeners: List[Listener] = []
        self._selected_id: Optional[str] = None
        self.reset(entries)

    def reset(self, entries: Iterable[ProcessingEntry]) -> None:
        """Replace the contents (e.g. with a loaded snapshot) without notifying."""
        self._entries.clear()
        self._order.clear()
        self._generations.clear()
        self._selected_id = None
        for entry in entries:
            if entry.id in self._entries:
                LOG.warning(f"Skipping duplicate entry id {entry.id}")
                continue
            self._entries[entry.id] = entry
            self._order.append(entry.id)

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    def __iter__(self) -> Iterator[ProcessingEntry]:
        return iter(self.entries())

    def entries(self) -> List[ProcessingEntry]:
        return [self._entries[i] for i in self._order]

    def get(self, entry_id: str) -> Optional[ProcessingEntry]:
        return self._entries.get(entry_id)

    def require(self, entry_id: str) -> ProcessingEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise EntryNotFound(entry_id)
        return entry

    # ---------------- listeners ----------------
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        snapshot = self.entries()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                LOG.exception("Entry store listener failed")

    # ---------------- generations ----------------
    def begin(self, entry_id: str, stage: Stage) -> StageToken:
        """Start a new generation for the stage, invalidating older ones."""
        self.require(entry_id)
        key = (entry_id, stage)
        self._generations[key] = self._generations.get(key, 0) + 1
        return stage, self._generations[key]

    def invalidate(self, entry_id: str, stage: Optional[Stage] = None) -> None:
        for st in ([stage] if stage else list(Stage)):
            key = (entry_id, st)
            self._generations[key] = self._generations.get(key, 0) + 1

    def is_current(self, entry_id: str, token: StageToken) -> bool:
        stage, generation = token
        return entry_id in self._entries and self._generations.get((entry_id, stage)) == generation

    # ---------------- mutations ----------------
    def add(self, entry: ProcessingEntry) -> ProcessingEntry:
        if entry.id in self._entries:
            raise ValueError(f"Entry {entry.id} already exists")
        self._entries[entry.id] = entry
        self._order.insert(0, entry.id)
        LOG.debug(f"Added entry {entry.id} ({entry.status.value})")
        self._notify()
        return entry

    def patch(
        self,
        entry_id: str,
        *,
        token: Optional[StageToken] = None,
        retry: bool = False,
        **changes: Any,
    ) -> Optional[ProcessingEntry]:
        """Apply field changes; returns the new entry, or None when dropped."""
        current = self._entries.get(entry_id)
        if current is None:
            LOG.debug(f"Dropping update for removed entry {entry_id}")
            return None
        if token is not None and not self.is_current(entry_id, token):
            LOG.debug(f"Dropping stale {token[0].value} update for entry {entry_id}")
            return None

        if "status" in changes:
            changes["status"] = EntryStatus(changes["status"])
            check_transition(current.status, changes["status"], retry=retry)
        if "points" in changes:
            check_points_change(current.points, changes["points"], retry=retry)

        updated = replace(current, **changes)
        if (updated.status in _FAILED) != bool(updated.error):
            raise InvalidTransition(
                f"Entry {entry_id}: error text must accompany exactly the error/cancelled states"
            )

        self._entries[entry_id] = updated
        self._notify()
        return updated

    def remove(self, entry_id: str) -> ProcessingEntry:
        entry = self.require(entry_id)
        del self._entries[entry_id]
        self._order.remove(entry_id)
        for stage in Stage:
            self._generations.pop((entry_id, stage), None)
        if self._selected_id == entry_id:
            self._selected_id = None
        LOG.info(f"Removed entry {entry_id}")
        self._notify()
        return entry

    # ---------------- selection ----------------
    def select(self, entry_id: Optional[str]) -> Optional[ProcessingEntry]:
        if entry_id is None:
            self._selected_id = None
            return None
        entry = self.require(entry_id)
        self._selected_id = entry_id
        return entry

    @property
    def selected(self) -> Optional[ProcessingEntry]:
        if self._selected_id is None:
            return None
        return self._entries.get(self._selected_id)

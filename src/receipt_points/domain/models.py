"""Processing entry record and its lifecycle rules."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from .errors import InvalidTransition


class EntryStatus(str, Enum):
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"
    ERROR = "error"
    CANCELLED = "cancelled"


class Stage(str, Enum):
    """Pipeline stages that own an independent polling loop."""

    OCR = "ocr"
    POINTS = "points"


class _Unset:
    """Marker for points that were never requested."""

    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self) -> str:
        return "UNSET"


UNSET = _Unset()

Points = Union[int, None, _Unset]

_TRANSITIONS: Dict[EntryStatus, FrozenSet[EntryStatus]] = {
    EntryStatus.PROCESSING: frozenset(
        {EntryStatus.VALID, EntryStatus.INVALID, EntryStatus.ERROR, EntryStatus.CANCELLED}
    ),
    EntryStatus.VALID: frozenset(),
    EntryStatus.INVALID: frozenset(),
    EntryStatus.ERROR: frozenset(),
    EntryStatus.CANCELLED: frozenset(),
}

# Statuses from which an OCR retry may re-enter processing.
RETRYABLE_OCR: FrozenSet[EntryStatus] = frozenset(
    {EntryStatus.ERROR, EntryStatus.INVALID, EntryStatus.CANCELLED}
)


def check_transition(current: EntryStatus, new: EntryStatus, *, retry: bool = False) -> None:
    if current == new:
        return
    if retry and new == EntryStatus.PROCESSING and current in RETRYABLE_OCR:
        return
    if new not in _TRANSITIONS[current]:
        raise InvalidTransition(f"Status cannot move from {current.value} to {new.value}")


def check_points_change(current: Points, new: Points, *, retry: bool = False) -> None:
    if new is UNSET:
        if current is UNSET or retry:
            return
        raise InvalidTransition("Points can only be reset by a retry")
    if current is UNSET or current == new:
        return
    raise InvalidTransition(f"Points already settled as {current!r}")


_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def coerce_points(value: Any) -> int:
    """Return a non-negative integer award; unparsable input yields 0."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float):
        return max(int(value), 0) if value == value else 0
    m = _LEADING_INT.match(str(value or ""))
    if not m:
        return 0
    return max(int(m.group(1)), 0)


@dataclass(frozen=True)
class MatchedRule:
    """Rule applied by the reward engine; informational only."""

    name: str
    effect_type: str
    effect_value: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "effect": {"type": self.effect_type, "value": self.effect_value}}

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["MatchedRule"]:
        if not isinstance(raw, Mapping) or not raw.get("name"):
            return None
        effect = raw.get("effect") if isinstance(raw.get("effect"), Mapping) else {}
        effect_type = str(effect.get("type") or "add")
        if effect_type not in ("add", "multiply"):
            return None
        return cls(name=str(raw["name"]), effect_type=effect_type, effect_value=str(effect.get("value", "")))


def parse_matched(raw: Any) -> Tuple[MatchedRule, ...]:
    if not isinstance(raw, list):
        return ()
    rules: List[MatchedRule] = []
    for item in raw:
        rule = MatchedRule.from_dict(item)
        if rule is not None:
            rules.append(rule)
    return tuple(rules)


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    ts = datetime.fromisoformat(str(raw))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class ProcessingEntry:
    id: str
    timestamp: datetime
    status: EntryStatus = EntryStatus.PROCESSING
    image: Optional[str] = None
    data: Any = None
    error: Optional[str] = None
    points: Points = UNSET
    points_error: Optional[str] = None
    scan_id: Optional[str] = None
    transaction_id: Optional[str] = None
    matched: Tuple[MatchedRule, ...] = field(default_factory=tuple)

    @classmethod
    def new(cls, image: Optional[str] = None) -> "ProcessingEntry":
        return cls(id=uuid.uuid4().hex, timestamp=datetime.now(timezone.utc), image=image)

    @property
    def points_resolved(self) -> bool:
        return isinstance(self.points, int)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status.value,
            "image": self.image,
            "data": self.data,
            "error": self.error,
            "points_error": self.points_error,
            "scan_id": self.scan_id,
            "transaction_id": self.transaction_id,
            "matched": [rule.to_dict() for rule in self.matched],
        }
        if self.points is not UNSET:
            out["points"] = self.points
        return out

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ProcessingEntry":
        """Rebuild an entry from its snapshot form; raises ValueError on bad records."""
        entry_id = raw.get("id")
        if not entry_id:
            raise ValueError("entry record without id")
        try:
            status = EntryStatus(raw.get("status") or EntryStatus.PROCESSING.value)
            timestamp = _parse_timestamp(raw.get("timestamp"))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"entry {entry_id}: {exc}") from exc

        points: Points = UNSET
        if "points" in raw:
            points = None if raw["points"] is None else coerce_points(raw["points"])

        return cls(
            id=str(entry_id),
            timestamp=timestamp,
            status=status,
            image=raw.get("image") if isinstance(raw.get("image"), str) else None,
            data=raw.get("data"),
            error=raw.get("error"),
            points=points,
            points_error=raw.get("points_error"),
            scan_id=raw.get("scan_id"),
            transaction_id=raw.get("transaction_id"),
            matched=parse_matched(raw.get("matched")),
        )

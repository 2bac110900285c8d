"""Image references: ephemeral in-process handles and durable data URLs."""

from __future__ import annotations

import base64
import binascii
import uuid
from typing import Dict, Optional, Tuple

from ..logging import get_logger

LOG = get_logger("blobs")

EPHEMERAL_SCHEME = "blob:"
DURABLE_SCHEME = "data:"


def is_ephemeral(ref: Optional[str]) -> bool:
    return isinstance(ref, str) and ref.startswith(EPHEMERAL_SCHEME)


def is_durable(ref: Optional[str]) -> bool:
    return isinstance(ref, str) and ref.startswith(DURABLE_SCHEME) and ";base64," in ref


def to_data_url(data: bytes, mime: str = "image/jpeg") -> str:
    return f"{DURABLE_SCHEME}{mime};base64,{base64.b64encode(data).decode('ascii')}"


def from_data_url(ref: str) -> Optional[Tuple[bytes, str]]:
    if not is_durable(ref):
        return None
    header, _, payload = ref.partition(";base64,")
    try:
        return base64.b64decode(payload, validate=True), header[len(DURABLE_SCHEME):] or "application/octet-stream"
    except (binascii.Error, ValueError):
        return None


class BlobRegistry:
    """Session-scoped byte store behind ``blob:`` handles.

    Handles only resolve inside the process that registered them; after a
    restart every old handle is unknown.
    """

    def __init__(self) -> None:
        self.session = uuid.uuid4().hex[:12]
        self._blobs: Dict[str, Tuple[bytes, str]] = {}

    def __len__(self) -> int:
        return len(self._blobs)

    def register(self, data: bytes, mime: str = "image/jpeg") -> str:
        ref = f"{EPHEMERAL_SCHEME}{self.session}/{uuid.uuid4().hex}"
        self._blobs[ref] = (bytes(data), mime)
        return ref

    def get(self, ref: str) -> Optional[Tuple[bytes, str]]:
        return self._blobs.get(ref)

    def revoke(self, ref: Optional[str]) -> None:
        if ref:
            self._blobs.pop(ref, None)

    def image_bytes(self, ref: Optional[str]) -> Optional[Tuple[bytes, str]]:
        """Return (bytes, mime) for either kind of reference."""
        if is_ephemeral(ref):
            return self.get(ref)
        if is_durable(ref):
            return from_data_url(ref)
        return None

    def resolve_durable(self, ref: Optional[str]) -> Optional[str]:
        """Turn any reference into a durable encoding, or None when it no longer resolves."""
        if ref is None or is_durable(ref):
            return ref
        if is_ephemeral(ref):
            blob = self.get(ref)
            if blob is None:
                LOG.debug(f"Ephemeral image {ref} is not from this session; dropping it")
                return None
            data, mime = blob
            return to_data_url(data, mime)
        LOG.warning(f"Unknown image reference scheme: {ref[:32]!r}")
        return None

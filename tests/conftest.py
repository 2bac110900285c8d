from __future__ import annotations

import asyncio
import io
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from receipt_points.orchestrator import BlobRegistry, EntryStore, PipelineOrchestrator, TokenHolder  # noqa: E402

VALID_OCR = '{"emitente_cnpj": "12.345.678/0001-90", "valor_total": "45,90", "data_emissao": "2024-05-01"}'


class FakeClock:
    """Virtual monotonic clock; sleeping advances it instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeScanService:
    def __init__(self, responses: Optional[List[Any]] = None) -> None:
        self.responses = list(responses or [])
        self.uploads: List[bytes] = []
        self.scans: List[str] = []
        self.verifies: List[str] = []
        self.upload_error: Optional[Exception] = None
        self.scan_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def upload(self, image: bytes, *, filename: str = "upload.jpg", content_type: str = "image/jpeg") -> str:
        self.uploads.append(image)
        if self.upload_error is not None:
            raise self.upload_error
        return f"img-{len(self.uploads)}"

    async def scan(self, image_id: str) -> str:
        self.scans.append(image_id)
        if self.scan_error is not None:
            raise self.scan_error
        return f"scan-{len(self.scans)}"

    async def verify(self, scan_id: str) -> Optional[str]:
        self.verifies.append(scan_id)
        if self.gate is not None:
            await self.gate.wait()
        if not self.responses:
            return None
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakePointsService:
    def __init__(self, responses: Optional[List[Any]] = None) -> None:
        self.responses = list(responses or [])
        self.generated: List[Dict[str, Any]] = []
        self.verified: List[str] = []
        self.tokens: List[str] = []
        self.generate_error: Optional[Exception] = None

    async def generate(self, token: str, *, value: float, params: Dict[str, Any], nfid: Optional[str] = None) -> str:
        self.generated.append({"token": token, "value": value, "params": params, "nfid": nfid})
        if self.generate_error is not None:
            raise self.generate_error
        return f"tx-{len(self.generated)}"

    async def verify(self, token: str, transaction_id: str) -> Dict[str, Any]:
        self.verified.append(transaction_id)
        self.tokens.append(token)
        if not self.responses:
            return {"status": "pending"}
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def make_image(size=(64, 48), fmt: str = "PNG") -> bytes:
    from PIL import Image

    buf = io.BytesIO()
    Image.new("RGB", size, (200, 120, 40)).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scan_service() -> FakeScanService:
    return FakeScanService()


@pytest.fixture
def points_service() -> FakePointsService:
    return FakePointsService()


@pytest.fixture
def store() -> EntryStore:
    return EntryStore()


@pytest.fixture
def orchestrator(store, scan_service, points_service, clock) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        store,
        scan_service,
        points_service,
        tokens=TokenHolder("secret-token"),
        blobs=BlobRegistry(),
        normalizer=lambda raw: raw,
        clock=clock,
        sleep=clock.sleep,
    )

"""Wiring for the receipt points tracker: config, services, store, persistence."""

from __future__ import annotations

import asyncio
import os
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from ..config import (
    load_auth_token as _cfg_load_auth_token,
    load_http_timeout as _cfg_load_http_timeout,
    load_motor_host as _cfg_load_motor_host,
    load_scan_host as _cfg_load_scan_host,
    load_state_file as _cfg_load_state_file,
)
from ..domain.models import ProcessingEntry
from ..logging import get_logger
from ..paths import expand_abs
from ..services.client import MotorClient, ScanClient
from .blobs import BlobRegistry
from .normalize import normalize_image
from .persistence import SnapshotStore
from .pipeline import PipelineOrchestrator, PointsService, ScanService, TokenHolder
from .polling import OCR_POLICY, POINTS_POLICY, Clock, PollPolicy, Sleep
from .store import EntryStore

LOG = get_logger("tracker-flow")


@dataclass
class TrackerConfig:
    scan_host: str
    motor_host: str
    auth_token: Optional[str]
    state_file: str
    timeout: float
    ocr_policy: PollPolicy = OCR_POLICY
    points_policy: PollPolicy = POINTS_POLICY


def build_tracker_config(args: Any = None, *, script_dir: str) -> TrackerConfig:
    """Create a TrackerConfig from CLI args (if any) over env/.env defaults."""
    scan_host = getattr(args, "scan_host", None) or _cfg_load_scan_host(script_dir)
    motor_host = getattr(args, "motor_host", None) or _cfg_load_motor_host(script_dir)
    token = getattr(args, "token", None) or _cfg_load_auth_token(script_dir)
    user_state_file = getattr(args, "state_file", None)
    state_file = expand_abs(user_state_file) if user_state_file else _cfg_load_state_file(script_dir)
    timeout = getattr(args, "timeout", None) or _cfg_load_http_timeout(script_dir)

    LOG.info("Tracker configuration prepared")
    LOG.info(f"Scan host          : {scan_host}")
    LOG.info(f"Motor host         : {motor_host}")
    LOG.info(f"State file         : {state_file}")
    LOG.info(f"HTTP timeout       : {timeout}s")
    LOG.info(f"Auth token         : {'set' if token else 'missing (points will not be requested)'}")

    return TrackerConfig(
        scan_host=scan_host,
        motor_host=motor_host,
        auth_token=token,
        state_file=state_file,
        timeout=float(timeout),
    )


class ReceiptTracker:
    """Owns the entry store and everything that acts on it for one process."""

    def __init__(
        self,
        config: TrackerConfig,
        *,
        scan_service: Optional[ScanService] = None,
        points_service: Optional[PointsService] = None,
        normalizer: Callable[[bytes], bytes] = normalize_image,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.blobs = BlobRegistry()
        self.tokens = TokenHolder(config.auth_token)
        self.snapshots = SnapshotStore(config.state_file, self.blobs)
        self.store = EntryStore()
        self.scan_service = scan_service or ScanClient(config.scan_host, timeout=config.timeout)
        self.points_service = points_service or MotorClient(config.motor_host, timeout=config.timeout)
        self.orchestrator = PipelineOrchestrator(
            self.store,
            self.scan_service,
            self.points_service,
            tokens=self.tokens,
            blobs=self.blobs,
            ocr_policy=config.ocr_policy,
            points_policy=config.points_policy,
            normalizer=normalizer,
            clock=clock,
            sleep=sleep,
        )
        self.controller = self.orchestrator.controller
        self._unsubscribe: Optional[Callable[[], None]] = None

    def _persist(self, entries: List[ProcessingEntry]) -> None:
        self.snapshots.save(entries)

    async def open(self, *, resume: bool = True) -> "ReceiptTracker":
        """Load the snapshot, start persisting mutations, and resume loops."""
        self.store.reset(self.snapshots.load())
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._persist)
        if resume:
            self.orchestrator.resume_pending()
        LOG.info(f"Tracker ready with {len(self.store)} entr{'y' if len(self.store) == 1 else 'ies'}")
        return self

    async def close(self) -> None:
        await self.orchestrator.close()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for service in (self.scan_service, self.points_service):
            aclose = getattr(service, "aclose", None)
            if aclose is not None:
                await aclose()
        LOG.info("Tracker closed")

    async def __aenter__(self) -> "ReceiptTracker":
        return await self.open()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def submit(self, raw_image: bytes) -> ProcessingEntry:
        return await self.orchestrator.start(raw_image)

    async def wait_idle(self) -> None:
        await self.orchestrator.wait_idle()


def log_environment_banner() -> None:
    """Print environment information relevant for debugging runs."""

    LOG.info("Starting receipt points tracker")
    LOG.info(f"Working directory: {os.getcwd()}")
    LOG.info(f"Python executable: {sys.executable}")

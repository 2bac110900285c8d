"""Drives one entry through upload -> scan -> OCR polling -> points.

Every stage runs as an ``asyncio.Task`` on the event loop; tasks are tracked
per (entry, stage) so they can be awaited, superseded, or cancelled. Results
are written through the entry store with the generation token of the stage
that produced them.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Set, Tuple

from ..domain.errors import (
    NetworkError,
    PipelineError,
    PollCancelled,
    PollTimeout,
    ProtocolError,
    RetryNotPossible,
    UserCancelled,
)
from ..domain.models import UNSET, EntryStatus, ProcessingEntry, Stage, coerce_points, parse_matched
from ..domain.validation import OcrValidation, validate_ocr_text
from ..logging import get_logger
from ..services.client import make_nfid
from .blobs import BlobRegistry
from .normalize import OUTPUT_MIME, normalize_image
from .polling import OCR_POLICY, POINTS_POLICY, Clock, PollPolicy, Sleep, poll_until
from .store import EntryStore, StageToken

if TYPE_CHECKING:
    from .controller import EntryController

LOG = get_logger("pipeline")

OCR_TIMEOUT_MESSAGE = "Timeout no processamento do OCR."
POINTS_TIMEOUT_MESSAGE = "Timeout na verificação de pontos."
USER_CANCELLED_MESSAGE = "Processamento cancelado pelo usuário."
INTERRUPTED_MESSAGE = "Processamento interrompido antes do scan."
UNEXPECTED_MESSAGE = "Erro ao processar o OCR."
MISSING_TOKEN_MESSAGE = "Token de autenticação ausente."


class ScanService(Protocol):
    async def upload(self, image: bytes, *, filename: str = ..., content_type: str = ...) -> str: ...

    async def scan(self, image_id: str) -> str: ...

    async def verify(self, scan_id: str) -> Optional[str]: ...


class PointsService(Protocol):
    async def generate(
        self, token: str, *, value: float, params: Dict[str, Any], nfid: Optional[str] = None
    ) -> str: ...

    async def verify(self, token: str, transaction_id: str) -> Dict[str, Any]: ...


class TokenHolder:
    """Process-wide bearer token; read fresh by every authenticated call."""

    def __init__(self, token: Optional[str] = None) -> None:
        self._token: Optional[str] = None
        self.set(token)

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: Optional[str]) -> None:
        self._token = (token or "").strip() or None


def purchase_value(payload: Any) -> float:
    """Return the purchase total from an OCR payload (``valor_total``)."""
    raw = payload.get("valor_total") if isinstance(payload, Mapping) else None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return float(raw)
    text = str(raw or "").strip().replace("R$", "").replace(" ", "")
    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    try:
        return float(text)
    except ValueError:
        raise ProtocolError("valor_total ausente ou inválido na leitura do OCR.") from None


class PipelineOrchestrator:
    def __init__(
        self,
        store: EntryStore,
        scan_service: ScanService,
        points_service: PointsService,
        *,
        tokens: TokenHolder,
        blobs: BlobRegistry,
        validator: Callable[[str], OcrValidation] = validate_ocr_text,
        ocr_policy: PollPolicy = OCR_POLICY,
        points_policy: PollPolicy = POINTS_POLICY,
        normalizer: Callable[[bytes], bytes] = normalize_image,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.store = store
        self.scan_service = scan_service
        self.points_service = points_service
        self.tokens = tokens
        self.blobs = blobs
        self.validator = validator
        self.ocr_policy = ocr_policy
        self.points_policy = points_policy
        self.normalizer = normalizer
        self.clock = clock
        self.sleep = sleep
        self._tasks: Dict[Tuple[str, Stage], asyncio.Task] = {}
        self._generating: Set[str] = set()
        self._controller: Optional["EntryController"] = None

    @property
    def controller(self) -> "EntryController":
        """Retry/cancel/delete handle bound to this orchestrator."""
        if self._controller is None:
            from .controller import EntryController

            self._controller = EntryController(self)
        return self._controller

    # ------------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------------
    def _spawn(self, entry_id: str, stage: Stage, coro: Awaitable[None]) -> asyncio.Task:
        key = (entry_id, stage)
        previous = self._tasks.get(key)
        if previous is not None and not previous.done() and previous is not asyncio.current_task():
            previous.cancel()
        task = asyncio.ensure_future(coro)
        self._tasks[key] = task

        def _done(t: asyncio.Task) -> None:
            if self._tasks.get(key) is t:
                del self._tasks[key]
            if t.cancelled():
                LOG.debug(f"{stage.value} task for entry {entry_id} cancelled")
                return
            exc = t.exception()
            if exc is not None:
                LOG.error(f"{stage.value} task for entry {entry_id} crashed: {exc!r}")

        task.add_done_callback(_done)
        return task

    def task_for(self, entry_id: str, stage: Stage) -> Optional[asyncio.Task]:
        return self._tasks.get((entry_id, stage))

    def points_busy(self, entry_id: str) -> bool:
        """True while a generate request for the entry is in flight or queued."""
        if entry_id in self._generating:
            return True
        task = self._tasks.get((entry_id, Stage.POINTS))
        entry = self.store.get(entry_id)
        return task is not None and not task.done() and entry is not None and not entry.transaction_id

    def cancel_tasks(self, entry_id: str, stage: Optional[Stage] = None) -> None:
        """Invalidate the stage generation(s) and stop their polling tasks."""
        self.store.invalidate(entry_id, stage)
        for st in ([stage] if stage else list(Stage)):
            task = self._tasks.get((entry_id, st))
            if task is not None and not task.done():
                task.cancel()

    async def wait_idle(self) -> None:
        """Wait until no stage task is running (chained stages included)."""
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _fail(self, entry_id: str, message: str, token: Optional[StageToken] = None) -> None:
        self.store.patch(entry_id, token=token, status=EntryStatus.ERROR, error=message or UNEXPECTED_MESSAGE)

    # ------------------------------------------------------------------
    # Upload and scan
    # ------------------------------------------------------------------
    async def upload(self, image: bytes) -> str:
        return await self.scan_service.upload(image, filename="upload.jpg", content_type=OUTPUT_MIME)

    async def scan(self, entry_id: str, image_id: str, *, token: Optional[StageToken] = None) -> str:
        """Request OCR; on failure the entry is marked as error before re-raising."""
        try:
            return await self.scan_service.scan(image_id)
        except Exception as exc:
            LOG.error(f"Scan failed for entry {entry_id}: {exc}")
            self._fail(entry_id, str(exc), token)
            raise

    async def create_entry(self, raw_image: bytes) -> ProcessingEntry:
        """Normalize the image off the event loop and add a ``processing`` entry for it."""
        image = await asyncio.to_thread(self.normalizer, raw_image)
        entry = self.store.add(ProcessingEntry.new(image=self.blobs.register(image, OUTPUT_MIME)))
        LOG.info(f"=== Processing entry {entry.id} ({len(image)} bytes)")
        return entry

    async def process(self, entry_id: str) -> ProcessingEntry:
        """Upload and scan a freshly created entry, then schedule OCR polling.

        Upload/scan failures are recorded on the entry and re-raised. The
        returned entry is ``processing`` with OCR polling scheduled.
        """
        entry = self.store.require(entry_id)
        if entry.status != EntryStatus.PROCESSING:
            raise UserCancelled(entry.error or USER_CANCELLED_MESSAGE)
        blob = self.blobs.image_bytes(entry.image)
        if blob is None:
            self._fail(entry_id, INTERRUPTED_MESSAGE)
            raise RetryNotPossible(INTERRUPTED_MESSAGE)
        token = self.store.begin(entry_id, Stage.OCR)

        try:
            image_id = await self.upload(blob[0])
        except Exception as exc:
            LOG.error(f"Upload failed for entry {entry_id}: {exc}")
            self._fail(entry_id, str(exc), token)
            raise
        if not self.store.is_current(entry_id, token):
            raise UserCancelled(USER_CANCELLED_MESSAGE)

        scan_id = await self.scan(entry_id, image_id, token=token)
        if not self.store.is_current(entry_id, token):
            raise UserCancelled(USER_CANCELLED_MESSAGE)

        self.store.patch(entry_id, token=token, scan_id=scan_id)
        self.start_ocr_polling(entry_id, scan_id)
        return self.store.require(entry_id)

    async def start(self, raw_image: bytes) -> ProcessingEntry:
        """Create an entry for the image and run it up to OCR polling."""
        entry = await self.create_entry(raw_image)
        return await self.process(entry.id)

    # ------------------------------------------------------------------
    # OCR stage
    # ------------------------------------------------------------------
    def start_ocr_polling(self, entry_id: str, scan_id: str) -> asyncio.Task:
        token = self.store.begin(entry_id, Stage.OCR)
        LOG.info(f"Polling OCR for entry {entry_id} (scan_id={scan_id})")
        return self._spawn(entry_id, Stage.OCR, self._run_ocr_polling(entry_id, scan_id, token))

    async def _run_ocr_polling(self, entry_id: str, scan_id: str, token: StageToken) -> None:
        async def probe() -> Optional[str]:
            return await self.scan_service.verify(scan_id)

        try:
            text = await poll_until(
                probe,
                self.ocr_policy,
                label=f"ocr[{entry_id}]",
                is_live=lambda: self.store.is_current(entry_id, token),
                clock=self.clock,
                sleep=self.sleep,
            )
        except PollTimeout as exc:
            LOG.warning(str(exc))
            self.store.patch(entry_id, token=token, status=EntryStatus.CANCELLED, error=OCR_TIMEOUT_MESSAGE)
            return
        except PollCancelled as exc:
            LOG.info(str(exc))
            return

        try:
            outcome = self.validator(text)
            status = EntryStatus.VALID if outcome.valid else EntryStatus.INVALID
            updated = self.store.patch(entry_id, token=token, status=status, data=outcome.data, error=None)
        except Exception:
            LOG.exception(f"OCR result for entry {entry_id} could not be classified")
            self._fail(entry_id, UNEXPECTED_MESSAGE, token)
            return
        if updated is None:
            return
        LOG.info(f"OCR concluded for entry {entry_id}: {status.value}")
        if outcome.valid:
            await self._chain_points(entry_id, outcome.data)

    # ------------------------------------------------------------------
    # Points stage
    # ------------------------------------------------------------------
    async def _chain_points(self, entry_id: str, ocr_payload: Any) -> None:
        try:
            transaction_id = await self.generate_points(entry_id, ocr_payload)
        except PipelineError as exc:
            LOG.warning(f"Erro ao processar pontos for entry {entry_id}: {exc}")
            return
        if transaction_id:
            self.start_points_polling(entry_id, transaction_id)

    def regenerate_points(self, entry_id: str) -> asyncio.Task:
        entry = self.store.require(entry_id)
        return self._spawn(entry_id, Stage.POINTS, self._chain_points(entry_id, entry.data))

    async def generate_points(
        self,
        entry_id: str,
        ocr_payload: Any,
        auth_token: Optional[str] = None,
    ) -> Optional[str]:
        """Ask the reward engine to generate points; returns the transaction id.

        Without a token nothing is requested and points stay unset. Failures
        set points to None with a message and re-raise; status is untouched.
        """
        self.store.require(entry_id)
        token_value = auth_token or self.tokens.get()
        if not token_value:
            LOG.warning(f"No auth token; points not requested for entry {entry_id}")
            return None

        stage_token = self.store.begin(entry_id, Stage.POINTS)
        self._generating.add(entry_id)
        try:
            value = purchase_value(ocr_payload)
            params = dict(ocr_payload) if isinstance(ocr_payload, Mapping) else {}
            transaction_id = await self.points_service.generate(
                token_value, value=value, params=params, nfid=make_nfid()
            )
        except PipelineError as exc:
            self.store.patch(entry_id, token=stage_token, points=None, points_error=str(exc))
            raise
        finally:
            self._generating.discard(entry_id)

        updated = self.store.patch(entry_id, token=stage_token, transaction_id=transaction_id, points_error=None)
        if updated is None:
            return None
        LOG.info(f"Points requested for entry {entry_id}: transactionId={transaction_id}")
        return transaction_id

    def start_points_polling(self, entry_id: str, transaction_id: str) -> asyncio.Task:
        token = self.store.begin(entry_id, Stage.POINTS)
        LOG.info(f"Polling points for entry {entry_id} (transactionId={transaction_id})")
        return self._spawn(entry_id, Stage.POINTS, self._run_points_polling(entry_id, transaction_id, token))

    async def _run_points_polling(self, entry_id: str, transaction_id: str, token: StageToken) -> None:
        async def probe() -> Optional[Dict[str, Any]]:
            auth = self.tokens.get()
            if not auth:
                raise NetworkError(MISSING_TOKEN_MESSAGE)
            body = await self.points_service.verify(auth, transaction_id)
            LOG.debug(f"Verified data for {transaction_id}: {body}")
            if body.get("status") == "generated" and body.get("points"):
                return body
            return None

        try:
            body = await poll_until(
                probe,
                self.points_policy,
                label=f"points[{entry_id}]",
                is_live=lambda: self.store.is_current(entry_id, token),
                fatal=(ProtocolError,),
                clock=self.clock,
                sleep=self.sleep,
            )
        except PollTimeout as exc:
            LOG.warning(f"Timeout no processamento de pontos para entry: {entry_id} ({exc})")
            self.store.patch(entry_id, token=token, points=None, points_error=POINTS_TIMEOUT_MESSAGE)
            return
        except PollCancelled as exc:
            LOG.info(str(exc))
            return
        except ProtocolError as exc:
            LOG.error(f"Points verification failed for entry {entry_id}: {exc}")
            self.store.patch(entry_id, token=token, points=None, points_error=str(exc))
            return

        points = coerce_points(body.get("points"))
        self.store.patch(
            entry_id,
            token=token,
            points=points,
            points_error=None,
            matched=parse_matched(body.get("matched")),
        )
        LOG.info(f"Entry {entry_id} awarded {points} point(s)")

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------
    def resume_pending(self) -> int:
        """Re-schedule the loops of entries persisted mid-pipeline."""
        resumed = 0
        for entry in self.store.entries():
            if entry.status == EntryStatus.PROCESSING:
                if entry.scan_id:
                    self.start_ocr_polling(entry.id, entry.scan_id)
                    resumed += 1
                else:
                    self._fail(entry.id, INTERRUPTED_MESSAGE)
            elif entry.status == EntryStatus.VALID and entry.transaction_id and entry.points is UNSET:
                self.start_points_polling(entry.id, entry.transaction_id)
                resumed += 1
        if resumed:
            LOG.info(f"Resumed {resumed} pending polling loop(s)")
        return resumed

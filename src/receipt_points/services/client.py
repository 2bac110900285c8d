import secrets
import string
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from ..domain.errors import NetworkError, ProtocolError
from ..logging import get_logger

_NFID_ALPHABET = string.digits + string.ascii_lowercase


def make_nfid(length: int = 12) -> str:
    """Return a fresh collision-avoidance nonce for a points request."""
    return "".join(secrets.choice(_NFID_ALPHABET) for _ in range(length))


class _BoundaryClient:
    """Shared plumbing: async session, base URL, timeouts, and logging."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        logger_name: str,
    ) -> None:
        self.base = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.log = get_logger(logger_name)
        self._owns_client = client is None
        self.s = client or httpx.AsyncClient(
            timeout=self.timeout,
            headers={"Accept": "application/json"},
        )

    # ---------- helpers ----------
    def _url(self, path: str) -> str:
        return f"{self.base}{path}"

    async def _send(self, method: str, path: str, *, what: str, **kwargs: Any) -> httpx.Response:
        url = self._url(path)
        try:
            r = await self.s.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            self.log.error(f"{method} {url} failed: {e}")
            raise NetworkError(f"Falha de conexão ({what}): {e}") from e
        self.log.debug(f"{method} {url} -> {r.status_code}")
        return r

    def _json(self, r: httpx.Response, *, what: str) -> Any:
        try:
            return r.json()
        except ValueError as e:
            preview = r.text[:200]
            self.log.error(f"{what}: response is not JSON ({preview!r})")
            raise NetworkError(f"Resposta inválida ({what}).", status_code=r.status_code) from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self.s.aclose()


class ScanClient(_BoundaryClient):
    """Client for the OCR boundary: upload, scan, and scan verification."""

    def __init__(self, base_url: str, *, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(base_url, timeout=timeout, client=client, logger_name="scan-client")

    async def upload(
        self,
        image: bytes,
        *,
        filename: str = "upload.jpg",
        content_type: str = "image/jpeg",
    ) -> str:
        self.log.info(f"POST upload: file={filename}, bytes={len(image)}")
        r = await self._send("POST", "/upload", what="upload", files={"file": (filename, image, content_type)})
        if not r.is_success:
            raise NetworkError(f"Falha no upload ({r.status_code}).", status_code=r.status_code)
        body = self._json(r, what="upload")
        image_id = body.get("image_id") if isinstance(body, dict) else None
        if not image_id:
            raise ProtocolError("image_id ausente na resposta de upload.")
        return str(image_id)

    async def scan(self, image_id: str) -> str:
        self.log.info(f"POST scan: image_id={image_id}")
        r = await self._send("POST", "/scan", what="scan", json={"image_id": image_id})
        if not r.is_success:
            detail = r.text.strip()
            raise NetworkError(detail or f"Falha no OCR ({r.status_code}).", status_code=r.status_code)
        body = self._json(r, what="scan")
        scan_id = body.get("scan_id") if isinstance(body, dict) else None
        if not scan_id:
            raise ProtocolError("scan_id ausente na resposta de scan.")
        return str(scan_id)

    async def verify(self, scan_id: str) -> Optional[str]:
        """Return the raw OCR body, or None while the scan is still pending."""
        r = await self._send("POST", "/scan/verify", what="verificação de OCR", json={"scan_id": scan_id})
        if not r.is_success:
            raise NetworkError(f"Erro ao verificar OCR: {r.status_code}", status_code=r.status_code)
        if r.status_code in (202, 204) or not r.text.strip():
            return None
        return r.text


class MotorClient(_BoundaryClient):
    """Client for the reward engine: points generation and verification."""

    def __init__(self, base_url: str, *, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(base_url, timeout=timeout, client=client, logger_name="motor-client")

    @staticmethod
    def _auth(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def generate(
        self,
        token: str,
        *,
        value: float,
        params: Dict[str, Any],
        nfid: Optional[str] = None,
    ) -> str:
        nonce = nfid or make_nfid()
        self.log.info(f"POST points/generate: value={value}, nfid={nonce}")
        r = await self._send(
            "POST",
            "/points/generate",
            what="geração de pontos",
            headers=self._auth(token),
            json={"value": value, "params": params, "nfid": nonce},
        )
        if not r.is_success:
            self.log.warning(f"points/generate rejected: {r.text[:300]!r}")
            raise NetworkError(f"Erro ao gerar pontos: {r.status_code}", status_code=r.status_code)
        body = self._json(r, what="geração de pontos")
        transaction_id = body.get("transactionId") if isinstance(body, dict) else None
        if not transaction_id:
            raise ProtocolError("TransactionId não retornado")
        return str(transaction_id)

    async def verify(self, token: str, transaction_id: str) -> Dict[str, Any]:
        r = await self._send(
            "GET",
            f"/points/verify/{quote(str(transaction_id), safe='')}",
            what="verificação de pontos",
            headers=self._auth(token),
        )
        if not r.is_success:
            raise NetworkError(f"Erro ao verificar pontos: {r.status_code}", status_code=r.status_code)
        body = self._json(r, what="verificação de pontos")
        if not isinstance(body, dict):
            raise ProtocolError("Resposta de verificação de pontos inválida")
        return body

from __future__ import annotations

import contextlib
from typing import Any, AsyncIterator, Dict, List, Optional

from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from ..domain.errors import (
    EntryNotFound,
    ImageRejected,
    InvalidTransition,
    PipelineError,
    RetryNotPossible,
    UserCancelled,
)
from ..domain.models import ProcessingEntry
from ..logging import get_logger
from ..orchestrator.flow import ReceiptTracker

LOG = get_logger("api")


def _entry_payload(entry: Optional[ProcessingEntry]) -> Optional[Dict[str, Any]]:
    return entry.to_dict() if entry is not None else None


def create_app(
    tracker: ReceiptTracker,
    *,
    allow_origins: Optional[List[str]] = None,
    manage_lifecycle: bool = True,
) -> Starlette:
    """Create a Starlette app exposing entry status and the retry/cancel/delete controls."""

    store = tracker.store
    controller = tracker.controller

    def _require(request: Request) -> ProcessingEntry:
        entry_id = request.path_params["entry_id"]
        try:
            return store.require(entry_id)
        except EntryNotFound as exc:
            raise HTTPException(status_code=404, detail="Entry not found") from exc

    async def health(_: Request) -> JSONResponse:
        return JSONResponse(
            {
                "status": "ok",
                "entries": len(store),
                "state_file": tracker.snapshots.path,
                "token": tracker.tokens.get() is not None,
            }
        )

    async def list_entries(_: Request) -> JSONResponse:
        return JSONResponse({"items": [e.to_dict() for e in store.entries()], "total": len(store)})

    async def entry_detail(request: Request) -> JSONResponse:
        return JSONResponse(_require(request).to_dict())

    async def submit(request: Request) -> JSONResponse:
        body = await request.body()
        if not body:
            raise HTTPException(status_code=400, detail="Empty image body")
        try:
            entry = await tracker.orchestrator.create_entry(body)
        except ImageRejected as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            entry = await tracker.orchestrator.process(entry.id)
        except UserCancelled as exc:
            return JSONResponse({"detail": str(exc)}, status_code=409)
        except PipelineError as exc:
            failed = store.get(entry.id)
            return JSONResponse({"detail": str(exc), "entry": _entry_payload(failed)}, status_code=502)
        return JSONResponse(entry.to_dict(), status_code=202)

    def _control(action):
        async def endpoint(request: Request) -> JSONResponse:
            entry = _require(request)
            try:
                updated = action(entry.id)
            except (InvalidTransition, RetryNotPossible) as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
            return JSONResponse(_entry_payload(updated))

        return endpoint

    async def delete_entry(request: Request) -> Response:
        entry = _require(request)
        controller.delete_entry(entry.id)
        return Response(status_code=204)

    async def select_entry(request: Request) -> JSONResponse:
        entry = _require(request)
        store.select(entry.id)
        return JSONResponse(entry.to_dict())

    async def selection(_: Request) -> JSONResponse:
        return JSONResponse({"selected": _entry_payload(store.selected)})

    async def set_token(request: Request) -> JSONResponse:
        try:
            payload = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
        token = payload.get("token") if isinstance(payload, dict) else None
        if token is not None and not isinstance(token, str):
            raise HTTPException(status_code=400, detail="token must be a string")
        tracker.tokens.set(token)
        LOG.info(f"Auth token {'updated' if tracker.tokens.get() else 'cleared'}")
        return JSONResponse({"token": tracker.tokens.get() is not None})

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/entries", list_entries, methods=["GET"]),
        Route("/api/entries", submit, methods=["POST"]),
        Route("/api/entries/{entry_id:str}", entry_detail, methods=["GET"]),
        Route("/api/entries/{entry_id:str}", delete_entry, methods=["DELETE"]),
        Route("/api/entries/{entry_id:str}/retry-ocr", _control(controller.retry_ocr), methods=["POST"]),
        Route("/api/entries/{entry_id:str}/retry-points", _control(controller.retry_points), methods=["POST"]),
        Route("/api/entries/{entry_id:str}/cancel", _control(controller.cancel_processing), methods=["POST"]),
        Route("/api/entries/{entry_id:str}/select", select_entry, methods=["POST"]),
        Route("/api/selection", selection, methods=["GET"]),
        Route("/api/token", set_token, methods=["PUT"]),
    ]

    @contextlib.asynccontextmanager
    async def lifespan(_: Starlette) -> AsyncIterator[None]:
        if manage_lifecycle:
            await tracker.open()
        try:
            yield
        finally:
            if manage_lifecycle:
                await tracker.close()

    app = Starlette(debug=False, routes=routes, lifespan=lifespan)

    origins = allow_origins or ["http://localhost:5173", "http://127.0.0.1:5173"]
    if "*" in origins:
        cors_allow_origins = ["*"]
    else:
        cors_allow_origins = origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


__all__ = ["create_app"]

"""
HTTP API for VaultSync.

This module is the transport collaborator around the sync core:
- Decodes base64 payloads to bytes and re-encodes outbound payloads
- Converts ISO-8601 timestamps to and from the core's microsecond cursors
- Enforces the request body ceiling and the per-round batch cap
- Maps core errors to HTTP status codes

Invariants:
    - Every /api/v1 call requires the owner header set by the identity layer
    - A record whose payload fails to decode is passed to the coordinator
      with payload=None so it is counted as skipped, not rejected with 400
    - Storage failures map to 503 so clients retry the round with the same cursor

How to change safely:
    - Keep wire field names stable (entry_id, encrypted_data, version, ...)
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .._version import __version__
from ..clock import from_datetime, to_datetime
from ..errors import (
    BatchTooLargeError,
    EntryNotFoundError,
    RecordValidationError,
    StorageError,
    VaultError,
)
from ..store.entry_store import Entry, EntryStore
from ..sync.coordinator import IncomingRecord, SyncCoordinator
from ..sync.entries import EntryService
from .settings import HttpSettings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/vault", tags=["Vault"])


# --- Request/Response Models ---


class EntryRequest(BaseModel):
    """A single entry as uploaded by a client."""

    entry_id: str = Field("", description="Client-generated entry id")
    encrypted_data: str = Field("", description="Base64 encrypted payload")
    version: int = Field(0, description="Client version")
    deleted: bool = Field(False, description="Tombstone flag")


class EntryResponse(BaseModel):
    """A single entry as returned to a client."""

    entry_id: str
    encrypted_data: str
    version: int
    updated_at: datetime
    deleted: bool = False


class SyncRequest(BaseModel):
    """Sync round request.

    `entries` is kept loosely typed so one malformed record is skipped
    instead of failing the whole request.
    """

    last_synced_at: datetime | None = Field(None, description="Cursor from the previous round")
    entries: list[Any] = Field(default_factory=list, description="Records to upload")


class SyncResponse(BaseModel):
    """Sync round response."""

    synced_at: datetime
    entries: list[EntryResponse]
    skipped: int = 0


# --- Codec helpers ---


def decode_payload(encoded: str) -> bytes | None:
    """Decode a base64 payload, or return None if it is not valid base64.

    Line breaks are ignored so MIME-wrapped payloads decode.
    """
    try:
        return base64.b64decode(encoded.replace("\r", "").replace("\n", ""), validate=True)
    except (binascii.Error, ValueError, TypeError):
        return None


def encode_payload(payload: bytes) -> str:
    return base64.b64encode(payload).decode("ascii")


def entry_to_response(entry: Entry) -> EntryResponse:
    return EntryResponse(
        entry_id=entry.entry_id,
        encrypted_data=encode_payload(entry.payload),
        version=entry.version,
        updated_at=to_datetime(entry.updated_at),
        deleted=entry.deleted,
    )


def to_incoming(raw: Any) -> IncomingRecord:
    """Convert one raw sync record to an IncomingRecord.

    Records that don't match EntryRequest come back with payload=None.
    """
    try:
        parsed = EntryRequest.model_validate(raw)
    except ValidationError:
        entry_id = raw.get("entry_id", "") if isinstance(raw, dict) else ""
        return IncomingRecord(
            entry_id=entry_id if isinstance(entry_id, str) else "",
            payload=None,
            version=0,
        )

    return IncomingRecord(
        entry_id=parsed.entry_id,
        payload=decode_payload(parsed.encrypted_data),
        version=parsed.version,
        deleted=parsed.deleted,
    )


def _decode_required(encoded: str) -> bytes:
    payload = decode_payload(encoded)
    if payload is None:
        raise HTTPException(status_code=400, detail="encrypted_data is not valid base64")
    return payload


# --- Dependencies ---


def get_coordinator(request: Request) -> SyncCoordinator:
    return request.app.state.coordinator


def get_entry_service(request: Request) -> EntryService:
    return request.app.state.entry_service


def get_owner(request: Request) -> str:
    """Owner id from the identity layer's header."""
    settings: HttpSettings = request.app.state.settings
    owner = request.headers.get(settings.owner_header)
    if not owner:
        raise HTTPException(status_code=401, detail="unauthorized")
    return owner


# --- Vault Routes ---


@router.get("", response_model=list[EntryResponse])
async def list_entries(
    owner: str = Depends(get_owner),
    service: EntryService = Depends(get_entry_service),
):
    """List the owner's non-deleted entries, most recently updated first."""
    entries = await service.list_entries(owner)
    return [entry_to_response(e) for e in entries]


@router.post("", response_model=EntryResponse, status_code=201)
async def create_entry(
    body: EntryRequest,
    owner: str = Depends(get_owner),
    service: EntryService = Depends(get_entry_service),
):
    """Create an entry at version 1."""
    if not body.entry_id:
        raise RecordValidationError("entry_id is required")
    if not body.encrypted_data:
        raise RecordValidationError("encrypted_data is required", entry_id=body.entry_id)
    entry = await service.create_entry(owner, body.entry_id, _decode_required(body.encrypted_data))
    return entry_to_response(entry)


@router.post("/sync", response_model=SyncResponse)
async def sync(
    body: SyncRequest,
    owner: str = Depends(get_owner),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """
    Run one sync round.

    Uploads the client's changed entries and returns every server entry
    changed since `last_synced_at` (all entries, tombstones included, when
    it is null). Store the returned `synced_at` for the next round.
    """
    if len(body.entries) > coordinator.max_batch_size:
        raise BatchTooLargeError(len(body.entries), coordinator.max_batch_size)

    cursor = from_datetime(body.last_synced_at) if body.last_synced_at is not None else None
    incoming = [to_incoming(raw) for raw in body.entries]

    result = await coordinator.sync(owner, cursor, incoming)

    return SyncResponse(
        synced_at=to_datetime(result.synced_at),
        entries=[entry_to_response(e) for e in result.entries],
        skipped=result.skipped,
    )


@router.get("/{entry_id}", response_model=EntryResponse)
async def get_entry(
    entry_id: str,
    owner: str = Depends(get_owner),
    service: EntryService = Depends(get_entry_service),
):
    """Fetch a single entry (tombstones included)."""
    entry = await service.get_entry(owner, entry_id)
    return entry_to_response(entry)


@router.put("/{entry_id}", response_model=EntryResponse)
async def update_entry(
    entry_id: str,
    body: EntryRequest,
    owner: str = Depends(get_owner),
    service: EntryService = Depends(get_entry_service),
):
    """Replace an entry's payload with the next version."""
    if not body.encrypted_data:
        raise RecordValidationError("encrypted_data is required", entry_id=entry_id)
    entry = await service.update_entry(owner, entry_id, _decode_required(body.encrypted_data))
    return entry_to_response(entry)


@router.delete("/{entry_id}", status_code=204)
async def delete_entry(
    entry_id: str,
    owner: str = Depends(get_owner),
    service: EntryService = Depends(get_entry_service),
):
    """Tombstone an entry."""
    await service.delete_entry(owner, entry_id)
    return Response(status_code=204)


# --- Error handlers ---


def _error(status: int, exc: VaultError) -> JSONResponse:
    return JSONResponse({"detail": exc.message, "code": exc.code}, status_code=status)


async def _handle_not_found(request: Request, exc: EntryNotFoundError) -> JSONResponse:
    return _error(404, exc)


async def _handle_validation(request: Request, exc: RecordValidationError) -> JSONResponse:
    return _error(400, exc)


async def _handle_batch_too_large(request: Request, exc: BatchTooLargeError) -> JSONResponse:
    return _error(400, exc)


async def _handle_storage(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(f"Storage failure: {exc}", extra={"code": exc.code, "path": request.url.path})
    return JSONResponse(
        {"detail": "storage temporarily unavailable, retry the request", "code": exc.code},
        status_code=503,
        headers={"Retry-After": "1"},
    )


# --- Middleware ---


class BodySizeLimitMiddleware:
    """Reject request bodies above max_body_bytes with 413.

    A declared Content-Length is checked up front. Bodies without one
    (chunked transfer) are counted as they are received, and reading stops
    with 413 once the running total passes the limit.
    """

    def __init__(self, app: ASGIApp, max_body_bytes: int) -> None:
        self.app = app
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        content_length = Headers(scope=scope).get("content-length")
        if content_length is not None:
            if not content_length.isdigit():
                response = JSONResponse({"detail": "invalid content-length"}, status_code=400)
                await response(scope, receive, send)
                return
            if int(content_length) > self.max_body_bytes:
                response = JSONResponse({"detail": "request body too large"}, status_code=413)
                await response(scope, receive, send)
                return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_bytes:
                    # FastAPI re-raises HTTPException from body parsing unchanged.
                    raise HTTPException(status_code=413, detail="request body too large")
            return message

        await self.app(scope, limited_receive, send)


# --- Application factory ---


def create_app(
    store: EntryStore,
    coordinator: SyncCoordinator | None = None,
    settings: HttpSettings | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        store: Entry store (initialized on startup)
        coordinator: Sync coordinator (built from store if not provided)
        settings: HTTP settings (loaded from env if not provided)

    Returns:
        FastAPI application
    """
    settings = settings or HttpSettings()
    coordinator = coordinator or SyncCoordinator(store)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await store.initialize()
        yield

    app = FastAPI(
        title="VaultSync",
        description="Versioned storage and delta sync for client-encrypted records.",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.store = store
    app.state.coordinator = coordinator
    app.state.entry_service = EntryService(store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", settings.owner_header],
    )

    app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=settings.max_body_bytes)

    app.add_exception_handler(EntryNotFoundError, _handle_not_found)
    app.add_exception_handler(RecordValidationError, _handle_validation)
    app.add_exception_handler(BatchTooLargeError, _handle_batch_too_large)
    app.add_exception_handler(StorageError, _handle_storage)

    app.include_router(router)

    @app.get("/health")
    async def health():
        healthy = await store.health()
        body = {
            "status": "healthy" if healthy else "unhealthy",
            "service": "vaultsync",
            "version": __version__,
        }
        return JSONResponse(body, status_code=200 if healthy else 503)

    return app

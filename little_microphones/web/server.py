"""FastAPI application exposing the Little Microphones HTTP API."""

from __future__ import annotations

import asyncio
import contextvars
import functools
import json
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

import requests
from fastapi import FastAPI, Query, Request
from fastapi import status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..config import AppConfig, ServiceSettings
from ..context import (
    ContextualLoggerAdapter,
    bind_request,
    collect_correlation_context,
    format_actor_label,
    new_correlation_id,
    reset_request,
)
from ..errors import LittleMicrophonesError, ValidationError
from ..services.allocator import LmidAllocator
from ..services.cdn import CdnStorageClient
from ..services.contacts import BrevoClient, ContactSync
from ..services.events import APP_EVENT, DB_QUERY, emit_db_event, emit_structured_event
from ..services.memberstack import MemberstackClient
from ..services.naming import normalize_world, parse_lmid, validate_member_id
from ..services.notifications import NotificationDispatcher
from ..services.ownership import validate_ownership
from ..services.page_state import ProgramPageMachine
from ..services.playlist import PlaylistPublisher
from ..services.recordings import RecordingCatalog, group_by_question
from ..services.share_links import ShareLinkService
from ..services.storage import LmidRepository
from ..services.webhooks import SIGNATURE_HEADER, WebhookProcessor, parse_event, verify_signature


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("little_microphones.events"), {})

T = TypeVar("T")

REQUEST_ID_HEADER = "x-request-id"


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = new_correlation_id()
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        method = scope.get("method")
        actor = format_actor_label("request", method.upper() if isinstance(method, str) else None)
        tokens = bind_request(request_id, actor)

        async def send_with_request_id(message: Message) -> None:
            if message.get("type") == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((REQUEST_ID_HEADER.encode("latin-1"), request_id.encode("latin-1")))
                message["headers"] = headers
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            reset_request(tokens)


class ForwardedRootPathMiddleware:
    """Apply a proxy-provided ``X-Forwarded-Prefix`` to incoming requests."""

    def __init__(self, app: ASGIApp) -> None:
        self._app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self._app(scope, receive, send)
            return

        prefix = _normalize_root_path(_header_value(scope, "x-forwarded-prefix"))
        if not prefix:
            await self._app(scope, receive, send)
            return

        adjusted_scope = dict(scope)
        adjusted_scope["root_path"] = prefix
        adjusted_scope["path"] = _trim_path(scope.get("path", "/"), prefix)
        raw_path = scope.get("raw_path")
        if isinstance(raw_path, (bytes, bytearray)):
            trimmed = _trim_path(raw_path.decode("latin-1"), prefix)
            adjusted_scope["raw_path"] = trimmed.encode("latin-1")
        await self._app(adjusted_scope, receive, send)


def _header_value(scope: Scope, name: str) -> Optional[str]:
    target = name.lower().encode("latin-1")
    for key, value in scope.get("headers", []):
        if key.lower() == target:
            return value.decode("latin-1").split(",", 1)[0]
    return None


def _normalize_root_path(value: Optional[str]) -> str:
    if value is None:
        return ""
    normalized = value.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


def _trim_path(path: Any, prefix: str) -> str:
    text = str(path or "/")
    if prefix and (text == prefix or text.startswith(f"{prefix}/")):
        text = text[len(prefix):]
    return text or "/"


def _emit_debug_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
) -> None:
    emit_structured_event(
        event_type,
        message,
        payload=payload,
        context=context,
        correlation=collect_correlation_context(),
        duration_ms=duration_ms,
        level=level,
        logger=EVENT_LOGGER,
    )


def _emit_db_event(
    action: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
) -> None:
    emit_db_event(
        action,
        payload=payload,
        context=context,
        correlation=collect_correlation_context(),
        duration_ms=duration_ms,
        logger=EVENT_LOGGER,
    )


def _log_event(message: str, **context: Any) -> None:
    _emit_debug_event(APP_EVENT, message, context=context)


async def _run_blocking(operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking service call in the default executor with the request context."""

    loop = asyncio.get_running_loop()
    parent_context = contextvars.copy_context()
    call = functools.partial(parent_context.run, operation, *args, **kwargs)
    return await loop.run_in_executor(None, call)


class OwnershipPayload(BaseModel):
    memberId: Optional[str] = None
    lmids: Any = None


class LmidOperationPayload(BaseModel):
    action: str
    memberId: Optional[str] = None
    memberEmail: Optional[str] = None
    currentLmids: Optional[str] = None
    lmidToDelete: Any = None


class PlaylistPayload(BaseModel):
    lmid: Any = None
    world: Optional[str] = None
    recordings: Any = None


class RecordingUploadPayload(BaseModel):
    lmid: Any = None
    world: Optional[str] = None
    questionId: Optional[str] = None
    filename: Optional[str] = None
    audioData: Optional[str] = None


class RecordingDeletePayload(BaseModel):
    memberId: Optional[str] = None
    lmid: Any = None
    world: Optional[str] = None
    questionId: Optional[str] = None
    filename: Optional[str] = None


class NotificationPayload(BaseModel):
    recipientEmail: Optional[str] = None
    recipientName: Optional[str] = None
    notificationType: Optional[str] = None
    language: Optional[str] = None
    templateData: Dict[str, Any] = Field(default_factory=dict)


def _require(value: Any, field_name: str) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"Missing required field: {field_name}")
    return value


def _lmid_string(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ",".join(str(item) for item in value)
    return str(value)


def _request_language(request: Request, explicit: Optional[str]) -> Optional[str]:
    if explicit:
        return explicit
    referer = request.headers.get("referer") or ""
    return "pl" if "/pl/" in referer else None


def create_app(
    repository: LmidRepository,
    *,
    config: AppConfig,
    settings: Optional[ServiceSettings] = None,
    root_path: str | None = None,
    session: Optional[requests.Session] = None,
) -> FastAPI:
    """Return a configured FastAPI application.

    ``session`` is shared by every third-party client; tests inject a fake.
    """

    settings = settings or ServiceSettings.from_env()
    normalized_root = _normalize_root_path(root_path)
    app = FastAPI(
        title="Little Microphones",
        description="LMID pool, radio programs and member lifecycle hooks",
        root_path=normalized_root,
    )
    app.state.server = None
    app.state.config = config
    app.state.settings = settings

    def _repository_event_emitter(event_type: str, message: str, **kwargs: Any) -> None:
        if event_type == DB_QUERY:
            _emit_db_event(message, **kwargs)
        else:
            _emit_debug_event(event_type, message, **kwargs)

    repository.configure_event_emitter(_repository_event_emitter)

    memberstack = MemberstackClient.from_settings(settings, session=session)
    brevo = BrevoClient.from_settings(settings, session=session)
    storage = CdnStorageClient.from_settings(settings, session=session)

    allocator = LmidAllocator(repository, memberstack=memberstack)
    contacts = ContactSync(brevo, main_list_id=settings.brevo_main_list_id)
    publisher = PlaylistPublisher(storage, cdn_url=settings.cdn_url)
    catalog = RecordingCatalog(storage, repository=repository)
    share_links = ShareLinkService(repository)
    notifications = NotificationDispatcher(settings, brevo, contacts)
    webhooks = WebhookProcessor(
        allocator, contacts, parent_plan_ids=settings.parent_plan_ids
    )

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ForwardedRootPathMiddleware)

    @app.exception_handler(LittleMicrophonesError)
    async def handle_service_error(request: Request, error: LittleMicrophonesError) -> JSONResponse:
        level = logging.ERROR if error.status_code >= 500 else logging.WARNING
        LOGGER.log(
            level,
            "%s %s failed with %s: %s",
            request.method,
            request.url.path,
            error.status_code,
            error.message,
        )
        return JSONResponse(status_code=error.status_code, content=error.to_payload())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, error: RequestValidationError) -> JSONResponse:
        LOGGER.warning("Rejected malformed request to %s", request.url.path)
        payload = ValidationError(
            "Invalid request payload", details=json.loads(json.dumps(error.errors(), default=str))
        ).to_payload()
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=payload)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, error: Exception) -> JSONResponse:
        LOGGER.exception("Unhandled error during %s %s", request.method, request.url.path)
        payload = LittleMicrophonesError(
            "Internal server error", details={"type": error.__class__.__name__}
        ).to_payload()
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=payload)

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        counts = await _run_blocking(repository.status_counts)
        return {
            "success": True,
            "lmidPool": counts,
            "services": {
                "memberstack": settings.memberstack_configured,
                "brevo": settings.brevo_configured,
                "storage": settings.storage_configured,
                "webhookSecret": bool(settings.webhook_secret),
            },
        }

    @app.post("/api/memberstack-webhook")
    async def memberstack_webhook(request: Request) -> Dict[str, Any]:
        raw_body = await request.body()
        verify_signature(settings.webhook_secret, raw_body, request.headers.get(SIGNATURE_HEADER))
        event = parse_event(raw_body)
        _log_event("Webhook received", event_type=event.event_type, member_id=event.member.id)
        outcome = await _run_blocking(webhooks.process, event)
        return {"success": True, **outcome}

    @app.post("/api/validate-lmid-ownership")
    async def validate_lmid_ownership(payload: OwnershipPayload) -> Dict[str, Any]:
        member_id = validate_member_id(payload.memberId)
        raw_lmids = _lmid_string(_require(payload.lmids, "lmids"))
        result = await _run_blocking(validate_ownership, repository, member_id, raw_lmids)
        _log_event(
            "Ownership validated",
            member_id=member_id,
            owned=len(result.owned_lmids),
            invalid=len(result.invalid_lmids),
        )
        return {"success": True, **result.to_dict()}

    @app.post("/api/lmid-operations")
    async def lmid_operations(payload: LmidOperationPayload) -> Dict[str, Any]:
        action = (payload.action or "").strip().lower()
        member_id = validate_member_id(payload.memberId)

        if action in {"create", "add"}:
            if action == "add":
                _require(payload.memberEmail, "memberEmail")
            allocation = await _run_blocking(
                allocator.allocate,
                member_id,
                payload.memberEmail,
                existing_lmids=payload.currentLmids or "",
            )
            return {
                "success": True,
                "message": f"LMID {allocation.lmid} assigned",
                **allocation.to_dict(),
            }

        if action == "delete":
            lmid = parse_lmid(_require(payload.lmidToDelete, "lmidToDelete"))
            metadata = await _run_blocking(allocator.release, member_id, lmid)
            return {
                "success": True,
                "message": f"LMID {lmid} released",
                "lmid": lmid,
                "newLmidString": metadata.lmid_string,
                "metadataUpdated": metadata.updated,
            }

        if action == "update_parent_metadata":
            metadata = await _run_blocking(allocator.sync_metadata, member_id)
            return {
                "success": True,
                "message": "Metadata synchronised",
                "newLmidString": metadata.lmid_string,
                "metadataUpdated": metadata.updated,
            }

        raise ValidationError(
            "Invalid action. Must be one of: create, add, delete, update_parent_metadata",
            code="INVALID_ACTION",
        )

    @app.post("/api/radio-playlist")
    async def radio_playlist(payload: PlaylistPayload) -> Dict[str, Any]:
        lmid = parse_lmid(_require(payload.lmid, "lmid"))
        world = normalize_world(payload.world)
        result = await _run_blocking(publisher.publish, lmid, world, payload.recordings)
        _log_event(
            "Playlist built",
            lmid=lmid,
            world=world,
            segments=len(result.segments),
            uploaded=result.uploaded,
        )
        return {"success": True, **result.to_dict()}

    @app.get("/api/share-link")
    async def share_link(
        request: Request,
        lmid: Optional[str] = Query(None),
        world: Optional[str] = Query(None),
        lang: Optional[str] = Query(None),
    ) -> Dict[str, Any]:
        base_url = settings.public_base_url or str(request.base_url).rstrip("/")
        link = await _run_blocking(
            share_links.get_or_create,
            _require(lmid, "lmid"),
            _require(world, "world"),
            base_url=base_url,
            language=_request_language(request, lang),
        )
        return {"success": True, **link.to_dict()}

    @app.get("/api/radio-data")
    async def radio_data(share_id: Optional[str] = Query(None, alias="shareId")) -> Dict[str, Any]:
        link = await _run_blocking(share_links.resolve, share_id)
        recordings = await _run_blocking(catalog.list, link.lmid, link.world)
        grouped = group_by_question(recordings)

        machine = ProgramPageMachine()
        manifest_url: Optional[str] = None
        if grouped:
            expected = publisher.build(link.lmid, link.world, grouped).manifest
            current = await _run_blocking(publisher.current_manifest, link.lmid, link.world)
            needs_new_program = current != expected
            if current is not None:
                manifest_url = publisher.manifest_url(link.lmid, link.world)
        else:
            needs_new_program = False
        machine.data_loaded(needs_new_program)

        return {
            "success": True,
            "lmid": link.lmid,
            "world": link.world,
            "recordings": grouped,
            "questionCount": len(grouped),
            "totalRecordings": len(recordings),
            "needsNewProgram": needs_new_program,
            "pageState": machine.state.value,
            "manifestUrl": manifest_url,
        }

    @app.get("/api/recordings")
    async def list_recordings(
        lmid: Optional[str] = Query(None),
        world: Optional[str] = Query(None),
        question_id: Optional[str] = Query(None, alias="questionId"),
    ) -> Dict[str, Any]:
        lmid_value = parse_lmid(_require(lmid, "lmid"))
        world_value = normalize_world(world)
        recordings = await _run_blocking(
            catalog.list, lmid_value, world_value, question_id=question_id
        )
        items: List[Dict[str, Any]] = [recording.to_dict() for recording in recordings]
        return {
            "success": True,
            "lmid": lmid_value,
            "world": world_value,
            "count": len(items),
            "recordings": items,
        }

    @app.post("/api/recordings", status_code=status.HTTP_201_CREATED)
    async def upload_recording(payload: RecordingUploadPayload) -> Dict[str, Any]:
        recording = await _run_blocking(
            catalog.upload,
            _require(payload.lmid, "lmid"),
            _require(payload.world, "world"),
            _require(payload.questionId, "questionId"),
            _require(payload.filename, "filename"),
            _require(payload.audioData, "audioData"),
        )
        _log_event("Recording uploaded", filename=recording.name.filename, size=recording.size)
        return {
            "success": True,
            "url": recording.url,
            "filename": recording.name.filename,
            "size": recording.size,
        }

    @app.delete("/api/recordings")
    async def delete_recording(payload: RecordingDeletePayload) -> Dict[str, Any]:
        filename = _require(payload.filename, "filename")
        deleted = await _run_blocking(
            catalog.delete,
            payload.memberId,
            _require(payload.lmid, "lmid"),
            _require(payload.world, "world"),
            filename,
            question_id=payload.questionId,
        )
        _log_event("Recording deleted", filename=filename, deleted=deleted)
        return {
            "success": True,
            "message": "File deleted successfully" if deleted else "File not found (already deleted)",
            "filename": filename,
            "deleted": deleted,
        }

    @app.post("/api/email-notifications")
    async def email_notifications(payload: NotificationPayload) -> Dict[str, Any]:
        result = await _run_blocking(
            notifications.dispatch,
            _require(payload.recipientEmail, "recipientEmail"),
            _require(payload.recipientName, "recipientName"),
            _require(payload.notificationType, "notificationType"),
            _require(payload.language, "language"),
            payload.templateData,
        )
        return {"success": True, **result.to_dict()}

    return app


__all__ = ["create_app"]

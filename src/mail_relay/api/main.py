"""FastAPI app entrypoint for mail-relay."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.datastructures import UploadFile

from mail_relay.backend.client import HttpTaskBackend, TaskBackend
from mail_relay.config.settings import Settings, get_settings
from mail_relay.email.models import Attachment
from mail_relay.email.outbound import MailSender, SendGridMailSender
from mail_relay.email.parser import parse_inbound
from mail_relay.errors import ExternalServiceError, VerificationFailure
from mail_relay.relay import RelayService
from mail_relay.storage.base import RelayStorage
from mail_relay.storage.postgres import PostgresRelayStorage
from mail_relay.webhooks.models import TaskWebhookPayload
from mail_relay.webhooks.verifier import WebhookVerifier

logger = logging.getLogger(__name__)

_INBOUND_FIELDS = ("from", "to", "subject", "text", "html", "headers")


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: RelayStorage | None,
    mail_sender: MailSender | None,
    backend: TaskBackend | None,
    verifier: WebhookVerifier | None,
) -> None:
    if not hasattr(app.state, "storage"):
        database_url = settings.resolved_database_url()
        if storage_override is None and not database_url:
            raise RuntimeError(
                "Missing database URL. Set MAIL_RELAY_DATABASE_URL "
                "or DATABASE_URL before starting the app."
            )
        app.state.storage = storage_override or PostgresRelayStorage(database_url)
        app.state.storage.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "relay"):
        task_backend = backend or HttpTaskBackend.from_settings(settings)
        app.state.relay = RelayService(
            app.state.storage,
            mail_sender or SendGridMailSender.from_settings(settings),
            task_backend,
            settings,
        )
        app.state.verifier = verifier or WebhookVerifier(
            lambda: task_backend.fetch_public_key().public_key,
            ttl_s=settings.webhook_key_ttl_s,
            tolerance_s=settings.webhook_tolerance_s,
        )


def create_app(
    *,
    storage: RelayStorage | None = None,
    settings_override: Settings | None = None,
    mail_sender: MailSender | None = None,
    backend: TaskBackend | None = None,
    verifier: WebhookVerifier | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    def _ensure(app: FastAPI) -> None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            mail_sender=mail_sender,
            backend=backend,
            verifier=verifier,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure(app)
        yield

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure(app)

    def _get_relay(request: Request) -> RelayService:
        if not hasattr(request.app.state, "relay"):
            _ensure(request.app)
        return request.app.state.relay

    @app.get("/health")
    def health(request: Request) -> JSONResponse:
        relay = _get_relay(request)
        if relay.storage.ping():
            return JSONResponse(
                {"status": "ok", "service": settings.app_name, "database": "connected"}
            )
        return JSONResponse(
            {"status": "error", "service": settings.app_name, "database": "disconnected"},
            status_code=503,
        )

    @app.post("/webhooks/email/inbound")
    async def inbound_email(request: Request) -> dict[str, Any]:
        relay = _get_relay(request)
        form = await request.form()
        fields = {
            name: value
            for name in _INBOUND_FIELDS
            if isinstance(value := form.get(name), str)
        }
        attachments: list[Attachment] = []
        for _, value in form.multi_items():
            if isinstance(value, UploadFile):
                attachments.append(
                    Attachment(
                        filename=value.filename or "attachment",
                        content_type=value.content_type or "application/octet-stream",
                        content=await value.read(),
                    )
                )
        email = parse_inbound(fields, attachments)

        try:
            result = await run_in_threadpool(relay.handle_email, email)
        except ExternalServiceError as exc:
            logger.warning("api event=inbound_unavailable reason=%s", exc)
            raise HTTPException(status_code=503, detail="Upstream service unavailable") from exc
        return {"status": "ok", "outcome": result.outcome}

    @app.post("/webhooks/task")
    async def task_webhook(request: Request) -> dict[str, Any]:
        relay = _get_relay(request)
        raw_body = await request.body()
        if not raw_body.strip():
            return {"status": "ignored"}
        try:
            document = json.loads(raw_body)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
        if not isinstance(document, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        event_type = document.get("event_type")
        if not event_type or event_type == "ping":
            return {"status": "ignored"}

        verifier: WebhookVerifier = request.app.state.verifier
        try:
            await run_in_threadpool(
                verifier.verify,
                request.headers.get("x-webhook-signature"),
                request.headers.get("x-webhook-timestamp"),
                _signed_url(request, settings),
                raw_body,
            )
        except VerificationFailure as exc:
            raise HTTPException(status_code=401, detail="Invalid webhook signature") from exc
        except ExternalServiceError as exc:
            logger.warning("api event=public_key_unavailable reason=%s", exc)
            raise HTTPException(status_code=503, detail="Upstream service unavailable") from exc

        try:
            payload = TaskWebhookPayload.model_validate(document)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail="Invalid webhook payload") from exc

        try:
            result = await run_in_threadpool(relay.handle_webhook, payload)
        except ExternalServiceError as exc:
            logger.warning(
                "api event=webhook_unavailable event_id=%s reason=%s", payload.event_id, exc
            )
            raise HTTPException(status_code=503, detail="Upstream service unavailable") from exc
        return {"status": "ok", "outcome": result.outcome}

    return app


def _signed_url(request: Request, settings: Settings) -> str:
    if settings.webhook_public_url:
        return settings.webhook_public_url
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = (
        request.headers.get("x-forwarded-host")
        or request.headers.get("host")
        or request.url.netloc
    )
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"
    # Proxies may append their own hop to the forwarded headers.
    proto = proto.split(",")[0].strip()
    host = host.split(",")[0].strip()
    return f"{proto}://{host}{path}"


app = create_app()

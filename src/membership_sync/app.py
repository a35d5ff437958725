"""membership_sync.app

HTTP surface of the webhook service.

Routes:
  POST /webhook              donation-platform (Zapier) events, shared-secret auth
  POST /api/paypal/webhook   PayPal subscription and sale events
  GET  /health               liveness plus database check
  GET  /stats                aggregate member counts and revenue
  GET  /members              newest-updated members, optional status filter

All collaborators live on a ServiceContext stored on app.state; nothing is
read from module globals.  Blocking store calls run on the threadpool.
"""

from __future__ import annotations

import base64
import hmac
import json
import logging
import time
from collections.abc import Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from membership_sync.config import Settings
from membership_sync.events import (
    SOURCE_PAYPAL,
    SOURCE_WEBHOOK,
    normalize_paypal_event,
    normalize_webhook,
)
from membership_sync.normalize import VALID_STATUSES, normalize_email
from membership_sync.paypal import PayPalVerifier
from membership_sync.reconcile import Reconciler, ReconcileResult
from membership_sync.shared import (
    AuthError,
    StoreError,
    UnsupportedEvent,
    ValidationError,
)
from membership_sync.store import DEFAULT_LIST_LIMIT, MemberStore

log = logging.getLogger(__name__)

ACK = "OK"


# ---------------------------------------------------------------------------
# Service context
# ---------------------------------------------------------------------------

@dataclass
class ServiceContext:
    settings: Settings
    store: MemberStore
    reconciler: Reconciler
    verifier: PayPalVerifier

    @classmethod
    def from_settings(cls, settings: Settings) -> ServiceContext:
        store = MemberStore.from_settings(settings)
        return cls(
            settings=settings,
            store=store,
            reconciler=Reconciler(store),
            verifier=PayPalVerifier.from_settings(settings),
        )


def get_context(request: Request) -> ServiceContext:
    return request.app.state.context


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def _matches(candidate: str | None, secret: str) -> bool:
    if candidate is None:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), secret.encode("utf-8"))


def is_authorized(headers: Mapping[str, str], secret: str) -> bool:
    """Accept Bearer <secret>, Basic auth carrying the secret as username or
    password, or an X-Webhook-Secret header.  An empty secret accepts nothing.
    """
    if not secret:
        return False

    auth = headers.get("authorization") or ""
    if auth.startswith("Bearer ") and _matches(auth[len("Bearer "):], secret):
        return True

    if auth.startswith("Basic "):
        try:
            decoded = base64.b64decode(auth[len("Basic "):], validate=True).decode("utf-8")
        except ValueError:
            # binascii.Error and UnicodeDecodeError included
            decoded = ""
        username, sep, password = decoded.partition(":")
        if sep and (_matches(password, secret) or _matches(username, secret)):
            return True

    return _matches(headers.get("x-webhook-secret"), secret)


# ---------------------------------------------------------------------------
# Handlers (run on the threadpool)
# ---------------------------------------------------------------------------

def _decode_json(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValidationError("invalid JSON") from exc


def _audit_email(payload: Any) -> str | None:
    """Best-effort email for an audit row when normalization failed."""
    if not isinstance(payload, dict):
        return None
    email = payload.get("email")
    return normalize_email(email if isinstance(email, str) else None)


def _reconcile(ctx: ServiceContext, event) -> ReconcileResult | None:
    try:
        return ctx.reconciler.reconcile(event)
    except StoreError as exc:
        log.error("Error processing member %s: %s", event.email or event.subscription_id, exc)
        if not ctx.settings.always_acknowledge:
            raise
        return None


def process_donation_webhook(ctx: ServiceContext, payload: Any) -> str:
    try:
        event = normalize_webhook(payload)
    except ValidationError:
        ctx.store.log_webhook(SOURCE_WEBHOOK, _audit_email(payload), None, payload)
        raise

    log.info(
        "Webhook received - Email: %s, Status: %s, Anonymous: %s",
        event.email, event.status, event.is_anonymous,
    )
    ctx.store.log_webhook(SOURCE_WEBHOOK, event.email, event.status, payload)
    _reconcile(ctx, event)
    return ACK


def process_paypal_webhook(
    ctx: ServiceContext,
    payload: Any,
    headers: Mapping[str, str],
    body: bytes,
) -> str:
    event_type = payload.get("event_type") if isinstance(payload, dict) else None
    event_id = payload.get("id") if isinstance(payload, dict) else None
    log.info("Received PayPal webhook: %s (ID: %s)", event_type, event_id)

    if ctx.verifier.enabled and not ctx.verifier.verify(headers, body):
        log.warning("Invalid PayPal webhook signature for event %s", event_id)

    try:
        event = normalize_paypal_event(payload)
    except UnsupportedEvent as exc:
        log.info("Ignoring PayPal event %s: %s", event_id, exc)
        ctx.store.log_webhook(SOURCE_PAYPAL, None, None, payload)
        return ACK
    except ValidationError:
        ctx.store.log_webhook(SOURCE_PAYPAL, None, None, payload)
        raise

    ctx.store.log_webhook(SOURCE_PAYPAL, event.email, event.status, payload)
    _reconcile(ctx, event)
    return ACK


def health_payload(ctx: ServiceContext) -> dict[str, str]:
    try:
        ctx.store.health_check()
        database = "ok"
    except StoreError as exc:
        database = f"error: {exc}"
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": database,
    }


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(context: ServiceContext) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await run_in_threadpool(context.store.close)

    app = FastAPI(title="Membership Sync", version="1.0.0", lifespan=lifespan)
    app.state.context = context

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        client = request.client.host if request.client else "-"
        log.info("%s %s from %s", request.method, request.url.path, client)
        response = await call_next(request)
        log.info(
            "%s %s completed %d in %.1fms",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        client = request.client.host if request.client else "-"
        log.warning("Unauthorized webhook attempt from %s", client)
        return JSONResponse(status_code=401, content={"detail": "Unauthorized"})

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        log.warning("Rejected %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        log.error("Store error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.post("/webhook", response_class=PlainTextResponse)
    async def donation_webhook(
        request: Request,
        ctx: ServiceContext = Depends(get_context),
    ) -> str:
        if not is_authorized(request.headers, ctx.settings.webhook_secret):
            raise AuthError("missing or invalid webhook secret")
        payload = _decode_json(await request.body())
        return await run_in_threadpool(process_donation_webhook, ctx, payload)

    @app.post("/api/paypal/webhook", response_class=PlainTextResponse)
    async def paypal_webhook(
        request: Request,
        ctx: ServiceContext = Depends(get_context),
    ) -> str:
        body = await request.body()
        payload = _decode_json(body)
        return await run_in_threadpool(
            process_paypal_webhook, ctx, payload, dict(request.headers), body
        )

    @app.get("/health")
    def health(ctx: ServiceContext = Depends(get_context)) -> dict[str, str]:
        return health_payload(ctx)

    @app.get("/stats")
    def stats(ctx: ServiceContext = Depends(get_context)) -> dict[str, Any]:
        return ctx.store.stats().to_dict()

    @app.get("/members")
    def members(
        status: str | None = None,
        limit: int = Query(DEFAULT_LIST_LIMIT, ge=1),
        ctx: ServiceContext = Depends(get_context),
    ) -> list[dict[str, Any]]:
        status = (status or "").strip().lower() or None
        if status is not None:
            if status not in VALID_STATUSES:
                raise ValidationError(
                    f"unknown status {status!r}; expected one of {sorted(VALID_STATUSES)}"
                )
        return ctx.store.list_members(status, min(limit, DEFAULT_LIST_LIMIT))

    return app

from __future__ import annotations

import json
import logging
import math
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool

from backend.app.auth import AuthContext, require_inbox_access
from backend.app.models import (
    ActionResponse,
    ContactRecord,
    ConversionDispatchRecord,
    ConversionType,
    MessageRecord,
    PurchaseRequest,
    RegistrationRequest,
    SendMessageRequest,
    SendMessageResponse,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import SqlitePersistence
from backend.app.services.attribution import (
    AttributionEngine,
    ConversionOutcome,
    MissingUserDataError,
    dispatch_conversion,
)
from backend.app.services.classifier import MessageEvent, StatusEvent, WebhookEvent, classify
from backend.app.services.conversions_api import ConversionDispatchError, ConversionsApiClient
from backend.app.services.ingestion import ingest_message
from backend.app.services.media_storage import LocalMediaStorage
from backend.app.services.outbound import (
    MessagingWindowError,
    OutboundValidationError,
    send_outbound_message,
)
from backend.app.services.status_reconciler import reconcile_status
from backend.app.services.webhooks import (
    SignatureVerificationError,
    SubscriptionVerificationError,
    verify_subscription,
    verify_whatsapp_signature,
)
from backend.app.services.whatsapp_client import WhatsAppApiError, WhatsAppClient
from backend.app.settings import Settings, load_settings
from backend.app.store import InMemoryStore, StoreNotFoundError

logger = logging.getLogger("wa_crm.api")

CONVERSION_LABELS = {
    ConversionType.view_content: "view content",
    ConversionType.lead: "lead",
    ConversionType.complete_registration: "registration",
    ConversionType.purchase: "purchase",
}


def build_whatsapp_client(settings: Settings) -> WhatsAppClient:
    return WhatsAppClient(
        access_token=settings.whatsapp_access_token,
        phone_number_id=settings.whatsapp_phone_number_id,
        api_version=settings.graph_api_version,
        timeout_seconds=settings.http_timeout_seconds,
    )


def build_attribution_engine(settings: Settings) -> AttributionEngine:
    if not settings.conversions_configured:
        logger.warning("conversions api credentials missing; conversion events disabled")
        return AttributionEngine(client=None)
    return AttributionEngine(
        client=ConversionsApiClient(
            pixel_id=settings.meta_pixel_id,
            access_token=settings.meta_capi_access_token,
            api_version=settings.graph_api_version,
            timeout_seconds=settings.http_timeout_seconds,
            test_event_code=settings.meta_test_event_code,
        )
    )


def create_app() -> FastAPI:
    app = FastAPI(title="WhatsApp CRM Attribution API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = SqlitePersistence(settings.database_url) if settings.persistence_enabled else None
    app.state.store = InMemoryStore(persistence=persistence)
    app.state.settings = settings
    app.state.metrics = MetricsRegistry()
    app.state.whatsapp = build_whatsapp_client(settings)
    app.state.attribution = build_attribution_engine(settings)
    app.state.media_storage = LocalMediaStorage(
        settings.media_storage_dir,
        settings.public_base_url,
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.mount(
        "/media",
        StaticFiles(directory=settings.media_storage_dir, check_dir=False),
        name="media",
    )
    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def action_response(status_code: int, message: str, *, success: bool = False) -> JSONResponse:
    body = ActionResponse(success=success, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


def parse_purchase_value(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return round(value, 2)


def handle_webhook_event(*, event: WebhookEvent, state: Any) -> str:
    """Route one classified event; returns the metrics kind."""
    if isinstance(event, MessageEvent):
        result = ingest_message(
            event=event,
            store=state.store,
            whatsapp=state.whatsapp,
            media_storage=state.media_storage,
            attribution=state.attribution,
        )
        for conversion_type, outcome in result.conversions.items():
            state.metrics.record_conversion(event_name=conversion_type.value, outcome=outcome)
        return "duplicate" if result.duplicate else "message"
    if isinstance(event, StatusEvent):
        reconcile_status(event=event, store=state.store)
        return "status"
    logger.info("webhook_ignored reason=%s", event.reason)
    return "unrecognized"


def run_conversion(
    request: Request,
    *,
    contact_id: str,
    conversion_type: ConversionType,
    extra_fields: Optional[dict[str, Any]] = None,
    contact_updates: Optional[dict[str, Any]] = None,
) -> JSONResponse:
    metrics = get_metrics(request)
    label = CONVERSION_LABELS[conversion_type]
    try:
        outcome = dispatch_conversion(
            store=get_store(request),
            engine=request.app.state.attribution,
            contact_id=contact_id,
            conversion_type=conversion_type,
            extra_fields=extra_fields,
            contact_updates=contact_updates,
        )
    except StoreNotFoundError as exc:
        return action_response(status.HTTP_404_NOT_FOUND, str(exc))
    except (ConversionDispatchError, MissingUserDataError) as exc:
        metrics.record_conversion(event_name=conversion_type.value, outcome="failed")
        logger.warning(
            "conversion_failed event=%s contact=%s error=%s",
            conversion_type.value,
            contact_id,
            exc,
        )
        return action_response(status.HTTP_502_BAD_GATEWAY, f"could not send {label} event: {exc}")

    metrics.record_conversion(event_name=conversion_type.value, outcome=outcome.value)
    if outcome == ConversionOutcome.already_processed:
        return action_response(
            status.HTTP_400_BAD_REQUEST,
            f"{label} was already registered for this contact",
        )
    if outcome == ConversionOutcome.skipped:
        return action_response(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "conversion tracking is not configured; nothing was sent",
        )
    return action_response(status.HTTP_200_OK, f"{label} registered and sent", success=True)


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.get("/webhook", response_class=PlainTextResponse)
    def verify_webhook(request: Request) -> Response:
        params = request.query_params
        try:
            challenge = verify_subscription(
                mode=params.get("hub.mode"),
                token=params.get("hub.verify_token"),
                challenge=params.get("hub.challenge"),
                expected_token=get_settings(request).whatsapp_verify_token,
            )
        except SubscriptionVerificationError as exc:
            logger.warning("webhook_verification_failed reason=%s", exc)
            code = status.HTTP_404_NOT_FOUND if exc.missing_params else status.HTTP_403_FORBIDDEN
            return Response(status_code=code)
        logger.info("webhook_verified")
        return PlainTextResponse(challenge)

    @router.post("/webhook")
    async def receive_webhook(request: Request) -> Response:
        settings = get_settings(request)
        metrics_registry = get_metrics(request)
        raw_body = await request.body()
        try:
            verify_whatsapp_signature(
                headers=request.headers,
                raw_body=raw_body,
                secret=settings.whatsapp_app_secret,
            )
        except SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

        try:
            payload = json.loads(raw_body)
        except ValueError:
            logger.warning("webhook_ignored reason=invalid_json bytes=%s", len(raw_body))
            metrics_registry.record_webhook_event("unrecognized")
            return Response(status_code=status.HTTP_200_OK)

        event = classify(payload)
        try:
            kind = await run_in_threadpool(handle_webhook_event, event=event, state=request.app.state)
        except Exception:
            # The provider retries any non-2xx, which would duplicate side effects.
            metrics_registry.record_webhook_event("failed")
            logger.exception("webhook_processing_failed event=%s", type(event).__name__)
            return Response(status_code=status.HTTP_200_OK)
        metrics_registry.record_webhook_event(kind)
        return Response(status_code=status.HTTP_200_OK)

    @router.get("/api/contacts", response_model=list[ContactRecord])
    def list_contacts(
        request: Request,
        _: AuthContext = Depends(require_inbox_access),
    ) -> list[ContactRecord]:
        return get_store(request).list_contacts()

    @router.get("/api/contacts/{contact_id}", response_model=ContactRecord)
    def get_contact(
        contact_id: str,
        request: Request,
        _: AuthContext = Depends(require_inbox_access),
    ) -> ContactRecord:
        try:
            return get_store(request).get_contact(contact_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @router.get("/api/contacts/{contact_id}/messages", response_model=list[MessageRecord])
    def list_messages(
        contact_id: str,
        request: Request,
        _: AuthContext = Depends(require_inbox_access),
    ) -> list[MessageRecord]:
        try:
            return get_store(request).list_messages(contact_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @router.post("/api/contacts/{contact_id}/messages", response_model=SendMessageResponse)
    def send_message(
        contact_id: str,
        payload: SendMessageRequest,
        request: Request,
        _: AuthContext = Depends(require_inbox_access),
    ) -> SendMessageResponse:
        try:
            message = send_outbound_message(
                store=get_store(request),
                whatsapp=request.app.state.whatsapp,
                contact_id=contact_id,
                payload=payload,
                window_hours=get_settings(request).messaging_window_hours,
            )
        except OutboundValidationError as exc:
            return action_response(status.HTTP_400_BAD_REQUEST, str(exc))
        except StoreNotFoundError as exc:
            return action_response(status.HTTP_404_NOT_FOUND, str(exc))
        except MessagingWindowError as exc:
            return action_response(status.HTTP_403_FORBIDDEN, str(exc))
        except WhatsAppApiError as exc:
            logger.warning("outbound_failed contact=%s error=%s", contact_id, exc)
            return action_response(status.HTTP_502_BAD_GATEWAY, f"message could not be sent: {exc}")
        return SendMessageResponse(success=True, message="message sent", data=message)

    @router.post("/api/contacts/{contact_id}/mark-as-read", response_model=ContactRecord)
    def mark_as_read(
        contact_id: str,
        request: Request,
        _: AuthContext = Depends(require_inbox_access),
    ) -> ContactRecord:
        try:
            return get_store(request).mark_contact_read(contact_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @router.post("/api/contacts/{contact_id}/mark-as-registration", response_model=ActionResponse)
    def mark_as_registration(
        contact_id: str,
        request: Request,
        payload: Optional[RegistrationRequest] = None,
        _: AuthContext = Depends(require_inbox_access),
    ) -> JSONResponse:
        email = (payload.email or "").strip() if payload else ""
        if email and ("@" not in email or email.startswith("@") or email.endswith("@")):
            return action_response(status.HTTP_400_BAD_REQUEST, "email is not valid")
        return run_conversion(
            request,
            contact_id=contact_id,
            conversion_type=ConversionType.complete_registration,
            contact_updates={"email": email} if email else None,
        )

    @router.post("/api/contacts/{contact_id}/mark-as-purchase", response_model=ActionResponse)
    def mark_as_purchase(
        contact_id: str,
        payload: PurchaseRequest,
        request: Request,
        _: AuthContext = Depends(require_inbox_access),
    ) -> JSONResponse:
        value = parse_purchase_value(payload.value)
        if value is None:
            return action_response(
                status.HTTP_400_BAD_REQUEST,
                "a positive numeric value is required",
            )
        currency = get_settings(request).conversion_currency
        return run_conversion(
            request,
            contact_id=contact_id,
            conversion_type=ConversionType.purchase,
            extra_fields={"value": value, "currency": currency},
            contact_updates={"purchase_value": value, "purchase_currency": currency},
        )

    @router.post("/api/contacts/{contact_id}/send-view-content", response_model=ActionResponse)
    def send_view_content(
        contact_id: str,
        request: Request,
        _: AuthContext = Depends(require_inbox_access),
    ) -> JSONResponse:
        return run_conversion(
            request,
            contact_id=contact_id,
            conversion_type=ConversionType.view_content,
        )

    @router.get("/api/conversions", response_model=list[ConversionDispatchRecord])
    def list_conversions(
        request: Request,
        limit: int = 100,
        contact_id: Optional[str] = None,
        _: AuthContext = Depends(require_inbox_access),
    ) -> list[ConversionDispatchRecord]:
        return get_store(request).list_conversion_dispatches(limit=limit, contact_id=contact_id)

    return router

from __future__ import annotations
import sys
import json
import os
from typing import Any, Optional

from .infra.log import configure_logging
from .infra.sql import make_async_engine
from .infra.timings import snapshot, timeit

from .errors import ErrorCode, GatePassError, SignatureMismatch
from .gateway import PaymentGateway, new_gateway
from .model.db import Base
from .model.admin import AdminStore, KEEP
from .model.ledger import SettlementStore
from .model.webhookevents import (
    WebhookEventStore, new_store, idempotency_key,
    BACKEND as WEBHOOK_BACKEND,
)
from .notify import ErrorReporter, Notifier, new_notifier
from .payouts import ACTIONS, PayoutService
from .settlement import SettlementEngine, SettlementResult

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import ORJSONResponse

import structlog
import redis.asyncio as redis

configure_logging()
log = structlog.get_logger(__name__, component="server")

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    print("NEED DATABASE_URL! e.g. sqlite:///./gatepass.db")
    sys.exit(1)

REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "64"))

engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)

gateway: PaymentGateway = new_gateway()
notifier: Notifier = new_notifier()
reporter = ErrorReporter()

app = FastAPI(
    title="GatePass",
    default_response_class=ORJSONResponse,
)

# GatePassError -> HTTP status, for routes that don't map explicitly
ERROR_STATUS = {
    ErrorCode.VERIFICATION_ERROR: 502,
    ErrorCode.VERIFICATION_FAILED: 400,
    ErrorCode.NO_RESERVATIONS_FOUND: 404,
    ErrorCode.RESERVATION_NOT_FOUND: 404,
    ErrorCode.RESERVATION_UNAVAILABLE: 409,
    ErrorCode.INVENTORY_EXCEEDED: 409,
    ErrorCode.ALREADY_SETTLED: 200,
    ErrorCode.SIGNATURE_MISMATCH: 401,
    ErrorCode.PERSISTENCE_ERROR: 503,
    ErrorCode.PAYOUT_CONFLICT: 409,
    ErrorCode.PAYOUT_NOT_FOUND: 404,
    ErrorCode.INVALID_PAYOUT_TRANSITION: 409,
    ErrorCode.INSUFFICIENT_BALANCE: 422,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
}


@app.exception_handler(GatePassError)
async def _gatepass_error(request: Request, exc: GatePassError):
    return ORJSONResponse(
        status_code=ERROR_STATUS.get(exc.code, 500),
        content={"error": exc.message, "code": exc.code.value},
    )


def get_gateway() -> PaymentGateway:
    return gateway


def get_settlement() -> SettlementEngine:
    return SettlementEngine(
        SessionAsync, gated,
        gateway=gateway, notifier=notifier, reporter=reporter,
    )


async def webhookevents() -> WebhookEventStore:
    if WEBHOOK_BACKEND == "redis":
        yield new_store(r=app.state.redis)
    else:
        async with SessionAsync() as session:
            yield new_store(db=session, gated=gated)


async def admin_store() -> AdminStore:
    async with SessionAsync() as session:
        yield AdminStore(db=session, gated=gated)


async def payout_service() -> PayoutService:
    async with SessionAsync() as session:
        yield PayoutService(db=session, gated=gated)


async def settlement_store() -> SettlementStore:
    async with SessionAsync() as session:
        yield SettlementStore(db=session, gated=gated)


# identity is established upstream by the auth provider
def current_user(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


async def require_super_admin(
    user_id: Optional[str] = Depends(current_user),
    admin: AdminStore = Depends(admin_store),
) -> str:
    if not await admin.is_super_admin(user_id):
        raise HTTPException(403, detail="super admin only")
    return user_id


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    log.info(
        "startup",
        gateway=type(gateway).__name__,
        notifier=type(notifier).__name__,
        webhook_events=WEBHOOK_BACKEND,
    )


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def _redis_start():
    if WEBHOOK_BACKEND == "redis":
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


@app.on_event("shutdown")
async def _clients_stop():
    await gateway.aclose()
    await notifier.aclose()
    await engine.dispose()


# ----------------------------
# Helpers
# ----------------------------
async def _json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None


def _client_error(status: int, message: str, code: Optional[str] = None,
                  **extra: Any) -> ORJSONResponse:
    content = {"tickets": [], "error": message}
    if code:
        content["code"] = code
    content.update(extra)
    return ORJSONResponse(status_code=status, content=content)


def _failed_batch_status(result: SettlementResult) -> int:
    codes = {f.code for f in result.failures}
    if result.retryable:
        return 503
    if codes == {ErrorCode.RESERVATION_NOT_FOUND}:
        return 404
    return 409


# ----------------------------
# Client verification
# ----------------------------
@app.post("/api/payments/verify")
async def verify_payment(
    request: Request,
    settlement: SettlementEngine = Depends(get_settlement),
):
    body = await _json_body(request)
    if not isinstance(body, dict):
        return _client_error(400, "Invalid request body")

    reference = body.get("reference")
    if not isinstance(reference, str) or not reference.strip():
        return _client_error(400, "reference is required")
    reservation_ids = (
        body.get("reservationIds") or body.get("reservation_ids")
        or body.get("reservationId") or body.get("reservation_id")
    )

    try:
        async with timeit("api.verify"):
            result = await settlement.settle(
                reference.strip(), reservation_ids,
                addons=body.get("addons"),
            )
    except GatePassError as e:
        return _client_error(
            ERROR_STATUS.get(e.code, 500), e.message, e.code.value
        )

    if not result.success:
        return _client_error(
            _failed_batch_status(result),
            result.error or "Could not issue tickets",
            failures=[f.as_dict() for f in result.failures],
        )
    return result.as_dict()


# ----------------------------
# Webhooks (primary + legacy share one resolution path)
# ----------------------------
async def _handle_webhook(
    request: Request,
    route: str,
    settlement: SettlementEngine,
    events: WebhookEventStore,
    gw: PaymentGateway,
):
    payload = await request.body()
    try:
        event = gw.verify_webhook(payload, request.headers)
    except SignatureMismatch:
        log.warning("webhook_signature_mismatch", route=route)
        raise HTTPException(401, detail="Invalid signature")
    except ValueError as e:
        raise HTTPException(400, detail=str(e))

    kind = event.get("event")
    data = event.get("data")
    if not isinstance(data, dict):
        data = {}
    reference = data.get("reference")

    if kind != "charge.success":
        log.info("webhook_ignored", route=route, kind=kind)
        return {"ok": True, "ignored": True}
    if not reference:
        log.warning("webhook_missing_reference", route=route)
        return {"ok": True, "ignored": True}

    key = idempotency_key(kind, str(reference))
    async with timeit("webhook.seen"):
        if await events.seen(key):
            return {"ok": True, "idempotent": True}

    try:
        async with timeit("api.webhook"):
            result = await settlement.settle(str(reference), transaction=data)
    except GatePassError as e:
        if e.retryable:
            log.warning("webhook_retry", route=route, reference=reference,
                        code=e.code.value)
            return ORJSONResponse(
                status_code=503,
                content={"ok": False, "code": e.code.value},
            )
        # terminal: acknowledge so the gateway stops retrying
        log.info("webhook_terminal", route=route, reference=reference,
                 code=e.code.value)
        await events.mark_processed(key)
        return {"ok": True, "code": e.code.value}

    if result.retryable:
        return ORJSONResponse(
            status_code=503,
            content={"ok": False, "code": ErrorCode.PERSISTENCE_ERROR.value},
        )
    await events.mark_processed(key)
    return {
        "ok": True,
        "tickets": len(result.tickets),
        "already_settled": result.already_settled,
        "failures": [f.as_dict() for f in result.failures],
    }


@app.post("/api/payments/webhook")
async def payments_webhook(
    request: Request,
    settlement: SettlementEngine = Depends(get_settlement),
    events: WebhookEventStore = Depends(webhookevents),
    gw: PaymentGateway = Depends(get_gateway),
):
    return await _handle_webhook(request, "primary", settlement, events, gw)


@app.post("/api/webhooks/paystack")
async def legacy_webhook(
    request: Request,
    settlement: SettlementEngine = Depends(get_settlement),
    events: WebhookEventStore = Depends(webhookevents),
    gw: PaymentGateway = Depends(get_gateway),
):
    return await _handle_webhook(request, "legacy", settlement, events, gw)


# ----------------------------
# Tickets
# ----------------------------
@app.get("/api/tickets")
async def get_tickets(
    reference: Optional[str] = None,
    store: SettlementStore = Depends(settlement_store),
):
    if not reference:
        raise HTTPException(400, detail="reference is required")
    tickets = await store.tickets_for_reference(reference)
    return {"reference": reference, "tickets": [t.as_dict() for t in tickets]}


# ----------------------------
# Payouts (organizer)
# ----------------------------
@app.post("/api/events/{event_id}/payouts")
async def request_payout(
    event_id: str,
    payload: dict,
    user_id: Optional[str] = Depends(current_user),
    payouts: PayoutService = Depends(payout_service),
    admin: AdminStore = Depends(admin_store),
):
    try:
        payout = await payouts.request_payout(
            event_id, user_id, payload.get("amount"), payload.get("currency")
        )
    except ValueError as e:
        raise HTTPException(400, detail=str(e))
    await admin.log_activity(
        reporter,
        organization_id=payout["organizer_id"],
        user_id=user_id,
        action="payout_requested",
        entity_type="payout",
        entity_id=payout["id"],
        details={"amount": payout["amount"], "event_id": event_id},
    )
    return payout


# ----------------------------
# Admin
# ----------------------------
@app.get("/api/admin/settings/fees")
async def admin_get_fees(
    _: str = Depends(require_super_admin),
    admin: AdminStore = Depends(admin_store),
):
    return (await admin.fee_settings()).as_dict()


@app.put("/api/admin/settings/fees")
async def admin_put_fees(
    payload: dict,
    user_id: str = Depends(require_super_admin),
    admin: AdminStore = Depends(admin_store),
):
    try:
        rates = await admin.update_fee_settings(
            payload.get("platform_fee_percent"),
            payload.get("processor_fee_percent"),
        )
    except ValueError as e:
        raise HTTPException(400, detail=str(e))
    await admin.log_activity(
        reporter, organization_id="platform", user_id=user_id,
        action="fee_settings_updated", entity_type="system_settings",
        entity_id="fees", details=rates.as_dict(),
    )
    return rates.as_dict()


@app.put("/api/admin/events/{event_id}/fees")
async def admin_put_event_fees(
    event_id: str,
    payload: dict,
    user_id: str = Depends(require_super_admin),
    admin: AdminStore = Depends(admin_store),
):
    try:
        event = await admin.set_event_fees(
            event_id,
            platform_fee_percent=payload.get("platform_fee_percent", KEEP),
            fee_bearer=payload.get("fee_bearer", KEEP),
        )
    except ValueError as e:
        raise HTTPException(400, detail=str(e))
    await admin.log_activity(
        reporter, organization_id=event["organizer_id"], user_id=user_id,
        action="event_fees_updated", entity_type="event",
        entity_id=event_id, details=event,
    )
    return event


@app.put("/api/admin/organizers/{organizer_id}/fees")
async def admin_put_organizer_fees(
    organizer_id: str,
    payload: dict,
    user_id: str = Depends(require_super_admin),
    admin: AdminStore = Depends(admin_store),
):
    if "platform_fee_percent" not in payload:
        raise HTTPException(400, detail="platform_fee_percent is required")
    try:
        org = await admin.set_organizer_fee(
            organizer_id, payload["platform_fee_percent"]
        )
    except ValueError as e:
        raise HTTPException(400, detail=str(e))
    await admin.log_activity(
        reporter, organization_id=organizer_id, user_id=user_id,
        action="organizer_fees_updated", entity_type="organizer",
        entity_id=organizer_id, details=org,
    )
    return org


@app.get("/api/admin/transactions")
async def admin_transactions(
    limit: int = 200,
    status: Optional[str] = None,
    event_id: Optional[str] = None,
    _: str = Depends(require_super_admin),
    admin: AdminStore = Depends(admin_store),
):
    items = await admin.list_transactions(
        limit=limit, status=status, event_id=event_id
    )
    return {"items": items}


@app.get("/api/admin/payouts")
async def admin_payouts(
    limit: int = 200,
    status: Optional[str] = None,
    event_id: Optional[str] = None,
    _: str = Depends(require_super_admin),
    payouts: PayoutService = Depends(payout_service),
):
    items = await payouts.list_payouts(
        status=status, event_id=event_id, limit=limit
    )
    return {"items": items}


@app.post("/api/admin/payouts/{payout_id}/{action}")
async def admin_payout_action(
    payout_id: str,
    action: str,
    request: Request,
    user_id: str = Depends(require_super_admin),
    payouts: PayoutService = Depends(payout_service),
    admin: AdminStore = Depends(admin_store),
):
    target = ACTIONS.get(action)
    if target is None:
        raise HTTPException(404, detail="unknown action")
    body = await _json_body(request)
    if not isinstance(body, dict):
        body = {}
    try:
        payout = await payouts.transition(
            payout_id, target, user_id,
            reference=body.get("reference"),
            notes=body.get("notes") or body.get("reason"),
        )
    except ValueError as e:
        raise HTTPException(400, detail=str(e))
    await admin.log_activity(
        reporter, organization_id=payout["organizer_id"], user_id=user_id,
        action=f"payout_{target}", entity_type="payout",
        entity_id=payout_id,
        details={"amount": payout["amount"], "reference": payout["reference"]},
    )
    return payout


@app.post("/api/admin/reservations/{reservation_id}/resend")
async def admin_resend(
    reservation_id: str,
    _: str = Depends(require_super_admin),
    settlement: SettlementEngine = Depends(get_settlement),
):
    try:
        sent = await settlement.resend(reservation_id)
    except GatePassError:
        raise
    except Exception as e:
        reporter.report("notification_failed", e,
                        reservation_id=reservation_id)
        raise HTTPException(502, detail="notification delivery failed")
    return {"ok": True, "tickets": sent}


@app.get("/api/admin/timings")
async def admin_timings(_: str = Depends(require_super_admin)):
    return {"timings": snapshot()}

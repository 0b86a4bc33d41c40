from __future__ import annotations
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as redis
import uvicorn
from fastapi import (
    APIRouter, BackgroundTasks, Depends, FastAPI, Form, Query, Request,
)
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from jinja2 import Environment, select_autoescape
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .checkout import CheckoutService
from .config import Settings
from .errors import AuthError, NotFoundError, RodeoError, ValidationError
from .fulfillment import Fulfillment
from .gateway import checkout_adapter, new_adapters
from .gateway._mock import SIGNATURE_HEADER, MockPay, sign
from .helpers import ct_equal, fmt_cents
from .infra.sql import create_schema, make_async_engine
from .integrations.mailer import ResendMailer
from .integrations.railway import RailwayCatalog
from .integrations.shipping import ShiptimeClient
from .model import webhookevents
from .model.db import (
    KIND_BAR_CREDIT, KIND_MERCHANDISE, KIND_TICKET, MODELS, Base,
)
from .model.records import RecordStore, record_to_dict
from .reconcile import WebhookService
from .redemption import RedemptionService

logger = logging.getLogger(__name__)

MOCKPAY_PAGE = Environment(autoescape=select_autoescape()).from_string(
    """<!DOCTYPE html>
<html><head><title>MockPay</title></head>
<body style="font-family:Arial,sans-serif">
  <h1>MockPay</h1>
  <p>{{ r.confirmation_code }}: {{ total }} {{ r.currency|upper }}</p>
  {% for t in ["succeeded", "failed", "canceled"] %}
  <form method="post" action="/mockpay/{{ psid }}/emit">
    <input type="hidden" name="t" value="{{ t }}">
    <button type="submit">{{ t|title }}</button>
  </form>
  {% endfor %}
</body></html>
"""
)

router = APIRouter()


# ----------------------------
# Helpers
# ----------------------------
def _kind(kind: str) -> str:
    # URLs may use bar-credits / bar_credit / tickets
    k = kind.strip().lower().replace("-", "_")
    k = {"tickets": KIND_TICKET, "bar_credits": KIND_BAR_CREDIT,
         "merch": KIND_MERCHANDISE}.get(k, k)
    if k not in MODELS:
        raise NotFoundError(f"unknown record kind: {kind}")
    return k


def is_staff(request: Request) -> bool:
    if request.session.get("staff"):
        return True
    token = request.app.state.settings.staff_token
    auth = request.headers.get("authorization", "")
    if token and auth.startswith("Bearer "):
        return ct_equal(auth[len("Bearer "):].strip(), token)
    return False


def require_staff(request: Request) -> None:
    if not is_staff(request):
        raise AuthError("Staff login required")


async def _json_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise ValidationError("Invalid JSON")
    if not isinstance(body, dict):
        raise ValidationError("request body must be an object")
    return body


def _fulfill_later(request: Request, tasks: BackgroundTasks, outcome) -> None:
    # side effects run after the response; they never undo the transition
    if outcome.first_confirmation:
        tasks.add_task(request.app.state.fulfillment.run,
                       outcome.kind, outcome.record)


# ----------------------------
# Checkout & status
# ----------------------------
@router.post("/api/checkout/{kind}")
async def create_checkout(kind: str, request: Request):
    payload = await _json_body(request)
    selection = payload.get("selection")
    if selection is None:
        selection = {k: v for k, v in payload.items() if k != "customer"}
    return await request.app.state.checkout.initiate(
        _kind(kind), selection, payload.get("customer")
    )


@router.get("/api/records/{kind}/{code}")
async def get_record(kind: str, code: str, request: Request):
    kind = _kind(kind)
    record = await request.app.state.store.get_by_code(kind, code)
    if record is None:
        raise NotFoundError("Confirmation code not found")
    return record_to_dict(kind, record)


@router.post("/api/records/{kind}/{code}/check-payment")
async def check_payment(kind: str, code: str, request: Request,
                        tasks: BackgroundTasks):
    outcome = await request.app.state.webhooks.reconcile_polled(
        _kind(kind), code
    )
    _fulfill_later(request, tasks, outcome)
    return {**outcome.to_dict(),
            "record": record_to_dict(outcome.kind, outcome.record)}


# ----------------------------
# Webhooks
# ----------------------------
@router.post("/payments/webhook/{provider}")
async def payments_webhook(provider: str, request: Request,
                           tasks: BackgroundTasks):
    payload = await request.body()
    outcome = await request.app.state.webhooks.handle_webhook(
        provider, payload, request.headers
    )
    _fulfill_later(request, tasks, outcome)
    return outcome.to_dict()


# ----------------------------
# Point of use (staff)
# ----------------------------
@router.post("/api/scan/ticket", dependencies=[Depends(require_staff)])
async def scan_ticket(request: Request):
    body = await _json_body(request)
    return await request.app.state.redemption.scan_ticket(
        body.get("confirmation_code", "")
    )


@router.post("/api/bar-credits/redeem", dependencies=[Depends(require_staff)])
async def redeem_bar_credit(request: Request):
    body = await _json_body(request)
    return await request.app.state.redemption.redeem_bar_credit(
        body.get("confirmation_code", "")
    )


@router.post("/api/tickets/link-wristband",
             dependencies=[Depends(require_staff)])
async def link_wristband(request: Request):
    body = await _json_body(request)
    return await request.app.state.redemption.link_wristband(
        body.get("confirmation_code", ""), body.get("rfid_tag_id", "")
    )


# ----------------------------
# Admin
# ----------------------------
@router.post("/api/admin/login")
async def admin_login(request: Request):
    body = await _json_body(request)
    password = str(body.get("password") or "")
    if not ct_equal(password, request.app.state.settings.staff_password):
        logger.warning("failed staff login from %s",
                       request.client.host if request.client else "-")
        raise AuthError("Invalid credentials")
    request.session["staff"] = True
    return {"success": True}


@router.post("/api/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"success": True}


@router.get("/api/admin/tickets/search",
            dependencies=[Depends(require_staff)])
async def search_tickets(request: Request,
                         search_type: str = Query("code", alias="searchType"),
                         value: str = ""):
    return await request.app.state.redemption.search_refundable(
        search_type, value
    )


@router.post("/api/admin/tickets/{record_id}/refund",
             dependencies=[Depends(require_staff)])
async def refund_ticket(record_id: str, request: Request):
    body = await _json_body(request)
    return await request.app.state.redemption.refund(
        KIND_TICKET, record_id, body.get("amount"), body.get("reason")
    )


@router.post("/api/admin/bar-credits/{record_id}/refund",
             dependencies=[Depends(require_staff)])
async def refund_bar_credit(record_id: str, request: Request):
    body = await _json_body(request)
    return await request.app.state.redemption.refund(
        KIND_BAR_CREDIT, record_id, body.get("amount"), body.get("reason")
    )


@router.post("/api/admin/{kind}/{code}/confirm",
             dependencies=[Depends(require_staff)])
async def admin_confirm(kind: str, code: str, request: Request,
                        tasks: BackgroundTasks):
    body = await _json_body(request)
    outcome = await request.app.state.webhooks.manual_confirm(
        _kind(kind), code, body.get("transaction_reference")
    )
    _fulfill_later(request, tasks, outcome)
    return {**outcome.to_dict(),
            "record": record_to_dict(outcome.kind, outcome.record)}


@router.post("/api/admin/{kind}/{code}/resend-confirmation",
             dependencies=[Depends(require_staff)])
async def admin_resend(kind: str, code: str, request: Request):
    kind = _kind(kind)
    record = await request.app.state.fulfillment.resend(kind, code)
    return {"success": True, "record": record_to_dict(kind, record)}


@router.get("/api/admin/{kind}", dependencies=[Depends(require_staff)])
async def admin_list(kind: str, request: Request,
                     status: Optional[str] = None, limit: int = 200):
    kind = _kind(kind)
    equals = {"status": status} if status else {}
    rows = await request.app.state.store.filter(
        kind, limit=max(1, min(limit, 500)), **equals
    )
    return {"items": [record_to_dict(kind, r) for r in rows], "limit": limit}


# ----------------------------
# Shipping quotes
# ----------------------------
@router.post("/api/shipping/rates")
async def shipping_rates(request: Request):
    body = await _json_body(request)
    destination = body.get("destination") or body.get("shipping_address")
    if not isinstance(destination, dict) or \
            not destination.get("postal_code"):
        raise ValidationError("destination postal_code is required")
    state = request.app.state
    packages = await state.fulfillment.packages_for(body.get("items") or [])
    rates = await state.shipping.get_rates(destination, packages)
    return {"rates": rates}


# ----------------------------
# MockPay (local provider pages)
# ----------------------------
async def _mock_session(request: Request, psid: str):
    found = await request.app.state.store.find_by_session_id(psid)
    if found is None:
        raise NotFoundError("payment session not found")
    return found


@router.get("/mockpay/{psid}", response_class=HTMLResponse)
async def mockpay_screen(psid: str, request: Request):
    _, record = await _mock_session(request, psid)
    return HTMLResponse(MOCKPAY_PAGE.render(
        r=record, psid=psid, total=fmt_cents(record.total_cents),
    ))


@router.post("/mockpay/{psid}/emit")
async def mockpay_emit(psid: str, request: Request, t: str = Form(...)):
    if t not in {"succeeded", "failed", "canceled"}:
        raise ValidationError("invalid kind")
    state = request.app.state
    adapter = state.adapters.get("mock")
    if not isinstance(adapter, MockPay):
        raise NotFoundError("MockPay is not enabled")
    kind, record = await _mock_session(request, psid)

    txn = f"mock_txn_{uuid.uuid4().hex[:12]}"
    event = {
        "type": f"payment.{t}",
        "payment_session_id": psid,
        "transaction_id": txn,
        "amount": record.total_cents,
        "currency": record.currency,
        "created_at": int(time.time()),
        "idempotency_key": f"evt_{uuid.uuid4().hex}",
        "metadata": {
            "record_kind": kind,
            "record_id": record.id,
            "confirmation_code": record.confirmation_code,
        },
    }
    if t == "succeeded":
        adapter.charged[psid] = txn

    payload = json.dumps(event).encode()
    try:
        await state.http.post(
            state.settings.mock_webhook_url,
            content=payload,
            headers={
                SIGNATURE_HEADER: sign(adapter.secret, payload),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # the page can be retried; check-payment also settles charged sessions
        logger.warning("mock webhook delivery for %s failed: %s", psid, e)

    checkout = state.checkout
    if t == "succeeded":
        url = checkout.success_url(kind, record.confirmation_code)
    else:
        url = f"{checkout.cancel_url(kind)}?status={t}"
    return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)


# ----------------------------
# App factory
# ----------------------------
async def _rodeo_error(request: Request, exc: RodeoError):
    return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)


async def _unexpected_error(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s",
                     request.method, request.url.path)
    return ORJSONResponse(
        {"error": "Internal server error", "reason": "internal"},
        status_code=500,
    )


def create_app(settings: Optional[Settings] = None, *,
               adapters=None, catalog=None, mailer=None, shipping=None,
               http: Optional[httpx.AsyncClient] = None,
               redis_client: Optional[redis.Redis] = None) -> FastAPI:
    """
    Build the application. Collaborators default to the real clients built
    from `settings`; tests pass fakes.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine, SessionAsync, _, gated = make_async_engine(
            settings.database_url, settings.db_gate_limit,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
        )
        await create_schema(engine, Base.metadata)

        client = http or httpx.AsyncClient(
            timeout=settings.gateway_timeout,
            limits=httpx.Limits(
                max_connections=512, max_keepalive_connections=512
            ),
        )
        r = redis_client
        if r is None and settings.dedup_backend == "redis":
            r = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

        state = app.state
        state.settings = settings
        state.http = client
        state.redis = r
        state.adapters = adapters or new_adapters(settings, client)
        state.store = RecordStore(sessions=SessionAsync, gated=gated)
        state.catalog = catalog or RailwayCatalog(
            http=client, base_url=settings.railway_url,
            email=settings.railway_email, password=settings.railway_password,
        )
        state.shipping = shipping or ShiptimeClient(
            http=client, base_url=settings.shiptime_url,
            username=settings.shiptime_username,
            password=settings.shiptime_password,
            origin_postal=settings.shipping_origin_postal,
        )
        mail = mailer or ResendMailer(
            http=client, api_key=settings.resend_api_key,
            sender=settings.email_from,
        )
        dedup = webhookevents.new_store(
            settings.dedup_backend, sessions=SessionAsync, gated=gated, r=r,
        )
        state.checkout = CheckoutService(
            store=state.store,
            adapter=checkout_adapter(settings, state.adapters),
            catalog=state.catalog, settings=settings,
        )
        state.webhooks = WebhookService(
            store=state.store, dedup=dedup, adapters=state.adapters,
        )
        state.redemption = RedemptionService(
            store=state.store, adapters=state.adapters, catalog=state.catalog,
        )
        state.fulfillment = Fulfillment(
            store=state.store, mailer=mail, shipping=state.shipping,
            catalog=state.catalog,
        )

        logger.info("rodeotix starting: provider=%s dedup=%s db=%s",
                    settings.payment_provider, settings.dedup_backend,
                    engine.url.get_backend_name())
        try:
            yield
        finally:
            if http is None:
                await client.aclose()
            if r is not None and redis_client is None:
                await r.aclose()
            await engine.dispose()

    app = FastAPI(
        title="rodeotix",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.add_exception_handler(RodeoError, _rodeo_error)
    app.add_exception_handler(Exception, _unexpected_error)
    app.include_router(router)
    return app


def app_from_env() -> FastAPI:
    """`uvicorn --factory rodeotix.server:app_from_env`"""
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return create_app(settings)


def main() -> None:
    uvicorn.run("rodeotix.server:app_from_env", factory=True,
                host="0.0.0.0", port=8000)

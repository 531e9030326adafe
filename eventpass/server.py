from __future__ import annotations
import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi import Form
from fastapi.responses import ORJSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware
import jwt
import orjson
import redis.asyncio as redis

from .checkout import Outcome, TicketDesk
from .config import Settings
from .errors import (
    AlreadyFinalized, EventPassError, InvalidSignature, NotFound,
    ValidationError,
)
from .gateway import GatewayClient, MockGateway, RazorpayGateway
from .helpers import ct_equal, to_iso
from .infra import timings
from .infra.sql import make_async_engine
from .model.catalog import EventCatalog, UserDirectory
from .model.ledger import new_ledgers
from .model.orm import Base
from .notify import HttpMailDispatcher, LogDispatcher, NotificationDispatcher
from .tickets import TicketIssuer

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

ALREADY_FINALIZED_MESSAGES = {
    "paid": "Payment already verified",
    "failed": "Payment already failed",
}


def _payment_view(p: dict) -> dict:
    return {
        "paymentId": p["id"],
        "eventId": p["event_id"],
        "status": p["status"],
        "amount": int(p["amount"]),
        "currency": p["currency"],
        "gatewayOrderId": p["gateway_order_id"],
        "gatewayPaymentId": p["gateway_payment_id"],
        "createdAt": to_iso(p["created_at"]),
        "finalizedAt": to_iso(p["finalized_at"]),
    }


def _registration_view(r: dict) -> dict:
    # the token itself is only ever sent with the ticket mail
    return {
        "registrationId": r["id"],
        "eventId": r["event_id"],
        "status": r["status"],
        "createdAt": to_iso(r["created_at"]),
        "credentialIssued": bool(r["credential_token"]),
    }


def _build_gateway(settings: Settings) -> GatewayClient:
    if settings.gateway == "razorpay":
        return RazorpayGateway(
            settings.gateway_key_id,
            settings.gateway_key_secret,
            api_url=settings.gateway_api_url,
            timeout=settings.gateway_timeout,
        )
    return MockGateway(settings.gateway_key_id, settings.gateway_key_secret)


def _build_dispatcher(settings: Settings) -> NotificationDispatcher:
    if settings.mail_backend == "http":
        return HttpMailDispatcher(
            settings.mail_api_url,
            settings.mail_api_key,
            settings.mail_from,
            timeout=settings.mail_timeout,
        )
    return LogDispatcher()


def create_app(
    settings: Optional[Settings] = None,
    *,
    gateway: Optional[GatewayClient] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    redis_client: Optional[redis.Redis] = None,
) -> FastAPI:
    """
    App factory. ``uvicorn --factory eventpass.server:create_app`` reads the
    settings from the environment; tests pass their own settings and fakes.
    """
    settings = settings or Settings.from_env()
    settings.validate()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    engine, SessionAsync, gated = make_async_engine(
        settings.database_url,
        settings.db_gate_limit,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
    )

    app = FastAPI(
        title="EventPass",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.state.settings = settings
    app.state.engine = engine

    bearer = HTTPBearer(auto_error=False)

    async def get_db() -> AsyncSession:
        async with SessionAsync() as session:
            yield session

    async def ticket_desk(db: AsyncSession = Depends(get_db)) -> TicketDesk:
        if settings.ledger_backend == "pg":
            payments, registrations = new_ledgers("pg", db=db, gated=gated)
        else:
            payments, registrations = new_ledgers("redis", r=app.state.redis)
        issuer = TicketIssuer(
            registrations=registrations,
            dispatcher=app.state.dispatcher,
            secret=settings.ticket_secret,
            ttl_seconds=settings.ticket_ttl_seconds,
        )
        return TicketDesk(
            events=EventCatalog(db=db, gated=gated),
            users=UserDirectory(db=db, gated=gated),
            payments=payments,
            registrations=registrations,
            gateway=app.state.gateway,
            issuer=issuer,
            gateway_secret=settings.gateway_key_secret,
            webhook_secret=settings.gateway_webhook_secret,
            currency=settings.currency,
        )

    async def current_user_id(
        creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    ) -> str:
        if creds is None:
            raise HTTPException(401, detail="Not authorized, no token")
        try:
            claims = jwt.decode(
                creds.credentials, settings.auth_secret, algorithms=["HS256"]
            )
        except jwt.InvalidTokenError:
            raise HTTPException(401, detail="Not authorized, token failed")
        user_id = claims.get("sub")
        if not isinstance(user_id, str) or not user_id:
            raise HTTPException(401, detail="Not authorized, token failed")
        return user_id

    def require_admin(request: Request) -> str:
        user = request.session.get("admin_user")
        if not user:
            raise HTTPException(401, detail="admin login required")
        return user

    # ---
    # errors
    # ---
    @app.exception_handler(EventPassError)
    async def _eventpass_error(request: Request, exc: EventPassError):
        return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception):
        logger.error("unhandled error on %s %s", request.method,
                     request.url.path, exc_info=exc)
        return ORJSONResponse(
            {"success": False, "error": "InternalError",
             "message": "Internal error"},
            status_code=500,
        )

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        logger.info(
            "EventPass starting: ledger=%s gateway=%s mail=%s",
            settings.ledger_backend, settings.gateway, settings.mail_backend,
        )

    @app.on_event("startup")
    async def _db_init():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @app.on_event("startup")
    async def _redis_start():
        if settings.ledger_backend != "redis":
            return
        app.state.redis = redis_client or redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )

    @app.on_event("startup")
    async def _collaborators_start():
        app.state.gateway = gateway or _build_gateway(settings)
        app.state.dispatcher = dispatcher or _build_dispatcher(settings)

    @app.on_event("shutdown")
    async def _collaborators_stop():
        await app.state.gateway.aclose()
        await app.state.dispatcher.aclose()

    @app.on_event("shutdown")
    async def _redis_stop():
        r = getattr(app.state, "redis", None)
        if r is not None and redis_client is None:
            await r.aclose()
        app.state.redis = None

    @app.on_event("shutdown")
    async def _engine_stop():
        await engine.dispose()

    # ----------------------------
    # API: create order
    # ----------------------------
    @app.post("/api/payments/create-order/{event_id}")
    async def create_order(
        event_id: str,
        user_id: str = Depends(current_user_id),
        desk: TicketDesk = Depends(ticket_desk),
    ):
        order = await desk.create_order(user_id, event_id)
        return {
            "success": True,
            "orderId": order.gateway_order_id,
            "amount": order.amount,
            "currency": order.currency,
            "gatewayPublicKey": desk.gateway.public_key,
            "paymentId": order.payment_id,
        }

    # ----------------------------
    # API: verify (checkout callback posted by the client)
    # ----------------------------
    @app.post("/api/payments/verify")
    async def verify_payment(
        request: Request,
        user_id: str = Depends(current_user_id),
        desk: TicketDesk = Depends(ticket_desk),
    ):
        try:
            payload = orjson.loads(await request.body())
        except orjson.JSONDecodeError as e:
            raise ValidationError("Missing payment details") from e
        if not isinstance(payload, dict):
            raise ValidationError("Missing payment details")
        result = await desk.finalize(
            payload.get("paymentId"),
            payload.get("gatewayOrderId"),
            payload.get("gatewayPaymentId"),
            payload.get("signature"),
            user_id=user_id,
        )
        if result.outcome is Outcome.ALREADY_FINALIZED:
            raise AlreadyFinalized(ALREADY_FINALIZED_MESSAGES.get(
                result.status, "Payment already finalized"))
        if result.outcome is Outcome.REJECTED:
            raise InvalidSignature("Invalid payment signature")
        return {
            "success": True,
            "message": "Payment verified & ticket issued",
            "registrationId": result.registration_id,
            "dispatched": result.dispatched,
        }

    # ----------------------------
    # API: payment status (polled by the client)
    # ----------------------------
    @app.get("/api/payments/{payment_id}")
    async def get_payment(
        payment_id: str,
        user_id: str = Depends(current_user_id),
        desk: TicketDesk = Depends(ticket_desk),
    ):
        p = await desk.payments.get_payment(payment_id)
        if not p or p["user_id"] != user_id:
            raise NotFound("Payment not found")
        return _payment_view(p)

    # ----------------------------
    # API: the caller's own registrations
    # ----------------------------
    @app.get("/api/registrations/my")
    async def my_registrations(
        user_id: str = Depends(current_user_id),
        desk: TicketDesk = Depends(ticket_desk),
    ):
        regs = await desk.registrations.list_for_user(user_id)
        return {"items": [_registration_view(r) for r in regs]}

    # ----------------------------
    # Webhook endpoint (gateway -> server)
    # ----------------------------
    @app.post("/payments/webhook")
    async def payments_webhook(
        request: Request,
        desk: TicketDesk = Depends(ticket_desk),
    ):
        payload = await request.body()
        sig = request.headers.get("x-gateway-signature")
        result = await desk.handle_webhook(payload, sig)
        if result is None:
            return {"ok": True, "ignored": True}
        if result.outcome is Outcome.ALREADY_FINALIZED:
            return {"ok": True, "idempotent": True,
                    "status": result.status}
        return {"ok": True, "status": result.status}

    # ----------------------------
    # MockPay: produce the callback a checkout widget would post
    # ----------------------------
    @app.post("/mockpay/{payment_id}/complete")
    async def mockpay_complete(
        payment_id: str,
        user_id: str = Depends(current_user_id),
        desk: TicketDesk = Depends(ticket_desk),
    ):
        if not isinstance(desk.gateway, MockGateway):
            raise HTTPException(404, detail="mock gateway disabled")
        p = await desk.payments.get_payment(payment_id)
        if not p or p["user_id"] != user_id:
            raise NotFound("Payment not found")
        callback = desk.gateway.complete_payment(p["gateway_order_id"])
        callback["paymentId"] = payment_id
        return callback

    # ----------------------------
    # Admin
    # ----------------------------
    @app.post("/admin/login")
    async def admin_login(
        request: Request,
        username: str = Form(...),
        password: str = Form(...),
    ):
        ok_user = ct_equal(username.strip(), settings.admin_username)
        ok_pass = ct_equal(password, settings.admin_password)
        if not (ok_user and ok_pass):
            raise HTTPException(401, detail="Invalid credentials.")
        request.session["admin_user"] = username.strip()
        return {"ok": True}

    @app.post("/admin/logout")
    async def admin_logout(request: Request):
        request.session.clear()
        return {"ok": True}

    @app.get("/api/admin/payments")
    async def api_admin_payments(
        limit: int = 200,
        _admin: str = Depends(require_admin),
        desk: TicketDesk = Depends(ticket_desk),
    ):
        limit = max(1, min(limit, 500))
        total, items = await desk.payments.recent_payments(limit=limit)
        return {
            "items": [dict(_payment_view(p), userId=p["user_id"])
                      for p in items],
            "total": total,
            "limit": limit,
        }

    @app.post("/api/admin/registrations/{registration_id}/reissue")
    async def api_admin_reissue(
        registration_id: str,
        admin: str = Depends(require_admin),
        desk: TicketDesk = Depends(ticket_desk),
    ):
        logger.info("admin %s requested reissue of %s", admin,
                    registration_id)
        dispatched = await desk.reissue(registration_id)
        return {"ok": True, "registrationId": registration_id,
                "dispatched": dispatched}

    @app.get("/api/admin/timings")
    async def api_admin_timings(_admin: str = Depends(require_admin)):
        return {"items": timings.aggregates()}

    return app

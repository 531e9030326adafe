"""
Checkout pipeline: order creation, payment finalization, registration and
ticket issuance.

The created -> paid transition is the only serialization point. Whoever wins
``compare_and_set_status`` registers the user, mints the credential and
dispatches it; every other caller (client retries, duplicate webhook
deliveries, concurrent posts of the same callback) sees ``AlreadyFinalized``
and touches nothing.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
import json
import logging

from . import signature
from .errors import (
    AlreadyRegistered, InternalError, InvalidSignature, NotFound,
    RegistrationClosed, UpstreamError, ValidationError,
)
from .gateway import GatewayClient
from .helpers import now_ts, to_minor_units
from .infra.timings import timeit
from .model.catalog import EventCatalog, UserDirectory
from .model.ledger import PaymentLedger, RegistrationLedger
from .notify import Recipient
from .tickets import TicketIssuer

logger = logging.getLogger(__name__)

CREATED = "created"
PAID = "paid"
FAILED = "failed"


class Outcome(str, Enum):
    FINALIZED = "Finalized"
    ALREADY_FINALIZED = "AlreadyFinalized"
    REJECTED = "Rejected"


@dataclass(frozen=True)
class OrderCreated:
    payment_id: str
    gateway_order_id: str
    amount: int
    currency: str


@dataclass(frozen=True)
class FinalizeResult:
    outcome: Outcome
    payment_id: str
    status: str
    registration_id: Optional[str] = None
    dispatched: bool = False


@dataclass
class TicketDesk:
    events: EventCatalog
    users: UserDirectory
    payments: PaymentLedger
    registrations: RegistrationLedger
    gateway: GatewayClient
    issuer: TicketIssuer
    gateway_secret: str
    webhook_secret: str
    currency: str = "INR"
    clock: Callable[[], float] = now_ts

    # ----------------------------
    # Order creation
    # ----------------------------
    async def create_order(self, user_id: str, event_id: str) -> OrderCreated:
        async with timeit("catalog.get_event"):
            event = await self.events.get_event(event_id)
        if not event:
            raise NotFound("Event not found")

        if self.clock() > float(event["registration_deadline"]):
            raise RegistrationClosed("Registrations are closed for this event")

        async with timeit("registration.find_active"):
            active = await self.registrations.find_active(user_id, event_id)
        if active:
            raise AlreadyRegistered(
                "You have already registered and paid for this event"
            )

        amount = to_minor_units(event["price"])
        receipt = f"r_{int(self.clock())}"
        async with timeit("gateway.create_order"):
            try:
                order = await self.gateway.create_order(
                    amount, self.currency, receipt
                )
            except UpstreamError:
                raise
            except Exception as e:
                logger.exception("gateway order creation failed")
                raise UpstreamError("Failed to create payment order") from e

        try:
            async with timeit("payment.create"):
                payment = await self.payments.create_payment({
                    "user_id": user_id,
                    "event_id": event_id,
                    "organizer_id": event["organizer_id"],
                    "amount": order["amount"],
                    "currency": order["currency"],
                    "gateway_order_id": order["id"],
                    "created_at": self.clock(),
                })
        except Exception as e:
            # the remote order stays orphaned; nothing retries it
            logger.exception(
                "gateway order %s created but payment not persisted",
                order["id"],
            )
            raise InternalError("Failed to create payment order") from e

        logger.info("payment %s created for order %s (%d %s)",
                    payment["id"], order["id"], order["amount"],
                    order["currency"])
        return OrderCreated(
            payment_id=payment["id"],
            gateway_order_id=order["id"],
            amount=order["amount"],
            currency=order["currency"],
        )

    # ----------------------------
    # Finalization
    # ----------------------------
    async def finalize(
        self,
        payment_id: Optional[str],
        gateway_order_id: Optional[str],
        gateway_payment_id: Optional[str],
        sig: Optional[str],
        *,
        user_id: Optional[str] = None,
    ) -> FinalizeResult:
        fields = (payment_id, gateway_order_id, gateway_payment_id, sig)
        if not all(isinstance(f, str) and f.strip() for f in fields):
            raise ValidationError("Missing payment details")

        async with timeit("payment.get"):
            payment = await self.payments.get_payment(payment_id)
        if not payment or (user_id and payment["user_id"] != user_id):
            raise NotFound("Payment not found")

        if payment["status"] != CREATED:
            logger.info("payment %s already %s; ignoring callback",
                        payment_id, payment["status"])
            return FinalizeResult(
                outcome=Outcome.ALREADY_FINALIZED,
                payment_id=payment_id,
                status=payment["status"],
            )

        # the signature must cover the order this payment was created for
        order_matches = gateway_order_id == payment["gateway_order_id"]
        if not (order_matches and signature.verify(
                self.gateway_secret, payment["gateway_order_id"],
                gateway_payment_id, sig)):
            logger.warning("rejected callback for payment %s: bad signature",
                           payment_id)
            return FinalizeResult(
                outcome=Outcome.REJECTED,
                payment_id=payment_id,
                status=payment["status"],
            )

        return await self._settle(payment, gateway_payment_id)

    async def fail(self, payment_id: str, reason: str = "") -> FinalizeResult:
        async with timeit("payment.cas"):
            won = await self.payments.compare_and_set_status(
                payment_id, CREATED, FAILED,
                failure_reason=reason or "gateway reported failure",
                at=self.clock(),
            )
        if won:
            logger.info("payment %s marked failed: %s", payment_id, reason)
            return FinalizeResult(
                outcome=Outcome.FINALIZED, payment_id=payment_id,
                status=FAILED,
            )
        payment = await self.payments.get_payment(payment_id)
        if not payment:
            raise NotFound("Payment not found")
        return FinalizeResult(
            outcome=Outcome.ALREADY_FINALIZED, payment_id=payment_id,
            status=payment["status"],
        )

    async def handle_webhook(
            self, payload: bytes, sig: Optional[str]
    ) -> Optional[FinalizeResult]:
        """
        Gateway-to-server notification, authenticated over the raw body.
        Returns None for event types we do not act on.
        """
        if not signature.verify_webhook(self.webhook_secret, payload, sig):
            logger.warning("rejected webhook: bad signature")
            raise InvalidSignature("Invalid webhook signature")
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError("Invalid JSON") from e
        if not isinstance(event, dict):
            raise ValidationError("Invalid webhook payload")

        kind = event.get("event", "")
        order_id = event.get("order_id")
        if kind not in ("payment.captured", "payment.failed"):
            logger.info("ignoring webhook event %r", kind)
            return None
        if not isinstance(order_id, str) or not order_id:
            raise ValidationError("missing order_id")

        async with timeit("payment.get_by_order"):
            payment = await self.payments.get_payment_by_order(order_id)
        if not payment:
            raise NotFound("Payment not found")

        if kind == "payment.failed":
            return await self.fail(
                payment["id"], str(event.get("reason") or "")
            )

        gateway_payment_id = event.get("payment_id")
        if not isinstance(gateway_payment_id, str) or not gateway_payment_id:
            raise ValidationError("missing payment_id")
        if payment["status"] != CREATED:
            return FinalizeResult(
                outcome=Outcome.ALREADY_FINALIZED,
                payment_id=payment["id"],
                status=payment["status"],
            )
        return await self._settle(payment, gateway_payment_id)

    async def _settle(
            self, payment: dict, gateway_payment_id: str
    ) -> FinalizeResult:
        payment_id = payment["id"]
        async with timeit("payment.cas"):
            won = await self.payments.compare_and_set_status(
                payment_id, CREATED, PAID,
                gateway_payment_id=gateway_payment_id,
                at=self.clock(),
            )
        if not won:
            logger.info("payment %s lost the paid transition (duplicate)",
                        payment_id)
            current = await self.payments.get_payment(payment_id)
            return FinalizeResult(
                outcome=Outcome.ALREADY_FINALIZED,
                payment_id=payment_id,
                status=current["status"] if current else PAID,
            )
        logger.info("payment %s paid (gateway payment %s)",
                    payment_id, gateway_payment_id)

        try:
            registration_id, dispatched = await self._register_and_issue(
                payment
            )
        except Exception as e:
            logger.exception(
                "payment %s is paid but ticket issuance failed", payment_id
            )
            raise InternalError("Verification failed") from e

        return FinalizeResult(
            outcome=Outcome.FINALIZED,
            payment_id=payment_id,
            status=PAID,
            registration_id=registration_id,
            dispatched=dispatched,
        )

    async def _register_and_issue(self, payment: dict) -> tuple[str, bool]:
        async with timeit("registration.find_or_create"):
            registration_id, created = await self.registrations.find_or_create(
                payment["user_id"], payment["event_id"], payment["id"],
                created_at=self.clock(),
            )
        if not created:
            logger.warning(
                "payment %s settled onto existing registration %s",
                payment["id"], registration_id,
            )
        return registration_id, await self._issue_and_deliver(
            registration_id, payment["user_id"], payment["event_id"]
        )

    async def _issue_and_deliver(
            self, registration_id: str, user_id: str, event_id: str
    ) -> bool:
        event = await self.events.get_event(event_id)
        ticket = await self.issuer.issue(
            registration_id, event_title=(event or {}).get("title", "")
        )
        user = await self.users.get_user(user_id)
        if not user or not user.get("email"):
            logger.error("no mail address for user %s; ticket %s not sent",
                         user_id, registration_id)
            return False
        return await self.issuer.deliver(
            ticket, Recipient(email=user["email"], name=user.get("name", ""))
        )

    # ----------------------------
    # Operator reissue
    # ----------------------------
    async def reissue(self, registration_id: str) -> bool:
        """Explicit re-mint and re-send; never triggered by verification."""
        registration = await self.registrations.get_registration(
            registration_id
        )
        if not registration:
            raise NotFound("Registration not found")
        if registration["status"] != PAID:
            raise ValidationError("Registration is not paid")
        logger.info("reissuing ticket for registration %s", registration_id)
        return await self._issue_and_deliver(
            registration_id, registration["user_id"], registration["event_id"]
        )

"""
Admission credentials.

A credential is an HS256 JWT whose only application claim is the
registration id. It expires a fixed time after issuance (2 days by default)
and is signed with a key reserved for tickets, so a check-in system holding
that key can validate it offline via ``decode_credential``. The token is
rendered as a QR code at error-correction level H, which stays readable
from a scratched phone screen or in poor light.
"""
from __future__ import annotations
import asyncio
import io
import logging
from typing import Callable

import jwt
import qrcode
import qrcode.constants

from .config import TICKET_TTL_SECONDS
from .errors import (
    DispatchError, ExpiredCredential, InvalidCredential, NotFound,
)
from .helpers import now_ts
from .infra.timings import timeit
from .model.ledger import RegistrationLedger
from .notify import NotificationDispatcher, Recipient, Ticket

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
CLAIM = "registrationId"
QR_WIDTH_PX = 800
QR_BORDER = 4
DEFAULT_LEEWAY_SECONDS = 30


def mint_credential(
    registration_id: str, secret: str,
    ttl_seconds: int = TICKET_TTL_SECONDS, issued_at: float | None = None,
) -> str:
    iat = int(issued_at if issued_at is not None else now_ts())
    return jwt.encode(
        {CLAIM: registration_id, "iat": iat, "exp": iat + int(ttl_seconds)},
        secret,
        algorithm=ALGORITHM,
    )


def decode_credential(
    token: str, secret: str, leeway: float = DEFAULT_LEEWAY_SECONDS
) -> str:
    """Returns the registration id a valid credential was issued for."""
    try:
        claims = jwt.decode(
            token, secret,
            algorithms=[ALGORITHM],
            leeway=leeway,
            options={"require": ["exp", "iat", CLAIM]},
        )
    except jwt.ExpiredSignatureError as e:
        raise ExpiredCredential("Ticket has expired") from e
    except jwt.InvalidTokenError as e:
        raise InvalidCredential("Ticket is not valid") from e
    registration_id = claims[CLAIM]
    if not isinstance(registration_id, str) or not registration_id:
        raise InvalidCredential("Ticket is not valid")
    return registration_id


def render_qr(
    token: str, width: int = QR_WIDTH_PX, border: int = QR_BORDER
) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        border=border,
    )
    qr.add_data(token)
    qr.make(fit=True)
    # scale modules so the whole image lands close to `width` pixels
    qr.box_size = max(1, width // (qr.modules_count + 2 * border))
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf)
    return buf.getvalue()


class TicketIssuer:
    def __init__(
        self,
        *,
        registrations: RegistrationLedger,
        dispatcher: NotificationDispatcher,
        secret: str,
        ttl_seconds: int = TICKET_TTL_SECONDS,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self.registrations = registrations
        self.dispatcher = dispatcher
        self.secret = secret
        self.ttl = ttl_seconds
        self.clock = clock

    async def issue(self, registration_id: str, event_title: str = "") -> Ticket:
        token = mint_credential(
            registration_id, self.secret, self.ttl, issued_at=self.clock()
        )
        async with timeit("registration.set_credential"):
            stored = await self.registrations.set_credential(
                registration_id, token
            )
        if not stored:
            raise NotFound("Registration not found")

        async with timeit("ticket.render"):
            image = await asyncio.to_thread(render_qr, token)
        return Ticket(
            registration_id=registration_id,
            token=token,
            image=image,
            event_title=event_title,
        )

    async def deliver(self, ticket: Ticket, recipient: Recipient) -> bool:
        """False when the dispatcher failed; the ticket stays issued."""
        try:
            async with timeit("ticket.dispatch"):
                await self.dispatcher.send_ticket(recipient, ticket)
        except DispatchError as e:
            logger.error(
                "ticket dispatch failed for registration %s: %s",
                ticket.registration_id, e,
            )
            return False
        except Exception:
            # the payment is already paid; report, never roll back
            logger.exception("dispatcher fault for registration %s",
                             ticket.registration_id)
            return False
        logger.info("ticket dispatched for registration %s",
                    ticket.registration_id)
        return True

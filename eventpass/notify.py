from abc import ABC, abstractmethod
from dataclasses import dataclass
import base64
import html
import logging

import httpx

from .errors import DispatchError

logger = logging.getLogger(__name__)

TICKET_SUBJECT = "Your event ticket"
TICKET_FILENAME = "event-ticket.png"


@dataclass(frozen=True)
class Recipient:
    email: str
    name: str = ""


@dataclass(frozen=True)
class Ticket:
    registration_id: str
    token: str
    image: bytes  # PNG
    event_title: str = ""


def render_ticket_html(recipient: Recipient, ticket: Ticket) -> str:
    title = html.escape(ticket.event_title)
    event = f" for <b>{title}</b>" if title else ""
    return (
        "<h2>Payment successful</h2>"
        f"<p>Hello {html.escape(recipient.name or recipient.email)},</p>"
        f"<p>Your QR ticket{event} is attached.</p>"
        "<p><b>Do not share it. One-time entry only.</b></p>"
    )


class NotificationDispatcher(ABC):
    @abstractmethod
    async def send_ticket(self, recipient: Recipient, ticket: Ticket) -> None:
        """Deliver the ticket or raise DispatchError."""

    async def aclose(self) -> None:
        return None


class LogDispatcher(NotificationDispatcher):
    async def send_ticket(self, recipient: Recipient, ticket: Ticket) -> None:
        logger.info(
            "ticket for registration %s would be mailed to %s (%d bytes)",
            ticket.registration_id, recipient.email, len(ticket.image),
        )


class HttpMailDispatcher(NotificationDispatcher):
    """Posts the ticket mail to a transactional-mail HTTP API."""

    def __init__(
        self, api_url: str, api_key: str, sender: str,
        timeout: float = 10.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_url = api_url
        self.sender = sender
        self._own_http = http is None
        headers = {"authorization": f"Bearer {api_key}"} if api_key else {}
        self.http = http or httpx.AsyncClient(
            timeout=timeout, headers=headers
        )

    async def send_ticket(self, recipient: Recipient, ticket: Ticket) -> None:
        message = {
            "from": self.sender,
            "to": [recipient.email],
            "subject": TICKET_SUBJECT,
            "html": render_ticket_html(recipient, ticket),
            "attachments": [{
                "filename": TICKET_FILENAME,
                "content_type": "image/png",
                "content": base64.b64encode(ticket.image).decode(),
            }],
        }
        try:
            r = await self.http.post(self.api_url, json=message)
            r.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DispatchError(f"mail API rejected ticket mail: {e}") from e

    async def aclose(self) -> None:
        if self._own_http:
            await self.http.aclose()

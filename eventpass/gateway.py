from abc import ABC, abstractmethod
from typing import TypedDict
import logging
import uuid

import httpx

from .errors import UpstreamError
from .signature import sign

logger = logging.getLogger(__name__)


# ----------------------------
# Gateway Client Interface
# ----------------------------
class GatewayOrder(TypedDict):
    id: str
    amount: int  # minor units
    currency: str


class GatewayClient(ABC):
    public_key: str

    @abstractmethod
    async def create_order(
            self, amount: int, currency: str, receipt: str
    ) -> GatewayOrder: ...

    async def aclose(self) -> None:
        return None


# ----------------------------
# MockGateway implementation
# ----------------------------
class MockGateway(GatewayClient):
    """
    Hands out order ids locally and can produce the signed callback a real
    checkout widget would post back after the user pays.
    """

    def __init__(self, key_id: str, key_secret: str) -> None:
        self.public_key = key_id
        self._secret = key_secret

    async def create_order(
            self, amount: int, currency: str, receipt: str
    ) -> GatewayOrder:
        return {
            "id": f"order_{uuid.uuid4().hex[:14]}",
            "amount": int(amount),
            "currency": currency,
        }

    def complete_payment(self, order_id: str) -> dict:
        payment_id = f"pay_{uuid.uuid4().hex[:14]}"
        return {
            "gatewayOrderId": order_id,
            "gatewayPaymentId": payment_id,
            "signature": sign(self._secret, order_id, payment_id),
        }


# ----------------------------
# Razorpay-style REST implementation
# ----------------------------
class RazorpayGateway(GatewayClient):
    def __init__(
        self, key_id: str, key_secret: str,
        api_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.public_key = key_id
        self._own_http = http is None
        self.http = http or httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            auth=(key_id, key_secret),
            timeout=timeout,
        )

    async def create_order(
            self, amount: int, currency: str, receipt: str
    ) -> GatewayOrder:
        try:
            r = await self.http.post("/orders", json={
                "amount": int(amount),
                "currency": currency,
                "receipt": receipt,
            })
            r.raise_for_status()
            j = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("gateway order creation failed: %s", e)
            raise UpstreamError("Failed to create payment order") from e
        if not j.get("id"):
            raise UpstreamError("Gateway returned an order without id")
        return {
            "id": j["id"],
            "amount": int(j.get("amount", amount)),
            "currency": j.get("currency", currency),
        }

    async def aclose(self) -> None:
        if self._own_http:
            await self.http.aclose()

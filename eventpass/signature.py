import hmac
import hashlib
from typing import Optional


def sign(secret: str, order_id: str, gateway_payment_id: str) -> str:
    body = f"{order_id}|{gateway_payment_id}".encode()
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify(
    secret: str, order_id: str, gateway_payment_id: str,
    signature: Optional[str],
) -> bool:
    """Checks a checkout callback signature. Never raises, never mutates."""
    if not isinstance(signature, str) or not signature:
        return False
    expected = sign(secret, order_id, gateway_payment_id)
    return hmac.compare_digest(expected.encode(), signature.encode())


def sign_webhook(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_webhook(
    secret: str, payload: bytes, signature: Optional[str]
) -> bool:
    if not isinstance(signature, str) or not signature:
        return False
    expected = sign_webhook(secret, payload)
    return hmac.compare_digest(expected.encode(), signature.encode())

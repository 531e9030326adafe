# model/ledger/__init__.py
from typing import Optional, Tuple, Union
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...infra.sql import Gated
from . import _postgres, _redis

PaymentLedger = Union[_postgres.PaymentLedger, _redis.PaymentLedger]
RegistrationLedger = Union[
    _postgres.RegistrationLedger, _redis.RegistrationLedger
]


# Factory keeps server.py simple and constructor-agnostic:
def new_ledgers(
    backend: str,
    *,
    db: Optional[AsyncSession] = None,
    r: Optional[redis.Redis] = None,
    gated: Optional[Gated] = None,
) -> Tuple[PaymentLedger, RegistrationLedger]:
    if backend == "pg":
        if db is None:
            raise RuntimeError("ledger(pg) requires db=AsyncSession")
        if gated is None:
            raise RuntimeError("ledger(pg) requires gated=Gated")
        return (
            _postgres.PaymentLedger(db=db, gated=gated),
            _postgres.RegistrationLedger(db=db, gated=gated),
        )
    if backend == "redis":
        if r is None:
            raise RuntimeError("ledger(redis) requires r=redis.Redis")
        return (
            _redis.PaymentLedger(r=r),
            _redis.RegistrationLedger(r=r),
        )
    raise RuntimeError(f"unknown ledger backend {backend!r}")


__all__ = [
    "PaymentLedger", "RegistrationLedger", "new_ledgers",
]

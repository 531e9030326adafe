"""
SQL ledger backend (PostgreSQL in production, SQLite in tests).

Both state-changing operations are single conditional statements so that the
database, not the application, decides who wins a race:

- ``compare_and_set_status`` is ``UPDATE ... WHERE status = :expected``
- ``find_or_create`` is ``INSERT ... ON CONFLICT (user_id, event_id) DO
  NOTHING`` against the unique (user, event) constraint
"""
from __future__ import annotations
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import new_id, now_ts
from ...infra.sql import Gated

PAYMENT_COLUMNS = """
    id, user_id, event_id, organizer_id, amount, currency, gateway_order_id,
    gateway_payment_id, status, failure_reason, created_at, finalized_at
"""

REGISTRATION_COLUMNS = """
    id, user_id, event_id, payment_id, status, credential_token, created_at
"""


class PaymentLedger:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def create_payment(self, mapping: Dict[str, Any]) -> Dict[str, Any]:
        row = {
            "id": mapping.get("id") or new_id(),
            "user_id": mapping["user_id"],
            "event_id": mapping["event_id"],
            "organizer_id": mapping["organizer_id"],
            "amount": int(mapping["amount"]),
            "currency": mapping["currency"],
            "gateway_order_id": mapping["gateway_order_id"],
            "created_at": float(mapping.get("created_at") or now_ts()),
        }
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO payments(
                    id, user_id, event_id, organizer_id, amount, currency,
                    gateway_order_id, status, created_at
                  ) VALUES (
                    :id, :user_id, :event_id, :organizer_id, :amount,
                    :currency, :gateway_order_id, 'created', :created_at
                  )
                """), row)
        row.update(status="created", gateway_payment_id=None,
                   failure_reason=None, finalized_at=None)
        return row

    async def get_payment(self, payment_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(f"""
                  SELECT {PAYMENT_COLUMNS} FROM payments WHERE id=:id
                """), {"id": payment_id})).mappings().first()
                return dict(row) if row else None

    async def get_payment_by_order(
            self, gateway_order_id: str
    ) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(f"""
                  SELECT {PAYMENT_COLUMNS} FROM payments
                  WHERE gateway_order_id=:oid
                """), {"oid": gateway_order_id})).mappings().first()
                return dict(row) if row else None

    async def compare_and_set_status(
        self,
        payment_id: str,
        expected: str,
        new: str,
        *,
        gateway_payment_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        at: Optional[float] = None,
    ) -> bool:
        """True only for the one caller whose write saw ``expected``."""
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  UPDATE payments SET
                    status=:new,
                    gateway_payment_id=COALESCE(:gpid, gateway_payment_id),
                    failure_reason=COALESCE(:reason, failure_reason),
                    finalized_at=:at
                  WHERE id=:id AND status=:expected
                  RETURNING id
                """), {
                    "id": payment_id,
                    "expected": expected,
                    "new": new,
                    "gpid": gateway_payment_id,
                    "reason": failure_reason,
                    "at": float(at if at is not None else now_ts()),
                })).first()
        return row is not None

    async def recent_payments(
            self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        async with self.gated():
            async with self.db.begin():
                total = (await self.db.execute(
                    text("SELECT COUNT(*) FROM payments")
                )).scalar_one()
                rows = (await self.db.execute(text(f"""
                  SELECT {PAYMENT_COLUMNS} FROM payments
                  ORDER BY created_at DESC LIMIT :lim
                """), {"lim": int(limit)})).mappings().all()
        return int(total), [dict(r) for r in rows]


class RegistrationLedger:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def find_active(
            self, user_id: str, event_id: str
    ) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(f"""
                  SELECT {REGISTRATION_COLUMNS} FROM registrations
                  WHERE user_id=:uid AND event_id=:eid
                    AND status IN ('paid', 'checked_in')
                """), {"uid": user_id, "eid": event_id})).mappings().first()
                return dict(row) if row else None

    async def get_registration(
            self, registration_id: str
    ) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(f"""
                  SELECT {REGISTRATION_COLUMNS} FROM registrations
                  WHERE id=:id
                """), {"id": registration_id})).mappings().first()
                return dict(row) if row else None

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text(f"""
                  SELECT {REGISTRATION_COLUMNS} FROM registrations
                  WHERE user_id=:uid
                  ORDER BY created_at DESC
                """), {"uid": user_id})).mappings().all()
        return [dict(r) for r in rows]

    async def find_or_create(
        self, user_id: str, event_id: str, payment_id: str,
        *, created_at: Optional[float] = None,
    ) -> Tuple[str, bool]:
        """
        Returns (registration_id, created). An existing registration for the
        pair is returned unchanged, whatever payment it belongs to.
        """
        async with self.gated():
            async with self.db.begin():
                inserted = (await self.db.execute(text("""
                  INSERT INTO registrations(
                    id, user_id, event_id, payment_id, status, created_at
                  ) VALUES (
                    :id, :uid, :eid, :pid, 'paid', :created_at
                  )
                  ON CONFLICT (user_id, event_id) DO NOTHING
                  RETURNING id
                """), {
                    "id": new_id(),
                    "uid": user_id,
                    "eid": event_id,
                    "pid": payment_id,
                    "created_at": float(created_at or now_ts()),
                })).first()
                if inserted is not None:
                    return inserted[0], True

                existing = (await self.db.execute(text("""
                  SELECT id FROM registrations
                  WHERE user_id=:uid AND event_id=:eid
                """), {"uid": user_id, "eid": event_id})).first()
        if existing is None:
            # conflict row vanished; registrations are never deleted
            raise RuntimeError(
                f"registration for ({user_id}, {event_id}) disappeared"
            )
        return existing[0], False

    async def set_credential(self, registration_id: str, token: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  UPDATE registrations SET credential_token=:token
                  WHERE id=:id
                  RETURNING id
                """), {"id": registration_id, "token": token})).first()
        return row is not None

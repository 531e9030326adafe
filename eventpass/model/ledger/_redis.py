# eventpass/model/ledger/_redis.py
from __future__ import annotations
from typing import Optional, Dict, Any, List, Tuple
import redis.asyncio as redis
from redis.exceptions import WatchError

from ...helpers import new_id, now_ts


# ---- keys
def k_payment(pid: str) -> str: return f"payment:{pid}"
def k_order(oid: str) -> str: return f"payment_order:{oid}"
def k_reg(rid: str) -> str: return f"registration:{rid}"
def k_pair(uid: str, eid: str) -> str: return f"registration_pair:{uid}:{eid}"
def k_user_regs(uid: str) -> str: return f"registrations_by_user:{uid}"


RECENT_INDEX = "payments:recent"

ACTIVE_REGISTRATION_STATUSES = ("paid", "checked_in")


def _opt(v: Optional[str]) -> Optional[str]:
    return v or None


def _payment_from_hash(h: Dict[str, str]) -> Dict[str, Any]:
    finalized = h.get("finalized_at")
    return {
        "id": h["id"],
        "user_id": h["user_id"],
        "event_id": h["event_id"],
        "organizer_id": h["organizer_id"],
        "amount": int(h["amount"]),
        "currency": h["currency"],
        "gateway_order_id": h["gateway_order_id"],
        "gateway_payment_id": _opt(h.get("gateway_payment_id")),
        "status": h["status"],
        "failure_reason": _opt(h.get("failure_reason")),
        "created_at": float(h["created_at"]),
        "finalized_at": float(finalized) if finalized else None,
    }


def _registration_from_hash(h: Dict[str, str]) -> Dict[str, Any]:
    return {
        "id": h["id"],
        "user_id": h["user_id"],
        "event_id": h["event_id"],
        "payment_id": h["payment_id"],
        "status": h["status"],
        "credential_token": _opt(h.get("credential_token")),
        "created_at": float(h["created_at"]),
    }


class PaymentLedger:
    # expects a client created with decode_responses=True
    def __init__(self, *, r: redis.Redis) -> None:
        self.r = r

    async def create_payment(self, mapping: Dict[str, Any]) -> Dict[str, Any]:
        pid = mapping.get("id") or new_id()
        created_at = float(mapping.get("created_at") or now_ts())
        h = {
            "id": pid,
            "user_id": mapping["user_id"],
            "event_id": mapping["event_id"],
            "organizer_id": mapping["organizer_id"],
            "amount": str(int(mapping["amount"])),
            "currency": mapping["currency"],
            "gateway_order_id": mapping["gateway_order_id"],
            "status": "created",
            "created_at": str(created_at),
        }
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_payment(pid), mapping=h)
        pipe.set(k_order(h["gateway_order_id"]), pid)
        pipe.zadd(RECENT_INDEX, {pid: created_at})
        await pipe.execute()
        return _payment_from_hash(h)

    async def get_payment(self, payment_id: str) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_payment(payment_id))
        return _payment_from_hash(h) if h else None

    async def get_payment_by_order(
            self, gateway_order_id: str
    ) -> Optional[Dict[str, Any]]:
        pid = await self.r.get(k_order(gateway_order_id))
        if not pid:
            return None
        return await self.get_payment(pid)

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
        """
        WATCH/MULTI compare-and-set on the payment hash. A concurrent write
        aborts our EXEC; we then re-read and lose on the status check.
        """
        key = k_payment(payment_id)
        updates = {
            "status": new,
            "finalized_at": str(float(at if at is not None else now_ts())),
        }
        if gateway_payment_id is not None:
            updates["gateway_payment_id"] = gateway_payment_id
        if failure_reason is not None:
            updates["failure_reason"] = failure_reason

        async with self.r.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = await pipe.hget(key, "status")
                    if current != expected:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.hset(key, mapping=updates)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def recent_payments(
            self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        total = await self.r.zcard(RECENT_INDEX)
        pids = await self.r.zrevrange(RECENT_INDEX, 0, max(0, limit - 1))
        pipe = self.r.pipeline()
        for pid in pids:
            pipe.hgetall(k_payment(pid))
        rows = await pipe.execute()
        return int(total), [_payment_from_hash(h) for h in rows if h]


class RegistrationLedger:
    def __init__(self, *, r: redis.Redis) -> None:
        self.r = r

    async def get_registration(
            self, registration_id: str
    ) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_reg(registration_id))
        return _registration_from_hash(h) if h else None

    async def find_active(
            self, user_id: str, event_id: str
    ) -> Optional[Dict[str, Any]]:
        rid = await self.r.get(k_pair(user_id, event_id))
        if not rid:
            return None
        reg = await self.get_registration(rid)
        if reg and reg["status"] in ACTIVE_REGISTRATION_STATUSES:
            return reg
        return None

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        rids = await self.r.smembers(k_user_regs(user_id))
        pipe = self.r.pipeline()
        for rid in rids:
            pipe.hgetall(k_reg(rid))
        rows = await pipe.execute()
        regs = [_registration_from_hash(h) for h in rows if h]
        return sorted(regs, key=lambda reg: reg["created_at"], reverse=True)

    async def find_or_create(
        self, user_id: str, event_id: str, payment_id: str,
        *, created_at: Optional[float] = None,
    ) -> Tuple[str, bool]:
        # write the record and its user index first so the pair key never
        # points at nothing, then claim the pair with SET NX
        rid = new_id()
        await self.r.hset(k_reg(rid), mapping={
            "id": rid,
            "user_id": user_id,
            "event_id": event_id,
            "payment_id": payment_id,
            "status": "paid",
            "created_at": str(float(created_at or now_ts())),
        })
        await self.r.sadd(k_user_regs(user_id), rid)
        claimed = await self.r.set(k_pair(user_id, event_id), rid, nx=True)
        if claimed:
            return rid, True

        await self.r.delete(k_reg(rid))
        await self.r.srem(k_user_regs(user_id), rid)
        existing = await self.r.get(k_pair(user_id, event_id))
        return existing, False

    async def set_credential(self, registration_id: str, token: str) -> bool:
        key = k_reg(registration_id)
        if not await self.r.exists(key):
            return False
        await self.r.hset(key, "credential_token", token)
        return True

"""Read-only views of the externally owned event and user records."""
from __future__ import annotations
from typing import Optional, Dict, Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..infra.sql import Gated


class EventCatalog:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def get_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT id, title, price, registration_deadline, organizer_id
                  FROM events WHERE id=:id
                """), {"id": event_id})).mappings().first()
                return dict(row) if row else None


class UserDirectory:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT id, name, email FROM users WHERE id=:id
                """), {"id": user_id})).mappings().first()
                return dict(row) if row else None

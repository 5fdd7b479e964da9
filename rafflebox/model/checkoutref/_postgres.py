from __future__ import annotations
from typing import Optional, Dict, Any, List, Callable, AsyncContextManager
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection
import time

import orjson


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_CHECKOUT_REFS = r"""
-- structured reference handed to providers at reservation time
CREATE TABLE IF NOT EXISTS checkout_refs (
  ref_id         TEXT PRIMARY KEY,
  campaign_id    TEXT NOT NULL,
  order_id       TEXT NOT NULL,
  ticket_numbers TEXT NOT NULL,
  created_at     DOUBLE PRECISION NOT NULL,
  expires_at     DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_WEBHOOK_EVENTS_SEEN = r"""
-- provider deliveries already processed (provider:external_id:outcome)
CREATE TABLE IF NOT EXISTS webhook_events_seen (
  key        TEXT PRIMARY KEY,
  created_at DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_REFS_ORDER = r"""
CREATE INDEX IF NOT EXISTS idx_checkout_refs_order
  ON checkout_refs (campaign_id, order_id);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_CHECKOUT_REFS))
    await exec_(text(SQL_CREATE_WEBHOOK_EVENTS_SEEN))
    await exec_(text(SQL_CREATE_IDX_REFS_ORDER))


class CheckoutRefStore:
    def __init__(
        self, *, db: AsyncSession, ttl_seconds: int,
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.db = db
        self.ttl = ttl_seconds
        self.gated = gated

    async def save_reference(
            self, ref_id: str, mapping: Dict[str, Any]
    ) -> None:
        created = float(mapping.get("created_at") or time.time())
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO checkout_refs(
                    ref_id, campaign_id, order_id, ticket_numbers,
                    created_at, expires_at
                  ) VALUES (:ref_id, :c, :o, :nums, :created, :expires)
                  ON CONFLICT (ref_id) DO NOTHING
                """), {
                    "ref_id": ref_id,
                    "c": mapping["campaign_id"],
                    "o": mapping["order_id"],
                    "nums": orjson.dumps(
                        [int(n) for n in mapping["ticket_numbers"]]
                    ).decode(),
                    "created": created,
                    "expires": created + self.ttl,
                })

    async def get_reference(self, ref_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT * FROM checkout_refs
                  WHERE ref_id=:ref_id AND expires_at > :now
                """), {"ref_id": ref_id, "now": time.time()})).mappings()
                row = row.first()
        if not row:
            return None
        return {
            "ref_id": row["ref_id"],
            "campaign_id": row["campaign_id"],
            "order_id": row["order_id"],
            "ticket_numbers": orjson.loads(row["ticket_numbers"]),
            "created_at": float(row["created_at"]),
        }

    async def mark_event_seen(self, key: Optional[str]) -> bool:
        if not key:
            return True
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO webhook_events_seen(key, created_at)
                  VALUES(:k, :t)
                  ON CONFLICT (key) DO NOTHING
                  RETURNING key
                """), {"k": key, "t": time.time()})).first()
        return row is not None

    async def purge_expired(self, now: Optional[float] = None) -> int:
        now = now if now is not None else time.time()
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(text("""
                  DELETE FROM checkout_refs WHERE expires_at <= :now
                """), {"now": now})
                await self.db.execute(text("""
                  DELETE FROM webhook_events_seen WHERE created_at <= :cutoff
                """), {"cutoff": now - self.ttl})
        return int(result.rowcount or 0)

    async def list_for_order(
            self, campaign_id: str, order_id: str
    ) -> List[str]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                  SELECT ref_id FROM checkout_refs
                  WHERE campaign_id=:c AND order_id=:o
                  ORDER BY created_at
                """), {"c": campaign_id, "o": order_id})).all()
        return [r[0] for r in rows]

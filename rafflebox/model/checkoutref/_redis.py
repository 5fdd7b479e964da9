# checkoutref/_redis.py
from __future__ import annotations
from typing import Optional, Dict, Any, List
import time
import orjson
import redis.asyncio as redis


# ---- keys
def k_ref(ref_id: str) -> str: return f"ref:{ref_id}"
def k_order_refs(campaign_id: str, order_id: str) -> str:
    return f"orderrefs:{campaign_id}:{order_id}"
def k_seen(key: str) -> str: return f"seen:{key}"


class CheckoutRefStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def save_reference(
            self, ref_id: str, mapping: Dict[str, Any]) -> None:
        # hash values are strings with decode_responses=True
        h = {
            "campaign_id": mapping["campaign_id"],
            "order_id": mapping["order_id"],
            "ticket_numbers": orjson.dumps(
                [int(n) for n in mapping["ticket_numbers"]]
            ).decode(),
            "created_at": str(float(mapping.get("created_at") or time.time())),
        }
        order_key = k_order_refs(mapping["campaign_id"], mapping["order_id"])
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_ref(ref_id), mapping=h)
        pipe.expire(k_ref(ref_id), self.ttl)
        pipe.rpush(order_key, ref_id)
        pipe.expire(order_key, self.ttl)
        await pipe.execute()

    async def get_reference(self, ref_id: str) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_ref(ref_id))
        if not h:
            return None
        return {
            "ref_id": ref_id,
            "campaign_id": h["campaign_id"],
            "order_id": h["order_id"],
            "ticket_numbers": orjson.loads(h["ticket_numbers"]),
            "created_at": float(h.get("created_at", "0")),
        }

    async def mark_event_seen(self, key: Optional[str]) -> bool:
        if not key:
            return True
        ok = await self.r.set(k_seen(key), "1", nx=True, ex=self.ttl)
        return bool(ok)

    async def purge_expired(self, now: Optional[float] = None) -> int:
        # redis expires keys on its own
        return 0

    async def list_for_order(
            self, campaign_id: str, order_id: str) -> List[str]:
        return await self.r.lrange(k_order_refs(campaign_id, order_id), 0, -1)

# model/checkoutref/__init__.py
import os
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = os.getenv("REFS_BACKEND", "pg").lower()  # 'pg' | 'redis'

# late webhooks must still resolve long after the reservation expired
DEFAULT_TTL_SECONDS = 7 * 24 * 3600

if BACKEND == "redis":
    from ._redis import CheckoutRefStore as _CheckoutRefStore
else:
    from ._postgres import CheckoutRefStore as _CheckoutRefStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = DEFAULT_TTL_SECONDS,
              gated: Gated = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "CheckoutRefStore(redis) requires r=redis.Redis"
            )
        return _CheckoutRefStore(r=r, ttl_seconds=ttl_seconds)
    if db is None:
        raise RuntimeError("CheckoutRefStore(pg) requires db=AsyncSession")
    if gated is None:
        raise RuntimeError("CheckoutRefStore(pg) requires gated=Gated")
    return _CheckoutRefStore(db=db, ttl_seconds=ttl_seconds, gated=gated)


def new_reference_id() -> str:
    from ...helpers import new_id
    return f"ref_{new_id()}"


CheckoutRefStore = _CheckoutRefStore
__all__ = ["CheckoutRefStore", "new_store", "new_reference_id", "BACKEND"]

# model/oplog.py
"""
Append-only operational log. Every settlement, review decision and sweep
action leaves one row here, next to the regular application log line.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import orjson
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, now_ts, to_iso
from ..infra.sql import GatedAsyncSession

log = logging.getLogger(__name__)

_LEVELS = {
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


# UN-GATED internal function: runs inside the caller's transaction
async def _append(
    session: AsyncSession,
    operation_type: str,
    status: str,
    message: str,
    campaign_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    now: Optional[float] = None,
) -> str:
    entry_id = new_id()
    await session.execute(text("""
        INSERT INTO operation_logs(
            id, operation_type, campaign_id, status, message, details,
            created_at)
        VALUES(:id, :op, :c, :s, :m, :d, :t)
    """), {
        "id": entry_id,
        "op": operation_type,
        "c": campaign_id,
        "s": status,
        "m": message,
        "d": orjson.dumps(details or {}).decode(),
        "t": now if now is not None else now_ts(),
    })
    log.log(_LEVELS.get(status, logging.INFO), "[%s] %s", operation_type,
            message)
    return entry_id


async def append(db: GatedAsyncSession, operation_type: str, status: str,
                 message: str, campaign_id: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None) -> str:
    async with db.gated():
        async with db.session.begin():
            return await _append(db.session, operation_type, status, message,
                                 campaign_id=campaign_id, details=details)


async def recent(db: GatedAsyncSession, limit: int = 100,
                 campaign_id: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM operation_logs"
    params: Dict[str, Any] = {"lim": max(1, min(limit, 1000))}
    if campaign_id:
        sql += " WHERE campaign_id = :c"
        params["c"] = campaign_id
    sql += " ORDER BY created_at DESC LIMIT :lim"

    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(sql), params)).mappings()
            rows = rows.all()
    return [{
        "id": r["id"],
        "operation_type": r["operation_type"],
        "campaign_id": r["campaign_id"],
        "status": r["status"],
        "message": r["message"],
        "details": orjson.loads(r["details"] or "{}"),
        "created_at": to_iso(r["created_at"]),
    } for r in rows]


async def cleanup_old(db: GatedAsyncSession, max_age_seconds: float,
                      now: Optional[float] = None) -> int:
    cutoff = (now if now is not None else now_ts()) - max_age_seconds
    async with db.gated():
        async with db.session.begin():
            result = await db.session.execute(
                text("DELETE FROM operation_logs WHERE created_at < :cutoff"),
                {"cutoff": cutoff},
            )
    return int(result.rowcount or 0)

# model/sweeper.py
"""
Expiry sweeper. Invoked from outside (cron, scheduler, the /internal/sweep
endpoint or sweep.py); holds no state between runs. Every write re-checks its
own condition, so two sweeps racing each other do the work once.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .. import config
from ..errors import RaffleError
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from . import oplog, settlement
from .inventory import _delete_stale_draft
from .proofs import _expire_pending
from .settlement import REJECTED, SettlementEvent

log = logging.getLogger(__name__)


async def _stale_drafts(db: GatedAsyncSession, now: float,
                        grace_seconds: float) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT id, title, organizer_id FROM campaigns
                WHERE status='draft'
                  AND expires_at IS NOT NULL AND expires_at < :now
                  AND created_at < :created_cutoff
                ORDER BY created_at
            """), {"now": now, "created_cutoff": now - grace_seconds}))
            return [dict(r) for r in rows.mappings().all()]


async def _expired_orders(db: GatedAsyncSession,
                          now: float) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT t.campaign_id, t.order_id,
                       MIN(t.reservation_expires_at) AS expired_at,
                       COUNT(*) AS n
                FROM tickets AS t
                WHERE t.status='reserved'
                  AND t.reservation_expires_at <= :now
                  AND NOT EXISTS (
                      SELECT 1 FROM tickets AS p
                      WHERE p.campaign_id = t.campaign_id
                        AND p.order_id = t.order_id
                        AND p.status = 'purchased')
                GROUP BY t.campaign_id, t.order_id
                ORDER BY MIN(t.reservation_expires_at)
            """), {"now": now})).mappings().all()
    return [dict(r) for r in rows]


async def delete_stale_drafts(
    db: GatedAsyncSession, now: float, grace_seconds: float,
    summary: Dict[str, Any],
) -> None:
    for c in await _stale_drafts(db, now, grace_seconds):
        try:
            async with db.gated():
                async with db.session.begin():
                    deleted = await _delete_stale_draft(
                        db.session, c["id"], now, grace_seconds
                    )
                    if deleted:
                        await oplog._append(
                            db.session, "campaign_deleted", "success",
                            f"Expired draft campaign '{c['title']}' deleted",
                            campaign_id=c["id"],
                            details={"title": c["title"],
                                     "organizer_id": c["organizer_id"]},
                            now=now,
                        )
        except (SQLAlchemyError, RaffleError) as e:
            log.exception("draft cleanup failed for campaign %s", c["id"])
            summary["error_count"] += 1
            summary["details"].append({
                "operation": "campaign_deleted", "campaign_id": c["id"],
                "status": "error", "error": str(e),
            })
            await _log_failure(db, "campaign_delete_error", c["id"], e)
            continue
        if deleted:
            summary["deleted_count"] += 1
            summary["details"].append({
                "operation": "campaign_deleted", "campaign_id": c["id"],
                "title": c["title"], "status": "success",
            })


async def release_expired_reservations(
    db: GatedAsyncSession, now: float, summary: Dict[str, Any],
) -> None:
    for o in await _expired_orders(db, now):
        event = SettlementEvent(
            campaign_id=o["campaign_id"],
            ticket_numbers=[],
            outcome=REJECTED,
            external_id=f"expiry_{o['order_id']}",
            provider="sweeper",
            order_id=o["order_id"],
        )
        try:
            async with db.gated():
                async with db.session.begin():
                    result = await settlement._apply(
                        db.session, event, now, expired_by=now
                    )
                    expired_proofs = await _expire_pending(
                        db.session, o["campaign_id"], o["order_id"], now
                    )
                    if result.transitioned or expired_proofs:
                        await oplog._append(
                            db.session, "reservation_expired", "success",
                            f"Order {o['order_id']}: "
                            f"{len(result.transitioned)} expired tickets "
                            f"released",
                            campaign_id=o["campaign_id"],
                            details={
                                "order_id": o["order_id"],
                                "quota_numbers": result.transitioned,
                                "expired_proofs": expired_proofs,
                            },
                            now=now,
                        )
        except (SQLAlchemyError, RaffleError) as e:
            log.exception("release failed for order %s", o["order_id"])
            summary["error_count"] += 1
            summary["details"].append({
                "operation": "reservation_expired",
                "campaign_id": o["campaign_id"], "order_id": o["order_id"],
                "status": "error", "error": str(e),
            })
            await _log_failure(db, "reservation_release_error",
                               o["campaign_id"], e)
            continue
        if result.transitioned:
            summary["released_count"] += len(result.transitioned)
            summary["details"].append({
                "operation": "reservation_expired",
                "campaign_id": o["campaign_id"], "order_id": o["order_id"],
                "quota_numbers": result.transitioned,
                "expired_proofs": expired_proofs, "status": "success",
            })


async def _log_failure(db: GatedAsyncSession, operation_type: str,
                       campaign_id: Optional[str], exc: Exception) -> None:
    try:
        await oplog.append(db, operation_type, "error", str(exc),
                           campaign_id=campaign_id,
                           details={"error": type(exc).__name__})
    except SQLAlchemyError:
        log.exception("could not record %s for %s", operation_type,
                      campaign_id)


async def run_sweep(
    db: GatedAsyncSession,
    refs=None,
    now: Optional[float] = None,
    grace_seconds: float = config.DRAFT_GRACE_SECONDS,
    log_retention_seconds: float = config.LOG_RETENTION_SECONDS,
) -> Dict[str, Any]:
    """
    One full pass: stale drafts, expired reservations, old log rows.
    Returns {deleted_count, released_count, error_count, details[]}.
    """
    now = now if now is not None else now_ts()
    summary: Dict[str, Any] = {
        "deleted_count": 0,
        "released_count": 0,
        "error_count": 0,
        "details": [],
    }
    log.info("sweep starting")

    await delete_stale_drafts(db, now, grace_seconds, summary)
    await release_expired_reservations(db, now, summary)

    try:
        purged = await oplog.cleanup_old(db, log_retention_seconds, now=now)
        if refs is not None:
            purged += await refs.purge_expired(now)
        summary["purged_count"] = purged
    except SQLAlchemyError as e:
        log.exception("log retention cleanup failed")
        summary["error_count"] += 1
        summary["details"].append({"operation": "cleanup_old_logs",
                                   "status": "error", "error": str(e)})

    status = "warning" if summary["error_count"] else "success"
    await oplog.append(
        db, "sweep_completed", status,
        f"Sweep completed: {summary['deleted_count']} campaigns deleted, "
        f"{summary['released_count']} tickets released, "
        f"{summary['error_count']} errors",
        details={k: v for k, v in summary.items() if k != "details"},
    )
    return summary

# model/schema.py
"""
Tables for campaigns, their ticket inventory, manual payment proofs and the
operational log. The DDL is idempotent and sticks to the subset that both
PostgreSQL and SQLite understand, so the same statements run in production
and in tests.
"""
from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession


SQL_CREATE_CAMPAIGNS = r"""
-- status: 'draft' | 'active' | 'completed' | 'cancelled'
--   expires_at only matters while draft and unpaid (sweeper deletes it)
CREATE TABLE IF NOT EXISTS campaigns (
    id                          TEXT PRIMARY KEY,
    title                       TEXT NOT NULL,
    organizer_id                TEXT,
    status                      TEXT NOT NULL DEFAULT 'draft'
        CHECK (status IN ('draft','active','completed','cancelled')),
    total_tickets               INTEGER NOT NULL CHECK (total_tickets > 0),
    min_tickets_per_purchase    INTEGER NOT NULL DEFAULT 1,
    max_tickets_per_purchase    INTEGER NOT NULL,
    reservation_timeout_minutes INTEGER NOT NULL DEFAULT 15,
    ticket_price                INTEGER NOT NULL DEFAULT 0,
    is_paid                     BOOLEAN NOT NULL DEFAULT FALSE,
    expires_at                  DOUBLE PRECISION,
    created_at                  DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_TICKETS = r"""
-- One row per quota number. order_id is NULL exactly when available.
CREATE TABLE IF NOT EXISTS tickets (
    campaign_id            TEXT NOT NULL
        REFERENCES campaigns(id) ON DELETE CASCADE,
    quota_number           INTEGER NOT NULL CHECK (quota_number >= 0),
    status                 TEXT NOT NULL DEFAULT 'available'
        CHECK (status IN ('available','reserved','purchased')),
    order_id               TEXT,
    customer_name          TEXT,
    customer_email         TEXT,
    customer_phone         TEXT,
    reserved_at            DOUBLE PRECISION,
    reservation_expires_at DOUBLE PRECISION,
    bought_at              DOUBLE PRECISION,
    PRIMARY KEY (campaign_id, quota_number),
    CHECK ((status = 'available') = (order_id IS NULL))
);
"""

SQL_CREATE_TICKETS_ORDER_IDX = r"""
CREATE INDEX IF NOT EXISTS tickets_order_idx
    ON tickets(campaign_id, order_id);
"""

SQL_CREATE_TICKETS_RESERVED_IDX = r"""
CREATE INDEX IF NOT EXISTS tickets_reserved_expiry_idx
    ON tickets(reservation_expires_at)
    WHERE status = 'reserved';
"""

SQL_CREATE_PAYMENT_PROOFS = r"""
-- status: 'pending' -> 'approved' | 'rejected' | 'expired' (terminal)
CREATE TABLE IF NOT EXISTS payment_proofs (
    id             TEXT PRIMARY KEY,
    order_id       TEXT NOT NULL,
    campaign_id    TEXT NOT NULL
        REFERENCES campaigns(id) ON DELETE CASCADE,
    organizer_id   TEXT,
    image_path     TEXT NOT NULL,
    status         TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending','approved','rejected','expired')),
    customer_name  TEXT,
    customer_phone TEXT,
    created_at     DOUBLE PRECISION NOT NULL,
    decided_at     DOUBLE PRECISION,
    UNIQUE (campaign_id, order_id)
);
"""

SQL_CREATE_OPERATION_LOGS = r"""
-- append-only audit trail; details is a JSON object
CREATE TABLE IF NOT EXISTS operation_logs (
    id             TEXT PRIMARY KEY,
    operation_type TEXT NOT NULL,
    campaign_id    TEXT,
    status         TEXT NOT NULL
        CHECK (status IN ('success','warning','error')),
    message        TEXT NOT NULL,
    details        TEXT NOT NULL DEFAULT '{}',
    created_at     DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_OPERATION_LOGS_IDX = r"""
CREATE INDEX IF NOT EXISTS operation_logs_created_idx
    ON operation_logs(created_at);
"""

ALL_TABLES = ("operation_logs", "payment_proofs", "tickets", "campaigns")


async def create_schema(db_or_conn: AsyncSession | AsyncConnection) -> None:
    # get an execute handle that works for both session and connection
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_CAMPAIGNS))
    await exec_(text(SQL_CREATE_TICKETS))
    await exec_(text(SQL_CREATE_TICKETS_ORDER_IDX))
    await exec_(text(SQL_CREATE_TICKETS_RESERVED_IDX))
    await exec_(text(SQL_CREATE_PAYMENT_PROOFS))
    await exec_(text(SQL_CREATE_OPERATION_LOGS))
    await exec_(text(SQL_CREATE_OPERATION_LOGS_IDX))

#!/usr/bin/env python3
"""
One sweep pass from cron:

    DATABASE_URL=... python sweep.py [--grace-hours 48] [--log-days 30]

Prints the summary as JSON; exits 1 when any item failed.
"""
import argparse
import asyncio
import os
import sys

import orjson

from rafflebox import config
from rafflebox.infra.sql import GatedAsyncSession, make_async_engine
from rafflebox.model import sweeper
from rafflebox.model.schema import create_schema
from rafflebox.model.checkoutref import BACKEND as REFS_BACKEND, new_store
from rafflebox.model.checkoutref._postgres import (
    create_schema as create_refs_schema
)


async def main(args) -> int:
    engine, SessionAsync, _, gated = make_async_engine(args.database_url)
    r = None
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
            if REFS_BACKEND != "redis":
                await create_refs_schema(conn)
        async with SessionAsync() as session, SessionAsync() as ref_session:
            db = GatedAsyncSession(session=session, gated=gated)
            if REFS_BACKEND == "redis":
                import redis.asyncio as redis
                r = redis.from_url(config.REDIS_URL, decode_responses=True)
                refs = new_store(r=r)
            else:
                refs = new_store(db=ref_session, gated=gated)
            summary = await sweeper.run_sweep(
                db,
                refs=refs,
                grace_seconds=args.grace_hours * 3600,
                log_retention_seconds=args.log_days * 86400,
            )
    finally:
        if r is not None:
            await r.aclose()
        await engine.dispose()

    print(orjson.dumps(summary, option=orjson.OPT_INDENT_2).decode())
    return 1 if summary["error_count"] else 0


if __name__ == "__main__":
    p = argparse.ArgumentParser(description="Release expired reservations "
                                "and delete stale draft campaigns.")
    p.add_argument("--database-url", default=os.getenv("DATABASE_URL"))
    p.add_argument("--grace-hours", type=float,
                   default=config.DRAFT_GRACE_SECONDS / 3600)
    p.add_argument("--log-days", type=float,
                   default=config.LOG_RETENTION_SECONDS / 86400)
    args = p.parse_args()
    if not args.database_url:
        print("NEED DATABASE_URL! e.g. sqlite:///./rafflebox.db")
        sys.exit(2)
    config.configure_logging()
    sys.exit(asyncio.run(main(args)))

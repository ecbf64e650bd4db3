"""
Statistics recorder.

Two writes per event, one commit:
  (a) summary_stats upsert — a single INSERT .. ON CONFLICT DO UPDATE that bumps
      total_requests and exactly one of successful_redirects / errors
  (b) detailed_stats insert, then trim that partner to the newest N rows

The trim is one DELETE whose keep-set is read after the insert, so a
concurrent insert can never make it cut into the newest N. On Postgres the
per-partner trim is additionally serialized with a transaction-scoped
advisory lock.

Statistics are observability-grade: a failed write is logged and swallowed.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tracker.core.errors import PersistenceDegraded
from tracker.models.tables import DetailStat, SummaryStat

import structlog

logger = structlog.get_logger()

DEFAULT_RETENTION = 1000

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


@dataclass
class StatEvent:
    partner_id: str
    url: str
    status: int
    click_id: str
    response: str
    sum: str = ""
    sum_mapping: str = ""
    extra_params: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _dialect(db: AsyncSession) -> str:
    return db.get_bind().dialect.name


async def increment_summary(db: AsyncSession, partner_id: str, success: bool) -> None:
    dialect = _dialect(db)
    insert = _INSERTS.get(dialect)
    if insert is None:
        raise PersistenceDegraded(f"No upsert support for dialect {dialect}")

    bucket = "successful_redirects" if success else "errors"
    stmt = insert(SummaryStat).values(
        partner_id=partner_id,
        total_requests=1,
        successful_redirects=1 if success else 0,
        errors=0 if success else 1,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[SummaryStat.partner_id],
        set_={
            "total_requests": SummaryStat.total_requests + 1,
            bucket: getattr(SummaryStat, bucket) + 1,
        },
    )
    await db.execute(stmt)


async def append_detail(db: AsyncSession, event: StatEvent, retention: int = DEFAULT_RETENTION) -> None:
    db.add(DetailStat(
        partner_id=event.partner_id,
        timestamp=event.timestamp,
        url=event.url,
        status=event.status,
        click_id=event.click_id[:255] if event.click_id else event.click_id,
        response=event.response,
        sum=event.sum[:50] if event.sum else event.sum,
        sum_mapping=event.sum_mapping[:50] if event.sum_mapping else event.sum_mapping,
        extra_params=event.extra_params,
    ))
    await db.flush()

    if _dialect(db) == "postgresql":
        await db.execute(select(func.pg_advisory_xact_lock(func.hashtext(event.partner_id))))

    newest = (
        select(DetailStat.stat_id)
        .where(DetailStat.partner_id == event.partner_id)
        .order_by(DetailStat.timestamp.desc(), DetailStat.stat_id.desc())
        .limit(retention)
    )
    await db.execute(
        delete(DetailStat)
        .where(
            DetailStat.partner_id == event.partner_id,
            DetailStat.stat_id.not_in(newest),
        )
        .execution_options(synchronize_session=False)
    )


async def record_event(
    db: AsyncSession,
    event: StatEvent,
    success: bool,
    retention: int = DEFAULT_RETENTION,
) -> bool:
    """Write summary + detail for one event. Returns False (and logs) on failure."""
    try:
        await increment_summary(db, event.partner_id, success)
        await append_detail(db, event, retention)
        await db.commit()
    except (SQLAlchemyError, PersistenceDegraded) as e:
        await db.rollback()
        logger.error(
            "stats_write_failed",
            partner=event.partner_id,
            click_id=event.click_id,
            success=success,
            error=str(e),
        )
        return False
    return True

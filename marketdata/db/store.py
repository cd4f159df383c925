"""
Row-store primitives used by the admission, metrics and fallback services.

Every counter mutation is a single conditional upsert
(``INSERT ... ON CONFLICT DO UPDATE SET count = count + n RETURNING count``) so
concurrent callers never lose an increment.
"""
from datetime import datetime, timezone, timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.future import select

from marketdata.db.models import (
    FailureCounter,
    FailureCounterMember,
    SourceMetric,
    SourceMetricError,
    SymbolBlacklist,
    UsageCounter,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def date_key(moment: Optional[datetime] = None) -> str:
    return (moment or utcnow()).strftime("%Y-%m-%d")

def month_key(moment: Optional[datetime] = None) -> str:
    return (moment or utcnow()).strftime("%Y-%m")

def hour_key(moment: Optional[datetime] = None) -> str:
    return (moment or utcnow()).strftime("%Y-%m-%dT%H")

def recent_date_keys(days: int, moment: Optional[datetime] = None) -> List[str]:
    """Date keys for the last ``days`` days, newest first."""
    start = moment or utcnow()
    return [date_key(start - timedelta(days=offset)) for offset in range(days)]


def insert_for(session, model):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Atomic upserts are not supported on {dialect}")


# --- Usage counters ---

async def increment_counter(session, counter_id: str, amount: int = 1) -> int:
    now = utcnow()
    stmt = insert_for(session, UsageCounter).values(
        id=counter_id, count=amount, created_at=now, updated_at=now
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UsageCounter.id],
        set_={"count": UsageCounter.count + amount, "updated_at": now},
    ).returning(UsageCounter.count)
    result = await session.execute(stmt)
    return result.scalar_one()

async def get_counter_value(session, counter_id: str) -> int:
    result = await session.execute(select(UsageCounter.count).where(UsageCounter.id == counter_id))
    return result.scalar_one_or_none() or 0

async def reset_counter(session, counter_id: str) -> int:
    """Zero a counter and return its previous value."""
    counter = await session.get(UsageCounter, counter_id)
    if counter is None:
        return 0
    previous = counter.count
    counter.count = 0
    counter.updated_at = utcnow()
    return previous

async def query_counters(session, prefix: str) -> List[UsageCounter]:
    result = await session.execute(
        select(UsageCounter).where(UsageCounter.id.startswith(prefix, autoescape=True)).order_by(UsageCounter.id)
    )
    return list(result.scalars().all())


# --- Source metrics ---

async def accumulate_source_metric(
    session,
    metric_type: str,
    metric_key: str,
    data_type: Optional[str],
    requests: int = 0,
    successes: int = 0,
    failures: int = 0,
    batches: int = 0,
    response_time: float = 0.0,
):
    now = utcnow()
    stmt = insert_for(session, SourceMetric).values(
        metric_type=metric_type,
        metric_key=metric_key,
        data_type=data_type,
        requests=requests,
        successes=successes,
        failures=failures,
        batches=batches,
        total_response_time=response_time,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[SourceMetric.metric_type, SourceMetric.metric_key],
        set_={
            "requests": SourceMetric.requests + requests,
            "successes": SourceMetric.successes + successes,
            "failures": SourceMetric.failures + failures,
            "batches": SourceMetric.batches + batches,
            "total_response_time": SourceMetric.total_response_time + response_time,
            "updated_at": now,
        },
    )
    await session.execute(stmt)

async def increment_metric_error(session, metric_type: str, metric_key: str, error_type: str, amount: int = 1):
    stmt = insert_for(session, SourceMetricError).values(
        metric_type=metric_type, metric_key=metric_key, error_type=error_type, count=amount
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[SourceMetricError.metric_type, SourceMetricError.metric_key, SourceMetricError.error_type],
        set_={"count": SourceMetricError.count + amount},
    )
    await session.execute(stmt)


# --- Symbol blacklist ---

async def increment_symbol_failures(session, symbol: str, data_type: str, reason: str) -> int:
    now = utcnow()
    stmt = insert_for(session, SymbolBlacklist).values(
        symbol=symbol, data_type=data_type, failure_count=1, reason=reason, first_failure=now, last_failure=now
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[SymbolBlacklist.symbol, SymbolBlacklist.data_type],
        set_={"failure_count": SymbolBlacklist.failure_count + 1, "reason": reason, "last_failure": now},
    ).returning(SymbolBlacklist.failure_count)
    result = await session.execute(stmt)
    return result.scalar_one()


# --- Counted set ---

class CountedSet:
    """
    Append-only multiset of symbols under a counter row.

    ``append`` bumps the counter and inserts the member inside the caller's
    transaction, so ``count`` always equals the number of members. Members may
    repeat; readers deduplicate.
    """

    def __init__(self, session):
        self.session = session

    async def append(self, counter_id: str, member: str, *, date_key: str, data_type: str) -> int:
        stmt = insert_for(self.session, FailureCounter).values(
            id=counter_id, date_key=date_key, data_type=data_type, count=1
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[FailureCounter.id],
            set_={"count": FailureCounter.count + 1},
        ).returning(FailureCounter.count)
        result = await self.session.execute(stmt)
        self.session.add(FailureCounterMember(counter_id=counter_id, symbol=member, recorded_at=utcnow()))
        return result.scalar_one()

    async def members(self, counter_id: str) -> List[str]:
        result = await self.session.execute(
            select(FailureCounterMember.symbol)
            .where(FailureCounterMember.counter_id == counter_id)
            .order_by(FailureCounterMember.id)
        )
        return list(result.scalars().all())

    async def query(self, prefix: str) -> List[FailureCounter]:
        result = await self.session.execute(
            select(FailureCounter).where(FailureCounter.id.startswith(prefix, autoescape=True)).order_by(FailureCounter.id)
        )
        return list(result.scalars().all())

    async def members_by_counter(self, prefix: str) -> dict:
        """{counter_id: [members...]} for every counter under ``prefix``."""
        result = await self.session.execute(
            select(FailureCounterMember.counter_id, FailureCounterMember.symbol)
            .join(FailureCounter, FailureCounter.id == FailureCounterMember.counter_id)
            .where(FailureCounter.id.startswith(prefix, autoescape=True))
            .order_by(FailureCounterMember.id)
        )
        grouped: dict = {}
        for counter_id, symbol in result.all():
            grouped.setdefault(counter_id, []).append(symbol)
        return grouped

    async def size(self, counter_id: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(FailureCounterMember).where(FailureCounterMember.counter_id == counter_id)
        )
        return result.scalar_one()


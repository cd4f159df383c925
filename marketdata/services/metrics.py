"""
Source priority ordering and per-source health statistics.

Priorities live in ``source_priorities`` (one row per data type) and only change
through adjacent swaps. Statistics are accumulated with atomic upserts into
``source_metrics``; recording is best effort and never fails the caller.
"""
import itertools
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from prometheus_client import Counter, Histogram
from sqlalchemy.future import select

from marketdata.core.database import AsyncSessionLocal
from marketdata.core.logging_config import get_logger
from marketdata.db import store
from marketdata.db.models import SourceMetric, SourceMetricError, SourcePriority, SymbolResult
from marketdata.schemas.quotes import SourceMetricsSummary, US_STOCK, JP_STOCK, ETF, MUTUAL_FUND, EXCHANGE_RATE

logger = get_logger("source_metrics")

DATA_SOURCE_REQUESTS = Counter('data_source_requests_total', 'Upstream data source requests', ['source', 'data_type', 'result'])
DATA_SOURCE_LATENCY = Histogram('data_source_response_seconds', 'Upstream data source response time', ['source'])

DEFAULT_SOURCE_PRIORITIES: Dict[str, List[str]] = {
    US_STOCK: ["Yahoo Finance API", "Yahoo Finance (Web)", "MarketWatch"],
    JP_STOCK: ["Yahoo Finance Japan", "Minkabu", "Kabutan"],
    ETF: ["Yahoo Finance API", "Yahoo Finance (Web)", "MarketWatch"],
    MUTUAL_FUND: ["Morningstar CSV"],
    EXCHANGE_RATE: ["exchangerate-host", "dynamic-calculation", "hardcoded-values"],
}

SOURCE_HOURLY = "SOURCE_HOURLY"
SOURCE_TOTAL = "SOURCE_TOTAL"
BATCH_SOURCE_HOURLY = "BATCH_SOURCE_HOURLY"
BATCH_SOURCE_DAILY = "BATCH_SOURCE_DAILY"


def get_error_type(message: Optional[str]) -> str:
    if not message:
        return "UNKNOWN"
    text = message.lower()
    if "timeout" in text or "timed out" in text:
        return "TIMEOUT"
    if "rate limit" in text or "429" in text or "too many requests" in text:
        return "RATE_LIMIT"
    if "network" in text or "econnreset" in text or "connection" in text:
        return "NETWORK"
    if "permission" in text or "403" in text or "forbidden" in text:
        return "PERMISSION"
    if "not found" in text or "404" in text:
        return "NOT_FOUND"
    if "validation" in text or "invalid" in text:
        return "VALIDATION"
    return "OTHER"


# --- Priority ordering ---

def _reconcile(stored: List[str], defaults: List[str]) -> List[str]:
    """Known sources exactly once, stored order first."""
    ordered = []
    for source in stored:
        if source in defaults and source not in ordered:
            ordered.append(source)
    ordered.extend(source for source in defaults if source not in ordered)
    return ordered

async def get_source_priority(data_type: str) -> List[str]:
    defaults = DEFAULT_SOURCE_PRIORITIES.get(data_type)
    if defaults is None:
        logger.warning("unknown_data_type", data_type=data_type)
        return []
    try:
        async with AsyncSessionLocal() as session:
            row = await session.get(SourcePriority, data_type)
            if row is None:
                stmt = store.insert_for(session, SourcePriority).values(
                    data_type=data_type, priorities=list(defaults), updated_at=store.utcnow()
                ).on_conflict_do_nothing(index_elements=[SourcePriority.data_type])
                await session.execute(stmt)
                await session.commit()
                return list(defaults)
            return _reconcile(list(row.priorities or []), defaults)
    except Exception as e:
        logger.error("source_priority_read_failed", data_type=data_type, error=str(e))
        return list(defaults)

async def update_source_priority(data_type: str, source: str, direction: int) -> bool:
    """
    Move ``source`` one slot toward the front (direction > 0) or the back
    (direction < 0). Returns False if the source is not listed.
    """
    priorities = await get_source_priority(data_type)
    if source not in priorities:
        return False

    index = priorities.index(source)
    new_index = index - 1 if direction > 0 else index + 1 if direction < 0 else index
    if new_index < 0 or new_index >= len(priorities) or new_index == index:
        return True

    priorities[index], priorities[new_index] = priorities[new_index], priorities[index]
    try:
        async with AsyncSessionLocal() as session:
            values = {"priorities": priorities, "updated_at": store.utcnow()}
            stmt = store.insert_for(session, SourcePriority).values(data_type=data_type, **values)
            stmt = stmt.on_conflict_do_update(index_elements=[SourcePriority.data_type], set_=values)
            await session.execute(stmt)
            await session.commit()
    except Exception as e:
        logger.error("source_priority_update_failed", data_type=data_type, source=source, error=str(e))
        return False

    logger.info("source_priority_updated", data_type=data_type, source=source, direction=direction, priorities=priorities)
    return True


# --- Request timing ---

def _now_ms() -> int:
    return int(time.time() * 1000)

@dataclass
class RequestTracker:
    """Start times of in-flight upstream requests for one invocation."""
    in_flight: Dict[str, dict] = field(default_factory=dict)
    _seq: itertools.count = field(default_factory=itertools.count, repr=False)

    def register(self, prefix: str, info: dict) -> str:
        start = _now_ms()
        request_id = f"{prefix}:{start}"
        while request_id in self.in_flight:
            request_id = f"{prefix}:{start}:{next(self._seq)}"
        self.in_flight[request_id] = {**info, "start_time": start}
        return request_id

    def finish(self, request_id: Optional[str]) -> Optional[float]:
        """Pop a request and return its elapsed milliseconds."""
        info = self.in_flight.pop(request_id, None) if request_id else None
        if info is None:
            return None
        return float(_now_ms() - info["start_time"])

def start_data_source_request(tracker: RequestTracker, source: str, symbol: str, data_type: str) -> str:
    return tracker.register(f"{source}:{symbol}", {"source": source, "symbol": symbol, "data_type": data_type})

def start_batch_data_source_request(tracker: RequestTracker, source: str, count: int, data_type: str) -> str:
    return tracker.register(f"{source}:batch", {"source": source, "count": count, "data_type": data_type})


# --- Recording ---

async def record_data_source_result(
    source: str,
    success: bool,
    data_type: str,
    symbol: str,
    response_time: Optional[float] = None,
    error_message: Optional[str] = None,
    tracker: Optional[RequestTracker] = None,
    request_id: Optional[str] = None,
) -> bool:
    if tracker is not None:
        elapsed = tracker.finish(request_id)
        if response_time is None:
            response_time = elapsed
    response_time = response_time or 0.0

    DATA_SOURCE_REQUESTS.labels(source=source, data_type=data_type, result="success" if success else "failure").inc()
    DATA_SOURCE_LATENCY.labels(source=source).observe(response_time / 1000.0)

    now = store.utcnow()
    error_type = None if success else get_error_type(error_message)
    try:
        async with AsyncSessionLocal() as session:
            for metric_type, metric_key in (
                (SOURCE_HOURLY, f"{source}:{store.hour_key(now)}"),
                (SOURCE_TOTAL, source),
            ):
                await store.accumulate_source_metric(
                    session, metric_type, metric_key, data_type,
                    requests=1,
                    successes=1 if success else 0,
                    failures=0 if success else 1,
                    response_time=response_time,
                )
                if error_type:
                    await store.increment_metric_error(session, metric_type, metric_key, error_type)

            values = {
                "source": source,
                "success": success,
                "response_time": response_time,
                "error_message": error_message,
                "timestamp": now,
            }
            stmt = store.insert_for(session, SymbolResult).values(symbol=symbol, data_type=data_type, **values)
            stmt = stmt.on_conflict_do_update(index_elements=[SymbolResult.symbol, SymbolResult.data_type], set_=values)
            await session.execute(stmt)
            await session.commit()
        return True
    except Exception as e:
        logger.error("record_source_result_failed", source=source, symbol=symbol, error=str(e))
        return False

async def record_batch_data_source_result(
    source: str,
    success_count: int,
    fail_count: int,
    total_time: Optional[float],
    data_type: str,
    error_message: Optional[str] = None,
    tracker: Optional[RequestTracker] = None,
    request_id: Optional[str] = None,
) -> bool:
    if tracker is not None:
        elapsed = tracker.finish(request_id)
        if total_time is None:
            total_time = elapsed
    total_time = total_time or 0.0
    items = success_count + fail_count

    DATA_SOURCE_REQUESTS.labels(source=source, data_type=data_type, result="success").inc(success_count)
    DATA_SOURCE_REQUESTS.labels(source=source, data_type=data_type, result="failure").inc(fail_count)
    DATA_SOURCE_LATENCY.labels(source=source).observe(total_time / 1000.0)

    now = store.utcnow()
    error_type = get_error_type(error_message) if fail_count else None
    try:
        async with AsyncSessionLocal() as session:
            for metric_type, metric_key in (
                (BATCH_SOURCE_HOURLY, f"{source}:{store.hour_key(now)}"),
                (BATCH_SOURCE_DAILY, f"{source}:{store.date_key(now)}"),
            ):
                await store.accumulate_source_metric(
                    session, metric_type, metric_key, data_type,
                    requests=items,
                    successes=success_count,
                    failures=fail_count,
                    batches=1,
                    response_time=total_time,
                )
                if error_type:
                    await store.increment_metric_error(session, metric_type, metric_key, error_type, fail_count)

            # Per-item totals share the single-request aggregate
            await store.accumulate_source_metric(
                session, SOURCE_TOTAL, source, data_type,
                requests=items,
                successes=success_count,
                failures=fail_count,
                response_time=total_time,
            )
            if error_type:
                await store.increment_metric_error(session, SOURCE_TOTAL, source, error_type, fail_count)
            await session.commit()
        return True
    except Exception as e:
        logger.error("record_batch_result_failed", source=source, error=str(e))
        return False

async def get_data_source_metrics(source: str) -> Optional[SourceMetricsSummary]:
    """Lifetime totals for ``source``; None when nothing has been recorded."""
    async with AsyncSessionLocal() as session:
        metric = await session.get(SourceMetric, (SOURCE_TOTAL, source))
        if metric is None:
            return None
        result = await session.execute(
            select(SourceMetricError.error_type, SourceMetricError.count).where(
                SourceMetricError.metric_type == SOURCE_TOTAL,
                SourceMetricError.metric_key == source,
            )
        )
        error_types = {error_type: count for error_type, count in result.all()}

    return SourceMetricsSummary(
        source=source,
        requests=metric.requests,
        successes=metric.successes,
        failures=metric.failures,
        success_rate=round(metric.success_rate, 2),
        avg_response_time=round(metric.avg_response_time, 2),
        error_types=error_types,
    )

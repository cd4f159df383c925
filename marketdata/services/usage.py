"""
Usage quota admission.

Each admitted request increments the daily, monthly, per-data-type, per-session
and per-IP counters in one transaction using atomic upserts, so concurrent
callers never lose an increment. The limit check that precedes the increments
is advisory: under a race the daily count can overshoot the limit by at most
the number of concurrent in-flight checks.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from prometheus_client import Counter

from marketdata.core import config
from marketdata.core.database import AsyncSessionLocal
from marketdata.core.logging_config import get_logger
from marketdata.db import store
from marketdata.schemas.usage import (
    UsageCheckResult,
    UsageHistoryEntry,
    UsageSnapshot,
    UsageStats,
    UsageWindow,
)
from marketdata.services import alerts

logger = get_logger("usage")
settings = config.get_settings()

USAGE_ADMISSIONS = Counter('usage_admissions_total', 'Admission decisions', ['result'])

RESET_TYPES = ("daily", "monthly", "all")
CRITICAL_THRESHOLD = 90

# --- Counter ids ---

def daily_key(moment: Optional[datetime] = None) -> str:
    return f"usage:daily:{store.date_key(moment)}"

def monthly_key(moment: Optional[datetime] = None) -> str:
    return f"usage:monthly:{store.month_key(moment)}"

def type_key(data_type: str, moment: Optional[datetime] = None) -> str:
    return f"usage:type:{data_type}:{store.date_key(moment)}"

def session_key(session_id: str, moment: Optional[datetime] = None) -> str:
    return f"usage:session:{session_id}:{store.date_key(moment)}"

def ip_key(ip: str, moment: Optional[datetime] = None) -> str:
    return f"usage:ip:{ip}:{store.date_key(moment)}"

def _next_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)

def _next_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return datetime(moment.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(moment.year, moment.month + 1, 1, tzinfo=timezone.utc)

def _window(count: int, limit: int, reset_date: datetime) -> UsageWindow:
    return UsageWindow(count=count, limit=limit, remaining=max(0, limit - count), reset_date=reset_date)

def _snapshot(daily: int, monthly: int, moment: datetime, data_type_count: Optional[int] = None) -> UsageSnapshot:
    return UsageSnapshot(
        daily=_window(daily, settings.DAILY_REQUEST_LIMIT, _next_day(moment)),
        monthly=_window(monthly, settings.MONTHLY_REQUEST_LIMIT, _next_month(moment)),
        data_type_count=data_type_count,
    )

# --- Alerts ---

async def _alert_limit_reached(limit_type: str, count: int, limit: int, moment: datetime):
    window = store.date_key(moment) if limit_type == "daily" else store.month_key(moment)
    await alerts.throttled_alert(
        f"usage-limit:{limit_type}:{window}",
        f"API {limit_type} usage limit reached",
        f"The {limit_type} request limit ({limit}) has been reached.",
        detail={"limit_type": limit_type, "count": count, "limit": limit, "disabled": settings.DISABLE_ON_LIMIT},
        interval_minutes=24 * 60,
        critical=True,
    )

async def _alert_threshold(limit_type: str, count: int, limit: int):
    crossed = [t for t in settings.ALERT_THRESHOLDS if count * 100 == t * limit]
    if not crossed:
        return
    threshold = max(crossed)
    await alerts.send_alert(
        f"API {limit_type} usage at {threshold}%",
        f"{limit_type.capitalize()} usage has reached {threshold}% of the limit ({count}/{limit}).",
        detail={"limit_type": limit_type, "count": count, "limit": limit, "threshold": threshold},
        critical=threshold >= CRITICAL_THRESHOLD,
    )

# --- Admission ---

async def check_and_update_usage(
    data_type: str,
    ip: str = "unknown",
    user_agent: Optional[str] = None,
    session_id: Optional[str] = None,
) -> UsageCheckResult:
    now = store.utcnow()
    try:
        # Pre-check in its own session so the increment transaction starts with a write
        async with AsyncSessionLocal() as session:
            daily = await store.get_counter_value(session, daily_key(now))
            monthly = await store.get_counter_value(session, monthly_key(now))

        for limit_type, count, limit in (
            ("daily", daily, settings.DAILY_REQUEST_LIMIT),
            ("monthly", monthly, settings.MONTHLY_REQUEST_LIMIT),
        ):
            if count < limit:
                continue
            if count == limit:
                await _alert_limit_reached(limit_type, count, limit, now)
            if settings.DISABLE_ON_LIMIT:
                USAGE_ADMISSIONS.labels(result="refused").inc()
                logger.warning("usage_limit_refused", limit_type=limit_type, count=count, limit=limit, data_type=data_type, ip=ip)
                return UsageCheckResult(allowed=False, limit_type=limit_type, usage=_snapshot(daily, monthly, now))

        async with AsyncSessionLocal() as session:
            daily = await store.increment_counter(session, daily_key(now))
            monthly = await store.increment_counter(session, monthly_key(now))
            type_count = await store.increment_counter(session, type_key(data_type, now))
            if session_id:
                await store.increment_counter(session, session_key(session_id, now))
            await store.increment_counter(session, ip_key(ip, now))
            await session.commit()

        await _alert_threshold("daily", daily, settings.DAILY_REQUEST_LIMIT)
        await _alert_threshold("monthly", monthly, settings.MONTHLY_REQUEST_LIMIT)

        USAGE_ADMISSIONS.labels(result="allowed").inc()
        logger.debug("usage_admitted", data_type=data_type, daily=daily, monthly=monthly, ip=ip, user_agent=user_agent)
        return UsageCheckResult(allowed=True, usage=_snapshot(daily, monthly, now, data_type_count=type_count))

    except Exception as e:
        if not settings.FAIL_OPEN_ON_STORAGE_ERROR:
            raise
        # Quota storage is down: admit rather than block the API
        USAGE_ADMISSIONS.labels(result="fail_open").inc()
        logger.error("usage_check_failed", data_type=data_type, error=str(e))
        return UsageCheckResult(allowed=True, error=str(e))

async def reset_usage(reset_type: str = "daily") -> dict:
    if reset_type not in RESET_TYPES:
        raise ValueError(f"reset_type must be one of {RESET_TYPES}, got {reset_type!r}")

    now = store.utcnow()
    previous = {}
    async with AsyncSessionLocal() as session:
        if reset_type in ("daily", "all"):
            previous["daily"] = await store.reset_counter(session, daily_key(now))
        if reset_type in ("monthly", "all"):
            previous["monthly"] = await store.reset_counter(session, monthly_key(now))
        await session.commit()

    logger.warning("usage_reset", reset_type=reset_type, previous=previous)
    await alerts.notify(f"API usage counters reset ({reset_type})", detail={"reset_type": reset_type, "previous": previous})
    return {"reset_type": reset_type, "previous": previous, "reset_at": now}

async def get_usage_stats(history_days: int = 7) -> UsageStats:
    now = store.utcnow()
    async with AsyncSessionLocal() as session:
        daily = await store.get_counter_value(session, daily_key(now))
        monthly = await store.get_counter_value(session, monthly_key(now))

        today = store.date_key(now)
        by_type = {}
        for counter in await store.query_counters(session, "usage:type:"):
            data_type, _, day = counter.id[len("usage:type:"):].rpartition(":")
            if day == today:
                by_type[data_type] = counter.count

        history = []
        for day in store.recent_date_keys(history_days, now):
            history.append(UsageHistoryEntry(date=day, count=await store.get_counter_value(session, f"usage:daily:{day}")))

    return UsageStats(current=_snapshot(daily, monthly, now), by_type=by_type, history=history)

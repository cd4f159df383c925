"""Per-symbol TTL cache backed by the ``cache_entries`` table."""
import json
import time
from typing import Any, Dict, Optional

from sqlalchemy import delete, func
from sqlalchemy.future import select

from marketdata.core import config
from marketdata.core.database import AsyncSessionLocal
from marketdata.core.logging_config import get_logger
from marketdata.db.models import CacheEntry
from marketdata.db.store import insert_for, utcnow
from marketdata.schemas.quotes import US_STOCK, JP_STOCK, ETF, MUTUAL_FUND, EXCHANGE_RATE

logger = get_logger("cache")
settings = config.get_settings()

def ttl_for(data_type: str) -> int:
    return {
        US_STOCK: settings.CACHE_TIME_US_STOCK,
        JP_STOCK: settings.CACHE_TIME_JP_STOCK,
        ETF: settings.CACHE_TIME_ETF,
        MUTUAL_FUND: settings.CACHE_TIME_MUTUAL_FUND,
        EXCHANGE_RATE: settings.CACHE_TIME_EXCHANGE_RATE,
    }.get(data_type, settings.DEFAULT_CACHE_TTL)

def cache_key(data_type: str, symbol: str) -> str:
    return f"{data_type}:{symbol}"

async def get(key: str) -> Optional[Dict[str, Any]]:
    try:
        async with AsyncSessionLocal() as session:
            entry = await session.get(CacheEntry, key)
            if entry is None:
                return None
            if entry.expires_at < int(time.time()):
                await session.delete(entry)
                await session.commit()
                logger.debug("cache_expired", key=key)
                return None
            return entry.data
    except Exception as e:
        logger.error("cache_get_failed", key=key, error=str(e))
        return None

async def set(key: str, data: Dict[str, Any], ttl: Optional[int] = None) -> bool:
    ttl = settings.DEFAULT_CACHE_TTL if ttl is None else ttl
    try:
        async with AsyncSessionLocal() as session:
            values = {
                "data": data,
                "expires_at": int(time.time()) + ttl,
                "size": len(json.dumps(data, default=str)),
                "created_at": utcnow(),
            }
            stmt = insert_for(session, CacheEntry).values(key=key, **values)
            stmt = stmt.on_conflict_do_update(index_elements=[CacheEntry.key], set_=values)
            await session.execute(stmt)
            await session.commit()
        return True
    except Exception as e:
        logger.error("cache_set_failed", key=key, error=str(e))
        return False

async def remove(key: str) -> bool:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(delete(CacheEntry).where(CacheEntry.key == key))
            await session.commit()
        return True
    except Exception as e:
        logger.error("cache_remove_failed", key=key, error=str(e))
        return False

async def cleanup() -> int:
    """Delete expired entries; returns how many were removed."""
    try:
        async with AsyncSessionLocal() as session:
            result = await session.execute(delete(CacheEntry).where(CacheEntry.expires_at < int(time.time())))
            await session.commit()
            removed = result.rowcount or 0
        logger.info("cache_cleanup", removed=removed)
        return removed
    except Exception as e:
        logger.error("cache_cleanup_failed", error=str(e))
        return 0

async def get_stats() -> Dict[str, Any]:
    try:
        async with AsyncSessionLocal() as session:
            now = int(time.time())
            total, total_size = (await session.execute(
                select(func.count(), func.coalesce(func.sum(CacheEntry.size), 0))
            )).one()
            expired = (await session.execute(
                select(func.count()).select_from(CacheEntry).where(CacheEntry.expires_at < now)
            )).scalar_one()
        return {"total_items": total, "expired_items": expired, "active_items": total - expired, "total_size": total_size}
    except Exception as e:
        logger.error("cache_stats_failed", error=str(e))
        return {"error": str(e)}

"""
Cooldown list for symbols that keep failing on every live provider.

After ``BLACKLIST_MAX_FAILURES`` consecutive failed fetches a symbol is skipped
for ``BLACKLIST_COOLDOWN_DAYS`` and served from the fallback store instead. A
successful fetch clears the streak.
"""
import math
import time
from typing import Any, Dict, List

from sqlalchemy import delete
from sqlalchemy.future import select

from marketdata.core import config
from marketdata.core.database import AsyncSessionLocal
from marketdata.core.logging_config import get_logger
from marketdata.db import store
from marketdata.db.models import SymbolBlacklist
from marketdata.services import alerts

logger = get_logger("blacklist")
settings = config.get_settings()

SECONDS_PER_DAY = 86400

def _entry(row: SymbolBlacklist) -> Dict[str, Any]:
    return {
        "symbol": row.symbol,
        "data_type": row.data_type,
        "failure_count": row.failure_count,
        "reason": row.reason,
        "first_failure": row.first_failure,
        "last_failure": row.last_failure,
        "cooldown_until": row.cooldown_until,
    }

async def is_blacklisted(symbol: str, data_type: str) -> bool:
    try:
        async with AsyncSessionLocal() as session:
            row = await session.get(SymbolBlacklist, (symbol, data_type))
            if row is None or row.cooldown_until is None:
                return False
            now = int(time.time())
            if row.cooldown_until <= now:
                await session.delete(row)
                await session.commit()
                logger.info("blacklist_cooldown_expired", symbol=symbol, data_type=data_type)
                return False
            remaining_days = math.ceil((row.cooldown_until - now) / SECONDS_PER_DAY)
            logger.info("blacklist_skip", symbol=symbol, data_type=data_type, remaining_days=remaining_days)
            return True
    except Exception as e:
        logger.error("blacklist_check_failed", symbol=symbol, data_type=data_type, error=str(e))
        return False

async def record_failure(symbol: str, data_type: str, reason: str = "Unknown error") -> Dict[str, Any]:
    try:
        async with AsyncSessionLocal() as session:
            failures = await store.increment_symbol_failures(session, symbol, data_type, reason)
            blacklisted = failures >= settings.BLACKLIST_MAX_FAILURES
            cooldown_until = None
            if blacklisted:
                row = await session.get(SymbolBlacklist, (symbol, data_type))
                if row.cooldown_until is None:
                    cooldown_until = int(time.time()) + settings.BLACKLIST_COOLDOWN_DAYS * SECONDS_PER_DAY
                    row.cooldown_until = cooldown_until
            await session.commit()
    except Exception as e:
        logger.error("blacklist_record_failure_failed", symbol=symbol, data_type=data_type, error=str(e))
        return {"symbol": symbol, "error": str(e)}

    if cooldown_until is not None:
        logger.warning("blacklist_added", symbol=symbol, data_type=data_type, failure_count=failures)
        await alerts.send_alert(
            "Symbol Added to Fetch Blacklist",
            f"{symbol} ({data_type}) failed {failures} times in a row and is skipped for "
            f"{settings.BLACKLIST_COOLDOWN_DAYS} days.",
            {"symbol": symbol, "data_type": data_type, "failure_count": failures, "reason": reason},
        )
    return {"symbol": symbol, "failure_count": failures, "is_blacklisted": blacklisted}

async def record_success(symbol: str, data_type: str) -> bool:
    try:
        async with AsyncSessionLocal() as session:
            row = await session.get(SymbolBlacklist, (symbol, data_type))
            if row is None:
                return True
            if row.failure_count >= settings.BLACKLIST_MAX_FAILURES:
                await session.delete(row)
                logger.info("blacklist_removed_on_success", symbol=symbol, data_type=data_type)
            else:
                row.failure_count = 0
                row.cooldown_until = None
                row.last_success = store.utcnow()
            await session.commit()
        return True
    except Exception as e:
        logger.error("blacklist_record_success_failed", symbol=symbol, data_type=data_type, error=str(e))
        return False

async def remove_from_blacklist(symbol: str, data_type: str) -> bool:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(
                delete(SymbolBlacklist).where(
                    SymbolBlacklist.symbol == symbol, SymbolBlacklist.data_type == data_type
                )
            )
            await session.commit()
        logger.info("blacklist_removed", symbol=symbol, data_type=data_type)
        return True
    except Exception as e:
        logger.error("blacklist_remove_failed", symbol=symbol, data_type=data_type, error=str(e))
        return False

async def get_blacklisted_symbols() -> List[Dict[str, Any]]:
    """Entries whose cooldown is still running."""
    try:
        async with AsyncSessionLocal() as session:
            result = await session.execute(
                select(SymbolBlacklist)
                .where(SymbolBlacklist.cooldown_until > int(time.time()))
                .order_by(SymbolBlacklist.cooldown_until)
            )
            return [_entry(row) for row in result.scalars().all()]
    except Exception as e:
        logger.error("blacklist_list_failed", error=str(e))
        return []

async def cleanup_blacklist() -> Dict[str, Any]:
    try:
        async with AsyncSessionLocal() as session:
            result = await session.execute(
                delete(SymbolBlacklist).where(SymbolBlacklist.cooldown_until <= int(time.time()))
            )
            await session.commit()
            cleaned = result.rowcount or 0
        logger.info("blacklist_cleanup", cleaned_items=cleaned)
        return {"success": True, "cleaned_items": cleaned}
    except Exception as e:
        logger.error("blacklist_cleanup_failed", error=str(e))
        return {"success": False, "error": str(e)}

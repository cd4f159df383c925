"""
Fetch-with-fallback pipeline for a single symbol or a batch of symbols.

Providers are tried in the order the priority manager reports, each through the
retry executor. Every attempt is recorded in the source statistics. When all
providers fail the symbol is written to the failure ledger and the fallback
store supplies a last-resort record, so a recognized data type always gets data.
Symbols on the failure blacklist skip the providers and go straight to the
fallback store.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from prometheus_client import Histogram

from marketdata.core import config
from marketdata.core.errors import DataIntegrityError
from marketdata.core.logging_config import get_logger
from marketdata.db.store import utcnow
from marketdata.schemas.quotes import DATA_TYPES, EXCHANGE_RATE
from marketdata.services import blacklist, cache, metrics
from marketdata.services.fallback_store import FallbackDataStore, fallback_data_store
from marketdata.services.retry import with_retry

logger = get_logger("fetch_pipeline")
settings = config.get_settings()

Provider = Callable[[str], Awaitable[Dict[str, Any]]]

FETCH_DURATION = Histogram('fetch_with_fallback_seconds', 'End-to-end symbol fetch duration', ['data_type', 'outcome'])

DEFAULT_BATCH_SIZE = 10


def _validate(data: Any, data_type: str, source: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise DataIntegrityError(f"{source} returned {type(data).__name__}, expected an object", source=source)
    value_field = "rate" if data_type == EXCHANGE_RATE else "price"
    value = data.get(value_field)
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise DataIntegrityError(f"{source} returned no usable {value_field}", source=source)
    return data

def _ordered_sources(priorities: List[str], providers: Mapping[str, Provider]) -> List[str]:
    ordered = [source for source in priorities if source in providers]
    ordered.extend(source for source in providers if source not in ordered)
    return ordered

async def fetch_with_fallback(
    symbol: str,
    data_type: str,
    providers: Mapping[str, Provider],
    refresh: bool = False,
    tracker: Optional[metrics.RequestTracker] = None,
    store: Optional[FallbackDataStore] = None,
    max_retries: int = 2,
) -> Dict[str, Any]:
    if data_type not in DATA_TYPES:
        raise ValueError(f"Unsupported data type: {data_type}")

    store = store or fallback_data_store
    tracker = tracker or metrics.RequestTracker()
    key = cache.cache_key(data_type, symbol)
    start_time = time.time()

    if not refresh:
        cached = await cache.get(key)
        if cached:
            logger.debug("fetch_cache_hit", symbol=symbol, data_type=data_type)
            return cached

    if await blacklist.is_blacklisted(symbol, data_type):
        fallback = await store.get_fallback_for_symbol(symbol, data_type)
        FETCH_DURATION.labels(data_type=data_type, outcome="blacklisted").observe(time.time() - start_time)
        return {**fallback, "isBlacklisted": True}

    last_error: Optional[BaseException] = None
    for source in _ordered_sources(await metrics.get_source_priority(data_type), providers):
        request_id = metrics.start_data_source_request(tracker, source, symbol, data_type)
        try:
            data = await with_retry(lambda: providers[source](symbol), max_retries=max_retries)
            data = _validate(data, data_type, source)
        except Exception as e:
            last_error = e
            logger.warning("source_fetch_failed", source=source, symbol=symbol, data_type=data_type, error=str(e))
            await metrics.record_data_source_result(
                source, False, data_type, symbol,
                error_message=str(e) or e.__class__.__name__, tracker=tracker, request_id=request_id,
            )
            continue

        await metrics.record_data_source_result(source, True, data_type, symbol, tracker=tracker, request_id=request_id)
        await blacklist.record_success(symbol, data_type)
        result = {**data, "source": data.get("source") or source, "lastUpdated": data.get("lastUpdated") or utcnow().isoformat()}
        await cache.set(key, result, cache.ttl_for(data_type))
        FETCH_DURATION.labels(data_type=data_type, outcome="live").observe(time.time() - start_time)
        logger.info("fetch_success", symbol=symbol, data_type=data_type, source=source)
        return result

    reason = str(last_error) if last_error else "No providers configured"
    await blacklist.record_failure(symbol, data_type, reason)
    await store.record_failed_fetch(symbol, data_type, last_error or reason)
    fallback = await store.get_fallback_for_symbol(symbol, data_type)
    FETCH_DURATION.labels(data_type=data_type, outcome="fallback").observe(time.time() - start_time)
    logger.warning("fetch_fell_back", symbol=symbol, data_type=data_type, source=fallback.get("source"))
    return fallback

async def fetch_batch_with_fallback(
    symbols: List[str],
    data_type: str,
    providers: Mapping[str, Provider],
    refresh: bool = False,
    batch_size: int = DEFAULT_BATCH_SIZE,
    store: Optional[FallbackDataStore] = None,
) -> Dict[str, Dict[str, Any]]:
    """Fetch ``symbols`` in concurrent chunks, pausing between chunks."""
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    tracker = metrics.RequestTracker()
    unique = list(dict.fromkeys(symbols))
    results: Dict[str, Dict[str, Any]] = {}
    logger.info("batch_fetch_start", data_type=data_type, symbols=len(unique), batch_size=batch_size)

    for offset in range(0, len(unique), batch_size):
        if offset:
            await asyncio.sleep(settings.DATA_RATE_LIMIT_DELAY)
        chunk = unique[offset:offset + batch_size]
        fetched = await asyncio.gather(
            *(fetch_with_fallback(symbol, data_type, providers, refresh=refresh, tracker=tracker, store=store) for symbol in chunk)
        )
        results.update(zip(chunk, fetched))

    logger.info("batch_fetch_finish", data_type=data_type, symbols=len(results))
    return results

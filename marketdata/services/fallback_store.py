"""
Last-resort data for symbols every live provider failed on.

Three layers are consulted in order: the per-symbol cache, a snapshot of
fallback documents published in a GitHub repository, and deterministic
defaults. Failures are recorded in a per-day ledger which is later used to
publish refreshed fallback documents back to the repository.
"""
import asyncio
import base64
import json
import time
from collections import Counter as Tally
from typing import Any, Callable, Dict, List, Optional

import httpx
from prometheus_client import Counter
from sqlalchemy.future import select

from marketdata.core import config
from marketdata.core.database import AsyncSessionLocal
from marketdata.core.errors import DataIntegrityError
from marketdata.core.logging_config import get_logger
from marketdata.db.models import FailureRecord
from marketdata.db.store import CountedSet, date_key as format_date_key, insert_for, recent_date_keys, utcnow
from marketdata.schemas.quotes import (
    EXCHANGE_RATE,
    ETF,
    JP_STOCK,
    MUTUAL_FUND,
    US_STOCK,
    FailureStatistics,
    FallbackSnapshot,
    SymbolCount,
)
from marketdata.services import cache
from marketdata.services.exchange_rate import native_hardcoded_rate
from marketdata.services.retry import with_retry

logger = get_logger("fallback_store")
settings = config.get_settings()

FALLBACK_SERVED = Counter('fallback_served_total', 'Fallback records served', ['data_type', 'layer'])

SNAPSHOT_SOURCE = "GitHub Fallback"
DEFAULT_SOURCE = "Default Fallback"

TYPE_CATEGORIES = {
    US_STOCK: "stocks",
    JP_STOCK: "stocks",
    ETF: "etfs",
    MUTUAL_FUND: "mutual_funds",
    EXCHANGE_RATE: "exchange_rates",
}

CATEGORY_FILES = {
    "stocks": "fallback-stocks.json",
    "etfs": "fallback-etfs.json",
    "mutual_funds": "fallback-funds.json",
    "exchange_rates": "fallback-rates.json",
}

DEFAULT_PRICES = {
    US_STOCK: (100.0, "USD"),
    JP_STOCK: (2500.0, "JPY"),
    ETF: (100.0, "USD"),
    MUTUAL_FUND: (10000.0, "JPY"),
}

QUOTE_EXPORT_FIELDS = ("ticker", "price", "change", "changePercent", "name", "currency", "lastUpdated")
RATE_EXPORT_FIELDS = ("pair", "base", "target", "rate", "change", "changePercent", "lastUpdated")

FAILURE_HISTORY_DAYS = 7
MOST_FAILED_LIMIT = 20


def _default_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT)

def parse_pair(symbol: str) -> tuple:
    text = symbol.strip().upper()
    for separator in ("-", "/", "_"):
        if separator in text:
            base, _, target = text.partition(separator)
            return base, target
    if len(text) == 6:
        return text[:3], text[3:]
    return "USD", "JPY"

def _index_document(document: Any) -> Dict[str, Dict[str, Any]]:
    """Accept either {symbol: record} or a list of records carrying ticker/pair."""
    if isinstance(document, dict):
        return {str(key): value for key, value in document.items() if isinstance(value, dict)}
    if isinstance(document, list):
        indexed = {}
        for record in document:
            if isinstance(record, dict) and (record.get("ticker") or record.get("pair")):
                indexed[str(record.get("ticker") or record.get("pair"))] = record
        return indexed
    raise DataIntegrityError("Fallback document is neither an object nor a list")

def _normalize(record: Dict[str, Any], symbol: str, data_type: str, source: str) -> Dict[str, Any]:
    normalized = dict(record)
    if data_type == EXCHANGE_RATE:
        normalized.setdefault("pair", symbol)
    else:
        normalized.setdefault("ticker", symbol)
    normalized.setdefault("lastUpdated", utcnow().isoformat())
    normalized.setdefault("source", source)
    return normalized

def get_default_fallback_data(symbol: str, data_type: str) -> Optional[Dict[str, Any]]:
    """Deterministic placeholder record; None for unrecognized data types."""
    now = utcnow().isoformat()
    if data_type == EXCHANGE_RATE:
        base, target = parse_pair(symbol)
        return {
            "pair": symbol,
            "base": base,
            "target": target,
            "rate": native_hardcoded_rate(base, target),
            "change": 0.0,
            "changePercent": 0.0,
            "lastUpdated": now,
            "source": DEFAULT_SOURCE,
            "isDefault": True,
        }
    if data_type not in DEFAULT_PRICES:
        return None
    price, currency = DEFAULT_PRICES[data_type]
    return {
        "ticker": symbol,
        "price": price,
        "change": 0.0,
        "changePercent": 0.0,
        "name": symbol,
        "currency": currency,
        "lastUpdated": now,
        "source": DEFAULT_SOURCE,
        "isDefault": True,
    }


class FallbackDataStore:
    def __init__(self, client_factory: Optional[Callable[[], httpx.AsyncClient]] = None):
        self._client_factory = client_factory or _default_client
        self._snapshot = FallbackSnapshot()
        self._last_fetched = 0.0
        self._populated = False

    @property
    def last_fetched(self) -> float:
        return self._last_fetched

    # --- Snapshot ---

    def _raw_url(self, filename: str) -> str:
        return f"{settings.GITHUB_RAW_BASE_URL}/{settings.GITHUB_REPO_OWNER}/{settings.GITHUB_REPO_NAME}/{settings.GITHUB_BRANCH}/{filename}"

    async def _fetch_document(self, client: httpx.AsyncClient, filename: str) -> Dict[str, Dict[str, Any]]:
        response = await client.get(self._raw_url(filename))
        response.raise_for_status()
        return _index_document(response.json())

    async def get_fallback_data(self, force_refresh: bool = False) -> FallbackSnapshot:
        now = time.time()
        if not force_refresh and self._populated and now - self._last_fetched < settings.FALLBACK_DATA_REFRESH_INTERVAL:
            return self._snapshot

        categories = list(CATEGORY_FILES)
        try:
            async with self._client_factory() as client:
                results = await asyncio.gather(
                    *(self._fetch_document(client, CATEGORY_FILES[c]) for c in categories),
                    return_exceptions=True,
                )
        except Exception as e:
            results = [e] * len(categories)

        documents = {}
        for category, result in zip(categories, results):
            if isinstance(result, Exception):
                logger.warning("fallback_document_failed", category=category, error=str(result))
                documents[category] = {}
            else:
                documents[category] = result

        if all(isinstance(result, Exception) for result in results):
            # Serve the last-known-good snapshot (empty if never populated)
            logger.error("fallback_snapshot_refresh_failed", populated=self._populated)
            return self._snapshot

        self._snapshot = FallbackSnapshot(**documents)
        self._last_fetched = max(self._last_fetched, now)
        self._populated = True
        logger.info("fallback_snapshot_refreshed", **{c: len(documents[c]) for c in categories})
        return self._snapshot

    # --- Per-symbol lookup ---

    async def get_fallback_for_symbol(self, symbol: str, data_type: str) -> Optional[Dict[str, Any]]:
        category = TYPE_CATEGORIES.get(data_type)
        if category is None:
            logger.warning("fallback_unknown_type", symbol=symbol, data_type=data_type)
            return None

        key = cache.cache_key(data_type, symbol)
        cached = await cache.get(key)
        if cached:
            FALLBACK_SERVED.labels(data_type=data_type, layer="cache").inc()
            return _normalize(cached, symbol, data_type, SNAPSHOT_SOURCE)

        snapshot = await self.get_fallback_data()
        record = snapshot.category(category).get(symbol)
        if record:
            result = _normalize(record, symbol, data_type, SNAPSHOT_SOURCE)
            layer = "snapshot"
            ttl = cache.ttl_for(data_type)
        else:
            result = get_default_fallback_data(symbol, data_type)
            layer = "default"
            # placeholders expire quickly so recovered providers are retried
            ttl = settings.FALLBACK_DEFAULT_CACHE_TTL

        FALLBACK_SERVED.labels(data_type=data_type, layer=layer).inc()
        logger.info("fallback_served", symbol=symbol, data_type=data_type, layer=layer)
        await cache.set(key, result, ttl)
        return result

    async def save_fallback_data(self, symbol: str, data_type: str, data: Dict[str, Any]) -> bool:
        if data_type not in TYPE_CATEGORIES:
            return False
        record = _normalize(data, symbol, data_type, data.get("source") or SNAPSHOT_SOURCE)
        return await cache.set(cache.cache_key(data_type, symbol), record, cache.ttl_for(data_type))

    # --- Failure ledger ---

    async def record_failed_fetch(self, symbol: str, data_type: str, error: BaseException | str | None = None) -> bool:
        if isinstance(error, BaseException):
            reason = str(error) or error.__class__.__name__
        else:
            reason = error or "Unknown error"

        now = utcnow()
        day = format_date_key(now)
        try:
            async with AsyncSessionLocal() as session:
                await CountedSet(session).append(f"count:{day}:{data_type}", symbol, date_key=day, data_type=data_type)

                values = {"symbol": symbol, "data_type": data_type, "reason": reason, "timestamp": now, "date_key": day}
                stmt = insert_for(session, FailureRecord).values(id=f"failure:{symbol}:{data_type}", **values)
                stmt = stmt.on_conflict_do_update(index_elements=[FailureRecord.id], set_=values)
                await session.execute(stmt)
                await session.commit()
        except Exception as e:
            logger.error("record_failed_fetch_failed", symbol=symbol, data_type=data_type, error=str(e))
            return False

        logger.info("failed_fetch_recorded", symbol=symbol, data_type=data_type, reason=reason)
        return True

    async def get_failed_symbols(self, date_key: Optional[str] = None, data_type: Optional[str] = None) -> List[str]:
        day = date_key or format_date_key()
        try:
            async with AsyncSessionLocal() as session:
                counted = CountedSet(session)
                if data_type:
                    members = await counted.members(f"count:{day}:{data_type}")
                else:
                    grouped = await counted.members_by_counter(f"count:{day}:")
                    members = [symbol for symbols in grouped.values() for symbol in symbols]
        except Exception as e:
            logger.error("get_failed_symbols_failed", date_key=day, data_type=data_type, error=str(e))
            return []
        return list(dict.fromkeys(members))

    async def get_failure_statistics(self, days: int = FAILURE_HISTORY_DAYS) -> FailureStatistics:
        stats = FailureStatistics()
        by_symbol = Tally()
        try:
            async with AsyncSessionLocal() as session:
                counted = CountedSet(session)
                for day in recent_date_keys(days):
                    prefix = f"count:{day}:"
                    counters = await counted.query(prefix)
                    if not counters:
                        continue
                    day_by_type = {}
                    for counter in counters:
                        day_by_type[counter.data_type] = counter.count
                        stats.by_type[counter.data_type] = stats.by_type.get(counter.data_type, 0) + counter.count
                    for symbols in (await counted.members_by_counter(prefix)).values():
                        by_symbol.update(symbols)
                    day_total = sum(day_by_type.values())
                    stats.by_date[day] = {"total": day_total, "by_type": day_by_type}
                    stats.total_failures += day_total
        except Exception as e:
            logger.error("failure_statistics_failed", error=str(e))
            return FailureStatistics(error=str(e), total_failures=0)

        stats.by_symbol = dict(by_symbol)
        stats.most_failed_symbols = [
            SymbolCount(symbol=symbol, count=count) for symbol, count in by_symbol.most_common(MOST_FAILED_LIMIT)
        ]
        return stats

    # --- Publishing ---

    async def _latest_failure_types(self, symbols: List[str]) -> Dict[str, str]:
        latest = {}
        async with AsyncSessionLocal() as session:
            for symbol in symbols:
                result = await session.execute(
                    select(FailureRecord)
                    .where(FailureRecord.symbol == symbol)
                    .order_by(FailureRecord.timestamp.desc())
                    .limit(1)
                )
                record = result.scalars().first()
                if record is not None:
                    latest[symbol] = record.data_type
        return latest

    async def _put_document(self, client: httpx.AsyncClient, filename: str, content: Dict[str, Any]) -> bool:
        url = f"{settings.GITHUB_API_BASE_URL}/repos/{settings.GITHUB_REPO_OWNER}/{settings.GITHUB_REPO_NAME}/contents/{filename}"
        headers = {
            "Authorization": f"token {settings.GITHUB_TOKEN}",
            "Accept": "application/vnd.github.v3+json",
        }

        async def _put():
            current = await client.get(url, headers=headers, params={"ref": settings.GITHUB_BRANCH})
            sha = None
            if current.status_code == 200:
                sha = current.json().get("sha")
            elif current.status_code != 404:
                current.raise_for_status()

            body = {
                "message": f"Update {filename} - {utcnow().isoformat()}",
                "content": base64.b64encode(json.dumps(content, indent=2, ensure_ascii=False).encode("utf-8")).decode("ascii"),
                "branch": settings.GITHUB_BRANCH,
            }
            if sha:
                body["sha"] = sha
            response = await client.put(url, headers=headers, json=body)
            response.raise_for_status()

        try:
            await with_retry(_put, max_retries=2, base_delay=1.0)
        except Exception as e:
            logger.error("fallback_publish_failed", file=filename, error=str(e))
            return False
        logger.info("fallback_published", file=filename, records=len(content))
        return True

    async def export_current_fallbacks_to_github(self) -> bool:
        if not settings.GITHUB_TOKEN:
            logger.error("fallback_publish_skipped", reason="GITHUB_TOKEN not configured")
            return False

        try:
            symbols: List[str] = []
            for day in recent_date_keys(FAILURE_HISTORY_DAYS):
                symbols.extend(await self.get_failed_symbols(day))
            symbols = list(dict.fromkeys(symbols))

            partitions: Dict[str, Dict[str, Any]] = {category: {} for category in CATEGORY_FILES}
            for symbol, data_type in (await self._latest_failure_types(symbols)).items():
                data = await cache.get(cache.cache_key(data_type, symbol))
                # Synthetic placeholders are never published
                if not data or data.get("isDefault"):
                    continue
                fields = RATE_EXPORT_FIELDS if data_type == EXCHANGE_RATE else QUOTE_EXPORT_FIELDS
                record = _normalize(data, symbol, data_type, SNAPSHOT_SOURCE)
                partitions[TYPE_CATEGORIES[data_type]][symbol] = {k: record[k] for k in fields if k in record}

            snapshot = await self.get_fallback_data(force_refresh=True)
            merged = {category: {**snapshot.category(category), **partitions[category]} for category in CATEGORY_FILES}

            async with self._client_factory() as client:
                results = await asyncio.gather(
                    *(self._put_document(client, CATEGORY_FILES[c], merged[c]) for c in CATEGORY_FILES)
                )
        except Exception as e:
            logger.error("fallback_export_failed", error=str(e))
            return False

        updated = [c for c, ok in zip(CATEGORY_FILES, results) if ok]
        logger.info("fallback_export_finished", updated=updated, symbols=len(symbols))
        return bool(updated)


fallback_data_store = FallbackDataStore()

import time

import pytest
import httpx
from unittest.mock import AsyncMock, patch

from marketdata.core.errors import FatalRequestError, RetryableTransportError
from marketdata.core.database import AsyncSessionLocal
from marketdata.db import store as row_store
from marketdata.db.models import CacheEntry
from marketdata.ingestion.pipeline import fetch_batch_with_fallback, fetch_with_fallback
from marketdata.services import blacklist, cache, metrics
from marketdata.services.fallback_store import FallbackDataStore


@pytest.fixture
def offline_store():
    def handler(request):
        return httpx.Response(404)
    return FallbackDataStore(lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)))


async def test_sources_tried_in_priority_order(offline_store):
    calls = []

    def provider(name, result=None):
        async def fetch(symbol):
            calls.append(name)
            if result is None:
                raise FatalRequestError(f"{name} rejected {symbol}")
            return result
        return fetch

    providers = {
        "MarketWatch": provider("MarketWatch", {"price": 3.0}),
        "Yahoo Finance (Web)": provider("Yahoo Finance (Web)", {"price": 2.0}),
        "Yahoo Finance API": provider("Yahoo Finance API"),
    }

    result = await fetch_with_fallback("AAPL", "us-stock", providers, store=offline_store)

    assert calls == ["Yahoo Finance API", "Yahoo Finance (Web)"]
    assert result["price"] == 2.0
    assert result["source"] == "Yahoo Finance (Web)"
    assert (await metrics.get_data_source_metrics("Yahoo Finance API")).failures == 1
    assert (await metrics.get_data_source_metrics("Yahoo Finance (Web)")).successes == 1


async def test_priority_changes_reorder_attempts(offline_store):
    await metrics.update_source_priority("jp-stock", "Kabutan", 1)
    await metrics.update_source_priority("jp-stock", "Kabutan", 1)
    kabutan = AsyncMock(return_value={"price": 2800.0})
    minkabu = AsyncMock(return_value={"price": 2790.0})

    result = await fetch_with_fallback("7203", "jp-stock", {"Minkabu": minkabu, "Kabutan": kabutan}, store=offline_store)

    assert result["source"] == "Kabutan"
    minkabu.assert_not_awaited()


async def test_transient_errors_retried_before_moving_on(offline_store):
    flaky = AsyncMock(side_effect=[RetryableTransportError("reset"), {"price": 9.5}])

    result = await fetch_with_fallback("SPY", "etf", {"Yahoo Finance API": flaky}, store=offline_store, max_retries=1)

    assert result["price"] == 9.5
    assert flaky.await_count == 2


async def test_missing_price_is_treated_as_failure(offline_store):
    bad = AsyncMock(return_value={"name": "Apple"})
    good = AsyncMock(return_value={"price": 180.0})

    result = await fetch_with_fallback("AAPL", "us-stock", {"Yahoo Finance API": bad, "MarketWatch": good}, store=offline_store)

    assert result["source"] == "MarketWatch"
    summary = await metrics.get_data_source_metrics("Yahoo Finance API")
    assert summary.error_types == {"OTHER": 1}


async def test_all_sources_failing_records_and_falls_back(offline_store):
    down = AsyncMock(side_effect=FatalRequestError("404 not found"))

    result = await fetch_with_fallback("ZZZZ", "us-stock", {"Yahoo Finance API": down}, store=offline_store)

    assert result["source"] == "Default Fallback"
    assert result["price"] == 100.0
    assert await offline_store.get_failed_symbols(row_store.date_key(), "us-stock") == ["ZZZZ"]


async def test_cached_result_short_circuits_providers(offline_store):
    await cache.set("us-stock:AAPL", {"ticker": "AAPL", "price": 175.0, "source": "MarketWatch"})
    provider = AsyncMock(return_value={"price": 999.0})

    cached = await fetch_with_fallback("AAPL", "us-stock", {"MarketWatch": provider}, store=offline_store)
    refreshed = await fetch_with_fallback("AAPL", "us-stock", {"MarketWatch": provider}, refresh=True, store=offline_store)

    assert cached["price"] == 175.0
    assert refreshed["price"] == 999.0
    assert provider.await_count == 1


async def test_unknown_data_type_rejected(offline_store):
    with pytest.raises(ValueError):
        await fetch_with_fallback("BTC", "crypto", {}, store=offline_store)


async def test_batch_fetch_returns_every_symbol(offline_store):
    async def provider(symbol):
        if symbol == "BAD":
            raise FatalRequestError("404 not found")
        return {"price": float(len(symbol))}

    results = await fetch_batch_with_fallback(
        ["AAPL", "MSFT", "BAD", "AAPL", "GOOGL"], "us-stock", {"Yahoo Finance API": provider},
        batch_size=2, store=offline_store,
    )

    assert list(results) == ["AAPL", "MSFT", "BAD", "GOOGL"]
    assert results["GOOGL"]["price"] == 5.0
    assert results["BAD"]["source"] == "Default Fallback"


async def test_batch_size_must_be_positive(offline_store):
    with pytest.raises(ValueError):
        await fetch_batch_with_fallback(["AAPL"], "us-stock", {}, batch_size=0, store=offline_store)


async def test_default_fallback_is_cached_briefly(offline_store, isolated_settings):
    provider = AsyncMock(side_effect=[FatalRequestError("503 unavailable"), {"price": 321.0}])
    providers = {"Morningstar CSV": provider}

    first = await fetch_with_fallback("0331418A", "mutual-fund", providers, store=offline_store)

    assert first["isDefault"] is True
    async with AsyncSessionLocal() as session:
        entry = await session.get(CacheEntry, "mutual-fund:0331418A")
    assert entry.expires_at - time.time() <= isolated_settings.FALLBACK_DEFAULT_CACHE_TTL + 1

    later = time.time() + isolated_settings.FALLBACK_DEFAULT_CACHE_TTL + 1
    with patch("marketdata.services.cache.time.time", return_value=later):
        second = await fetch_with_fallback("0331418A", "mutual-fund", providers, store=offline_store)

    assert provider.await_count == 2
    assert second["price"] == 321.0
    assert second["source"] == "Morningstar CSV"


async def test_repeated_failures_blacklist_symbol(offline_store, sent_alerts):
    down = AsyncMock(side_effect=FatalRequestError("404 not found"))
    providers = {"Yahoo Finance API": down}

    for _ in range(3):
        await fetch_with_fallback("ZZZZ", "us-stock", providers, refresh=True, store=offline_store)
    result = await fetch_with_fallback("ZZZZ", "us-stock", providers, refresh=True, store=offline_store)

    assert down.await_count == 3
    assert result["isBlacklisted"] is True
    assert result["price"] == 100.0
    assert await blacklist.is_blacklisted("ZZZZ", "us-stock") is True


async def test_blacklisted_symbol_skips_providers(offline_store):
    for _ in range(3):
        await blacklist.record_failure("7203", "jp-stock")
    provider = AsyncMock(return_value={"price": 2800.0})

    result = await fetch_with_fallback("7203", "jp-stock", {"Kabutan": provider}, store=offline_store)

    provider.assert_not_awaited()
    assert result["isBlacklisted"] is True
    assert result["source"] == "Default Fallback"


async def test_successful_fetch_clears_failure_streak(offline_store):
    await blacklist.record_failure("AAPL", "us-stock")
    await blacklist.record_failure("AAPL", "us-stock")
    provider = AsyncMock(return_value={"price": 180.0})

    await fetch_with_fallback("AAPL", "us-stock", {"MarketWatch": provider}, store=offline_store)

    assert (await blacklist.record_failure("AAPL", "us-stock"))["failure_count"] == 1

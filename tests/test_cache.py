import time
from unittest.mock import patch

from marketdata.services import cache


async def test_set_get_remove():
    assert await cache.set("us-stock:AAPL", {"price": 187.2}, ttl=60)
    assert await cache.get("us-stock:AAPL") == {"price": 187.2}

    assert await cache.remove("us-stock:AAPL")
    assert await cache.get("us-stock:AAPL") is None


async def test_expired_entries_are_dropped():
    await cache.set("etf:VOO", {"price": 430.0}, ttl=60)
    await cache.set("etf:SPY", {"price": 500.0}, ttl=60)

    with patch("marketdata.services.cache.time.time", return_value=time.time() + 120):
        assert await cache.get("etf:VOO") is None
        assert await cache.cleanup() == 1

    stats = await cache.get_stats()
    assert stats["total_items"] == 0


async def test_stats_count_active_items():
    await cache.set("jp-stock:7203", {"price": 2800}, ttl=60)
    await cache.set("jp-stock:6758", {"price": 3100}, ttl=-1)

    stats = await cache.get_stats()

    assert stats["total_items"] == 2
    assert stats["expired_items"] == 1
    assert stats["active_items"] == 1


def test_ttl_per_data_type(isolated_settings):
    assert cache.ttl_for("exchange-rate") == isolated_settings.CACHE_TIME_EXCHANGE_RATE
    assert cache.ttl_for("mutual-fund") == isolated_settings.CACHE_TIME_MUTUAL_FUND
    assert cache.ttl_for("unknown") == isolated_settings.DEFAULT_CACHE_TTL

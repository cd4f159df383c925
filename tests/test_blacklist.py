import time
from unittest.mock import patch

from marketdata.core.database import AsyncSessionLocal
from marketdata.db.models import SymbolBlacklist
from marketdata.services import blacklist


async def test_third_consecutive_failure_blacklists(sent_alerts):
    first = await blacklist.record_failure("ZZZZ", "us-stock", "404 not found")
    await blacklist.record_failure("ZZZZ", "us-stock", "404 not found")
    assert first == {"symbol": "ZZZZ", "failure_count": 1, "is_blacklisted": False}
    assert await blacklist.is_blacklisted("ZZZZ", "us-stock") is False

    third = await blacklist.record_failure("ZZZZ", "us-stock", "timeout")

    assert third == {"symbol": "ZZZZ", "failure_count": 3, "is_blacklisted": True}
    assert await blacklist.is_blacklisted("ZZZZ", "us-stock") is True
    assert sent_alerts.await_count == 1
    assert sent_alerts.await_args.args[0] == "Symbol Added to Fetch Blacklist"


async def test_cooldown_lasts_configured_days(isolated_settings):
    for _ in range(isolated_settings.BLACKLIST_MAX_FAILURES):
        await blacklist.record_failure("ZZZZ", "us-stock")

    async with AsyncSessionLocal() as session:
        row = await session.get(SymbolBlacklist, ("ZZZZ", "us-stock"))
    expected = time.time() + isolated_settings.BLACKLIST_COOLDOWN_DAYS * 86400
    assert abs(row.cooldown_until - expected) < 5
    assert row.reason == "Unknown error"
    assert row.first_failure is not None


async def test_blacklist_is_scoped_per_data_type():
    for _ in range(3):
        await blacklist.record_failure("1306", "jp-stock")

    assert await blacklist.is_blacklisted("1306", "jp-stock") is True
    assert await blacklist.is_blacklisted("1306", "etf") is False


async def test_success_resets_failure_streak():
    await blacklist.record_failure("AAPL", "us-stock")
    await blacklist.record_failure("AAPL", "us-stock")

    assert await blacklist.record_success("AAPL", "us-stock") is True
    result = await blacklist.record_failure("AAPL", "us-stock")

    assert result["failure_count"] == 1
    assert result["is_blacklisted"] is False


async def test_success_removes_blacklisted_entry():
    for _ in range(3):
        await blacklist.record_failure("ZZZZ", "us-stock")

    assert await blacklist.record_success("ZZZZ", "us-stock") is True

    assert await blacklist.is_blacklisted("ZZZZ", "us-stock") is False
    assert await blacklist.get_blacklisted_symbols() == []


async def test_success_for_unknown_symbol_is_noop():
    assert await blacklist.record_success("MSFT", "us-stock") is True


async def test_expired_cooldown_lifts_blacklist():
    for _ in range(3):
        await blacklist.record_failure("ZZZZ", "us-stock")

    later = time.time() + 8 * 86400
    with patch("marketdata.services.blacklist.time.time", return_value=later):
        assert await blacklist.is_blacklisted("ZZZZ", "us-stock") is False

    async with AsyncSessionLocal() as session:
        assert await session.get(SymbolBlacklist, ("ZZZZ", "us-stock")) is None


async def test_listing_and_manual_removal():
    for symbol in ("AAA", "BBB"):
        for _ in range(3):
            await blacklist.record_failure(symbol, "us-stock")
    await blacklist.record_failure("CCC", "us-stock")

    listed = await blacklist.get_blacklisted_symbols()
    assert sorted(entry["symbol"] for entry in listed) == ["AAA", "BBB"]

    assert await blacklist.remove_from_blacklist("AAA", "us-stock") is True
    assert [entry["symbol"] for entry in await blacklist.get_blacklisted_symbols()] == ["BBB"]


async def test_cleanup_deletes_only_expired_entries():
    for _ in range(3):
        await blacklist.record_failure("OLD", "us-stock")
    later = time.time() + 8 * 86400
    with patch("marketdata.services.blacklist.time.time", return_value=later):
        for _ in range(3):
            await blacklist.record_failure("NEW", "us-stock")
        result = await blacklist.cleanup_blacklist()

        assert result == {"success": True, "cleaned_items": 1}
        assert [entry["symbol"] for entry in await blacklist.get_blacklisted_symbols()] == ["NEW"]


async def test_store_errors_do_not_block_fetches():
    with patch("marketdata.services.blacklist.AsyncSessionLocal", side_effect=RuntimeError("store down")):
        assert await blacklist.is_blacklisted("AAPL", "us-stock") is False
        failure = await blacklist.record_failure("AAPL", "us-stock")
        assert failure == {"symbol": "AAPL", "error": "store down"}
        assert await blacklist.record_success("AAPL", "us-stock") is False
        assert await blacklist.get_blacklisted_symbols() == []
        assert (await blacklist.cleanup_blacklist())["success"] is False

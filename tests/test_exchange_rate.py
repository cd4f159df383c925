import pytest
import httpx
from datetime import date

from marketdata.services import exchange_rate


def rate_client(rates=None, status=200, calls=None):
    rates = rates or {}

    def handler(request: httpx.Request) -> httpx.Response:
        base = request.url.params["base"]
        target = request.url.params["symbols"]
        if calls is not None:
            calls.append((base, target))
        if status != 200:
            return httpx.Response(status)
        if (base, target) not in rates:
            return httpx.Response(200, json={"success": True, "base": base, "rates": {}})
        return httpx.Response(200, json={"success": True, "base": base, "rates": {target: rates[(base, target)]}})

    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def test_same_currency_is_identity():
    quote = await exchange_rate.get_exchange_rate("EUR", "EUR")

    assert quote.rate == 1
    assert quote.source == "Internal (same currencies)"
    assert quote.pair == "EUREUR"


async def test_live_rate_used_when_available():
    calls = []
    quote = await exchange_rate.get_exchange_rate("USD", "JPY", client_factory=rate_client({("USD", "JPY"): 151.25}, calls=calls))

    assert quote.rate == 151.25
    assert quote.source == "exchangerate-host"
    assert calls == [("USD", "JPY")]


async def test_reciprocal_request_uses_native_pair():
    calls = []
    quote = await exchange_rate.get_exchange_rate("JPY", "USD", client_factory=rate_client({("USD", "JPY"): 150.0}, calls=calls))

    assert calls == [("USD", "JPY")]
    assert quote.base == "JPY" and quote.target == "USD"
    assert quote.rate == pytest.approx(1 / 150.0)


async def test_live_failure_falls_back_to_daily_estimate(sent_alerts):
    quote = await exchange_rate.get_exchange_rate("USD", "JPY", client_factory=rate_client(status=400))

    assert quote.source == "dynamic-calculation"
    assert quote.rate > 0
    assert sent_alerts.await_count == 1


async def test_live_failure_alerts_are_throttled_per_pair(sent_alerts):
    failing = rate_client(status=400)

    await exchange_rate.get_exchange_rate("USD", "JPY", client_factory=failing)
    await exchange_rate.get_exchange_rate("USD", "JPY", client_factory=failing)
    await exchange_rate.get_exchange_rate("JPY", "USD", client_factory=failing)
    await exchange_rate.get_exchange_rate("EUR", "USD", client_factory=failing)

    subjects = [call.args[0] for call in sent_alerts.await_args_list]
    assert subjects == ["Exchange rate API failure", "Exchange rate API failure"]
    assert sent_alerts.await_args_list[0].args[2]["base"] == "USD"


async def test_transient_live_failures_are_retried(sent_alerts):
    calls = []
    quote = await exchange_rate.get_exchange_rate("USD", "JPY", client_factory=rate_client(status=503, calls=calls))

    assert len(calls) == 3
    assert quote.source == "dynamic-calculation"


@pytest.mark.parametrize("base,target,source", [
    ("USD", "JPY", "dynamic-calculation"),
    ("EUR", "USD", "dynamic-calculation"),
    ("GBP", "JPY", "dynamic-calculation"),
    ("EUR", "GBP", "hardcoded-values"),
    ("USD", "CHF", "hardcoded-values"),
    ("BTC", "XAU", "Emergency Fallback"),
])
async def test_reciprocal_rates_multiply_to_one_at_every_stage(base, target, source, sent_alerts):
    failing = rate_client(status=400)

    forward = await exchange_rate.get_exchange_rate(base, target, client_factory=failing)
    backward = await exchange_rate.get_exchange_rate(target, base, client_factory=failing)

    assert forward.source == backward.source == source
    assert forward.rate * backward.rate == pytest.approx(1.0)


async def test_emergency_fallback_is_flagged_and_alerted(sent_alerts):
    quote = await exchange_rate.get_exchange_rate("XAU", "BTC", client_factory=rate_client(status=400))

    assert quote.is_default is True
    assert quote.error
    assert sent_alerts.await_args.kwargs["critical"] is True


async def test_malformed_live_payload_advances_chain(sent_alerts):
    quote = await exchange_rate.get_exchange_rate("EUR", "USD", client_factory=rate_client({("EUR", "USD"): -1}))
    assert quote.source == "dynamic-calculation"


def test_daily_fluctuation_is_deterministic_and_bounded():
    # 2026-10-16 is day 289, a Friday (5): seed 94 -> +2.64%
    assert exchange_rate.daily_fluctuation(date(2026, 10, 16)) == pytest.approx(2.64)
    assert exchange_rate.daily_fluctuation(date(2026, 1, 4)) == pytest.approx(-2.76)
    for day in range(1, 366):
        value = exchange_rate.daily_fluctuation(date.fromordinal(date(2025, 1, 1).toordinal() + day - 1))
        assert -3 <= value < 3


def test_dynamic_cross_rates_follow_baselines():
    today = date(2026, 10, 16)
    usd_jpy, _ = exchange_rate.dynamic_rate("USD", "JPY", today)
    eur_jpy, _ = exchange_rate.dynamic_rate("EUR", "JPY", today)

    assert usd_jpy == pytest.approx(148.5 * 1.0264)
    assert eur_jpy == pytest.approx(usd_jpy * 1.08)
    with pytest.raises(exchange_rate.UnsupportedPairError):
        exchange_rate.dynamic_rate("EUR", "GBP", today)


async def test_batch_rates_keyed_by_pair(sent_alerts):
    quotes = await exchange_rate.get_batch_exchange_rates(
        [("USD", "JPY"), ("EUR", "EUR")], client_factory=rate_client({("USD", "JPY"): 149.0})
    )

    assert set(quotes) == {"USD-JPY", "EUR-EUR"}
    assert quotes["USD-JPY"].rate == 149.0
    assert quotes["EUR-EUR"].rate == 1


async def test_batch_requires_pairs():
    with pytest.raises(ValueError):
        await exchange_rate.get_batch_exchange_rates([])

"""
Cascading exchange-rate resolver.

Stages run strictly in order and the first usable answer wins:
same currency, live API, deterministic daily estimate, static table, and a
global emergency default. Every pair is resolved in its market quoting
orientation; a reciprocal request returns ``1 / rate`` from the same stage, so
``rate(A, B) * rate(B, A)`` stays at 1 whichever stage answers.
"""
import asyncio
from datetime import date
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from marketdata.core import config
from marketdata.core.logging_config import get_logger
from marketdata.db.store import utcnow
from marketdata.ingestion.sources import exchangerate_host
from marketdata.schemas.quotes import ExchangeRateQuote
from marketdata.services import alerts
from marketdata.services.retry import with_retry

logger = get_logger("exchange_rate")
settings = config.get_settings()

SOURCE_SAME_CURRENCY = "Internal (same currencies)"
SOURCE_LIVE_API = exchangerate_host.SOURCE_NAME
SOURCE_DYNAMIC = "dynamic-calculation"
SOURCE_HARDCODED = "hardcoded-values"
SOURCE_EMERGENCY = "Emergency Fallback"

# Market quoting precedence: the earlier currency is the base of the native pair
QUOTE_PRECEDENCE = ["EUR", "GBP", "AUD", "NZD", "USD", "CAD", "CHF", "CNY", "HKD", "SGD", "KRW", "JPY"]

HARDCODED_RATES: Dict[Tuple[str, str], float] = {
    ("EUR", "USD"): 1.08,
    ("EUR", "JPY"): 160.2,
    ("EUR", "GBP"): 0.85,
    ("GBP", "USD"): 1.27,
    ("GBP", "JPY"): 189.8,
    ("AUD", "USD"): 0.66,
    ("USD", "CAD"): 1.36,
    ("USD", "CHF"): 0.88,
}

EUR_USD_BASELINE = 1.08
GBP_USD_BASELINE = 1.27


class UnsupportedPairError(LookupError):
    pass


def _precedence(code: str) -> Tuple[int, str]:
    try:
        return (QUOTE_PRECEDENCE.index(code), code)
    except ValueError:
        return (len(QUOTE_PRECEDENCE), code)

def native_orientation(base: str, target: str) -> Tuple[str, str, bool]:
    """(native_base, native_target, inverted)"""
    if _precedence(base) <= _precedence(target):
        return base, target, False
    return target, base, True


# --- Stages (native orientation only) ---

def daily_fluctuation(today: Optional[date] = None) -> float:
    """Deterministic percentage in [-3, 3) for the given day."""
    today = today or utcnow().date()
    day_of_year = today.timetuple().tm_yday
    weekday = today.isoweekday() % 7  # Sunday == 0
    seed = (day_of_year + weekday) % 100
    return seed / 100 * 6 - 3

def dynamic_rate(base: str, target: str, today: Optional[date] = None) -> Tuple[float, float]:
    """(rate, fluctuation_percent) for the pairs the daily estimate covers."""
    fluctuation = daily_fluctuation(today)
    usd_jpy = settings.DEFAULT_EXCHANGE_RATE * (1 + fluctuation / 100)
    eur_usd = EUR_USD_BASELINE * (1 + fluctuation / 200)
    gbp_usd = GBP_USD_BASELINE * (1 + fluctuation / 200)
    table = {
        ("USD", "JPY"): (usd_jpy, fluctuation),
        ("EUR", "USD"): (eur_usd, fluctuation / 2),
        ("EUR", "JPY"): (usd_jpy * EUR_USD_BASELINE, fluctuation),
        ("GBP", "USD"): (gbp_usd, fluctuation / 2),
        ("GBP", "JPY"): (usd_jpy * GBP_USD_BASELINE, fluctuation),
    }
    if (base, target) not in table:
        raise UnsupportedPairError(f"No daily estimate for {base}/{target}")
    return table[(base, target)]

def hardcoded_rate(base: str, target: str) -> float:
    if (base, target) == ("USD", "JPY"):
        return settings.DEFAULT_EXCHANGE_RATE
    if (base, target) not in HARDCODED_RATES:
        raise UnsupportedPairError(f"No static rate for {base}/{target}")
    return HARDCODED_RATES[(base, target)]

def native_hardcoded_rate(base: str, target: str) -> float:
    """Static rate for any orientation, emergency default when unknown."""
    if base == target:
        return 1.0
    native_base, native_target, inverted = native_orientation(base, target)
    try:
        rate = hardcoded_rate(native_base, native_target)
    except UnsupportedPairError:
        rate = settings.DEFAULT_EXCHANGE_RATE
    return 1 / rate if inverted else rate


def _quote(base, target, rate, source, inverted, fluctuation=0.0, **extra) -> ExchangeRateQuote:
    previous = rate * (1 - fluctuation / 100)
    if inverted:
        rate, previous = 1 / rate, 1 / previous
    change = rate - previous
    change_percent = change / previous * 100
    return ExchangeRateQuote(
        pair=f"{base}{target}",
        base=base,
        target=target,
        rate=rate,
        change=change,
        change_percent=change_percent,
        last_updated=utcnow(),
        source=source,
        **extra,
    )


async def get_exchange_rate(
    base: str = "USD",
    target: str = "JPY",
    client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
) -> ExchangeRateQuote:
    base = base.strip().upper()
    target = target.strip().upper()
    if not base or not target:
        raise ValueError("base and target currency codes are required")

    if base == target:
        return _quote(base, target, 1.0, SOURCE_SAME_CURRENCY, False)

    native_base, native_target, inverted = native_orientation(base, target)
    errors: List[str] = []

    # 1. live API
    try:
        rate = await with_retry(
            lambda: exchangerate_host.fetch_rate(native_base, native_target, client_factory=client_factory),
            max_retries=2,
            base_delay=0.3,
        )
        logger.info("exchange_rate_resolved", pair=f"{base}{target}", source=SOURCE_LIVE_API)
        return _quote(base, target, rate, SOURCE_LIVE_API, inverted)
    except Exception as e:
        errors.append(f"{SOURCE_LIVE_API}: {e}")
        logger.warning("exchange_rate_stage_failed", pair=f"{base}{target}", stage=SOURCE_LIVE_API, error=str(e))
        await alerts.throttled_alert(
            f"fx-live:{native_base}{native_target}",
            "Exchange rate API failure",
            f"An error occurred: {e}",
            {"base": base, "target": target, "source": SOURCE_LIVE_API, "error": {"name": type(e).__name__, "message": str(e)}},
        )

    # 2. deterministic daily estimate
    try:
        rate, fluctuation = dynamic_rate(native_base, native_target)
        logger.info("exchange_rate_resolved", pair=f"{base}{target}", source=SOURCE_DYNAMIC)
        return _quote(base, target, rate, SOURCE_DYNAMIC, inverted, fluctuation)
    except UnsupportedPairError as e:
        errors.append(f"{SOURCE_DYNAMIC}: {e}")

    # 3. static table
    try:
        rate = hardcoded_rate(native_base, native_target)
        logger.info("exchange_rate_resolved", pair=f"{base}{target}", source=SOURCE_HARDCODED)
        return _quote(base, target, rate, SOURCE_HARDCODED, inverted)
    except UnsupportedPairError as e:
        errors.append(f"{SOURCE_HARDCODED}: {e}")

    # 4. emergency default
    logger.error("exchange_rate_emergency_fallback", pair=f"{base}{target}", errors=errors)
    await alerts.notify_error(
        "All exchange rate sources failed",
        "; ".join(errors),
        {"base": base, "target": target},
        critical=True,
    )
    return _quote(
        base, target, settings.DEFAULT_EXCHANGE_RATE, SOURCE_EMERGENCY, inverted,
        is_default=True, error="; ".join(errors),
    )


async def get_batch_exchange_rates(
    pairs: Sequence[Tuple[str, str]],
    client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
) -> Dict[str, ExchangeRateQuote]:
    """Resolve many (base, target) pairs; keys are ``"BASE-TARGET"``."""
    if not pairs:
        raise ValueError("At least one currency pair is required")
    quotes = await asyncio.gather(*(get_exchange_rate(base, target, client_factory) for base, target in pairs))
    return {f"{quote.base}-{quote.target}": quote for quote in quotes}

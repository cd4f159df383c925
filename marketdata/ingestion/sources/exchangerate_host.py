from typing import Callable, Optional

import httpx

from marketdata.core import config
from marketdata.core.errors import DataIntegrityError, classify_http_error
from marketdata.core.logging_config import get_logger

logger = get_logger("exchangerate_host")
settings = config.get_settings()

SOURCE_NAME = "exchangerate-host"

def _default_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.EXCHANGE_RATE_TIMEOUT)

async def fetch_rate(
    base: str,
    target: str,
    client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
) -> float:
    """
    Latest ``base``->``target`` rate from exchangerate.host.
    Raises errors from ``marketdata.core.errors`` so callers can decide on retries.
    """
    params = {"base": base, "symbols": target}
    if settings.EXCHANGE_RATE_API_KEY:
        params["access_key"] = settings.EXCHANGE_RATE_API_KEY

    factory = client_factory or _default_client
    try:
        async with factory() as client:
            response = await client.get(settings.EXCHANGE_RATE_API_URL, params=params)
            response.raise_for_status()
            data = response.json()
    except Exception as e:
        raise classify_http_error(e, source=SOURCE_NAME) from e

    rates = data.get("rates") if isinstance(data, dict) else None
    rate = rates.get(target) if isinstance(rates, dict) else None
    if not isinstance(rate, (int, float)) or isinstance(rate, bool) or rate <= 0:
        raise DataIntegrityError(f"No usable {base}/{target} rate in response", source=SOURCE_NAME)

    logger.debug("rate_fetched", base=base, target=target, rate=rate)
    return float(rate)

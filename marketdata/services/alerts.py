"""
Alert gateway. Every component reports trouble through here; delivery is a
JSON POST to ``ALERT_WEBHOOK_URL``. Sending never raises: a failed alert is
logged and reported as ``False``.
"""
import json
import time
import traceback
from typing import Any, Callable, Dict, Optional

import httpx

from marketdata.core import config
from marketdata.core.logging_config import get_logger
from marketdata.db.store import utcnow
from marketdata.services.retry import with_retry

logger = get_logger("alerts")
settings = config.get_settings()

SUBJECT_MAX_LENGTH = 100

# key -> monotonic time of last send; process-local and best effort
_last_sent: Dict[str, float] = {}

def _default_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT)

def format_subject(subject: str, critical: bool = False) -> str:
    prefix = f"[{settings.SERVICE_NAME}-{settings.ENVIRONMENT}]"
    if critical:
        prefix = "[CRITICAL]" + prefix
    return f"{prefix} {subject}"[:SUBJECT_MAX_LENGTH]

def format_message(message: str, detail: Optional[Dict[str, Any]] = None) -> str:
    body = message
    if detail:
        body += "\n\nDetails:\n" + json.dumps(detail, indent=2, ensure_ascii=False, default=str)
    return body

async def send_alert(
    subject: str,
    message: str,
    detail: Optional[Dict[str, Any]] = None,
    critical: bool = False,
    client_factory: Callable[[], httpx.AsyncClient] = _default_client,
) -> bool:
    full_subject = format_subject(subject, critical)
    log = logger.critical if critical else logger.warning
    log("alert", subject=full_subject, message=message, detail=detail)

    if not settings.ALERT_WEBHOOK_URL:
        logger.info("alert_not_delivered", reason="ALERT_WEBHOOK_URL not configured", subject=full_subject)
        return False

    payload = {
        "subject": full_subject,
        "message": format_message(message, detail),
        "critical": critical,
        "service": settings.SERVICE_NAME,
        "environment": settings.ENVIRONMENT,
        "timestamp": utcnow().isoformat(),
    }

    async def _post():
        async with client_factory() as client:
            response = await client.post(settings.ALERT_WEBHOOK_URL, json=payload)
            response.raise_for_status()

    try:
        await with_retry(_post, max_retries=2, base_delay=0.5)
        return True
    except Exception as e:
        logger.error("alert_delivery_failed", subject=full_subject, error=str(e))
        return False

async def notify(message: str, detail: Optional[Dict[str, Any]] = None, **kwargs) -> bool:
    return await send_alert("Notification", message, detail, critical=False, **kwargs)

async def notify_error(
    subject: str,
    error: BaseException | str,
    context: Optional[Dict[str, Any]] = None,
    critical: bool = False,
    **kwargs,
) -> bool:
    detail = dict(context or {})
    if isinstance(error, BaseException):
        detail["error"] = {
            "type": error.__class__.__name__,
            "message": str(error),
            "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__))[-2000:],
        }
    else:
        detail["error"] = {"message": error}
    return await send_alert(subject, f"An error occurred: {error}", detail, critical=critical, **kwargs)

async def throttled_alert(
    key: str,
    subject: str,
    message: str,
    detail: Optional[Dict[str, Any]] = None,
    interval_minutes: float = 30,
    critical: bool = False,
    **kwargs,
) -> bool:
    """Send at most one alert per ``key`` within ``interval_minutes``."""
    now = time.monotonic()
    last = _last_sent.get(key)
    if last is not None and now - last < interval_minutes * 60:
        logger.debug("alert_throttled", key=key)
        return False
    _last_sent[key] = now
    return await send_alert(subject, message, detail, critical=critical, **kwargs)

def reset_throttle():
    _last_sent.clear()

"""
Request context extraction.
Turns the headers, query string and peer address of an inbound redirect into
a RedirectContext. Nothing here raises: unparseable input becomes "unknown".
"""

import re
from datetime import datetime
from typing import Dict, Mapping, Optional, Tuple

from starlette.requests import Request
from user_agents import parse as parse_user_agent  # type: ignore

from .geo import GeoLookup, safe_lookup
from .schemas import DeviceClass, GeoLocation, RedirectContext
from .utils import clock_now, day_of_week
from .logging_config import get_logger

logger = get_logger(__name__)

LANGUAGE_RE = re.compile(r"^([a-z]{2})", re.IGNORECASE)

# ua-parser reports this family when it does not recognise the component
UNKNOWN_FAMILY = "Other"


def get_client_ip(headers: Mapping[str, str], remote_addr: Optional[str]) -> str:
    """First X-Forwarded-For entry if present, else the socket peer."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return remote_addr or "0.0.0.0"


def parse_language(header: Optional[str]) -> Optional[str]:
    """Two-letter lower-case language from Accept-Language."""
    if not header:
        return None
    match = LANGUAGE_RE.match(header.strip())
    return match.group(1).lower() if match else None


def _family(component) -> Optional[str]:
    family = getattr(component, "family", None)
    if not family or family == UNKNOWN_FAMILY:
        return None
    return family


def classify_user_agent(user_agent: Optional[str]) -> Tuple[DeviceClass, Optional[str], Optional[str]]:
    """
    Returns (device, os, browser).
    A missing browser, or one whose name contains "bot", makes the device a bot
    whatever the parser guessed for the hardware.
    """
    try:
        ua = parse_user_agent(user_agent or "")
    except Exception as e:
        logger.debug(f"Unparseable user agent {user_agent!r}: {e}")
        return DeviceClass.DESKTOP, None, None

    os_name = _family(ua.os)
    browser = _family(ua.browser)

    if ua.is_tablet:
        device = DeviceClass.TABLET
    elif ua.is_mobile:
        device = DeviceClass.MOBILE
    else:
        device = DeviceClass.DESKTOP

    if not browser or "bot" in browser.lower():
        device = DeviceClass.BOT

    return device, os_name, browser


def parse_context(
    headers: Mapping[str, str],
    query_params: Optional[Mapping[str, str]] = None,
    remote_addr: Optional[str] = None,
    geo: Optional[GeoLookup] = None,
    now: Optional[datetime] = None,
    location: Optional[GeoLocation] = None,
) -> RedirectContext:
    """
    Build the RedirectContext for one request. Pure apart from the geo lookup,
    which is skipped when the caller already resolved `location`.
    """
    headers = {k.lower(): v for k, v in headers.items()}
    query_params = query_params or {}

    device, os_name, browser = classify_user_agent(headers.get("user-agent"))

    ip = get_client_ip(headers, remote_addr)
    if location is None:
        location = safe_lookup(geo, ip)
    country = location.country.upper() if location and location.country else None

    wall_clock = clock_now(now)

    return RedirectContext(
        country=country,
        language=parse_language(headers.get("accept-language")),
        hour=wall_clock.hour,
        day_of_week=day_of_week(wall_clock),
        device=device,
        os=os_name,
        browser=browser,
        campaign=query_params.get("utm_campaign") or query_params.get("campaign") or None,
        referrer=headers.get("referer") or headers.get("referrer"),
    )


def get_headers(request: Request) -> Dict[str, str]:
    """Flatten request headers to a lower-cased dict (first value wins)."""
    headers: Dict[str, str] = {}
    for key, value in request.headers.items():
        headers.setdefault(key.lower(), value)
    return headers


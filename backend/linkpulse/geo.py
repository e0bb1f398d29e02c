"""
IP geolocation lookups.
The redirect pipeline only needs a best-effort country/city for a client IP,
so every implementation returns None instead of raising.
"""

import ipaddress
import threading
from collections import OrderedDict
from typing import Any, Dict, Optional, Protocol, Tuple

import httpx

from .config import settings
from .schemas import GeoLocation
from .logging_config import get_logger

logger = get_logger(__name__)

IP_API_FIELDS = "status,message,countryCode,city"


class GeoLookup(Protocol):
    def lookup(self, ip: str) -> Optional[GeoLocation]:
        ...


class NullGeoLookup:
    """Lookup that never knows where anyone is."""

    def lookup(self, ip: str) -> Optional[GeoLocation]:
        return None


def is_public_ip(ip: Optional[str]) -> bool:
    """Private, loopback and reserved addresses have no location."""
    try:
        return ipaddress.ip_address((ip or "").strip()).is_global
    except ValueError:
        return False


class IpApiGeoLookup:
    """
    Country and city from the ip-api.com JSON endpoint.
    Answers are kept in a bounded LRU cache, including "no location" answers;
    transport failures are not cached so the next hit retries.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        cache_size: Optional[int] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = (base_url or settings.GEO_API_URL).rstrip("/") + "/"
        self._client = client or httpx.Client(timeout=timeout or settings.GEO_TIMEOUT_SECONDS)
        self._cache_size = cache_size or settings.GEO_CACHE_SIZE
        self._cache: "OrderedDict[str, Optional[GeoLocation]]" = OrderedDict()
        self._lock = threading.Lock()

    def lookup(self, ip: str) -> Optional[GeoLocation]:
        if not is_public_ip(ip):
            return None
        ip = ip.strip()

        with self._lock:
            if ip in self._cache:
                self._cache.move_to_end(ip)
                return self._cache[ip]

        location, cacheable = self._fetch(ip)
        if cacheable:
            with self._lock:
                self._cache[ip] = location
                while len(self._cache) > self._cache_size:
                    self._cache.popitem(last=False)
        return location

    def _fetch(self, ip: str) -> Tuple[Optional[GeoLocation], bool]:
        try:
            response = self._client.get(f"{self.base_url}{ip}", params={"fields": IP_API_FIELDS})
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"IP lookup failed for {ip}: {e}")
            return None, False

        if data.get("status") != "success":
            logger.debug(f"No location for {ip}: {data.get('message')}")
            return None, True

        country = data.get("countryCode")
        return GeoLocation(
            country=country.upper() if country else None,
            city=data.get("city") or None,
        ), True

    def close(self) -> None:
        self._client.close()


class StaticGeoLookup:
    """
    Table-driven lookup keyed by exact IP or by literal prefix (e.g. "200.147.").
    Exact matches win; otherwise the longest matching prefix is used.
    """

    def __init__(self, table: Optional[Dict[str, GeoLocation]] = None):
        self._table: Dict[str, GeoLocation] = dict(table or {})

    def add(self, ip_or_prefix: str, country: Optional[str], city: Optional[str] = None) -> None:
        self._table[ip_or_prefix] = GeoLocation(
            country=country.upper() if country else None,
            city=city,
        )

    def lookup(self, ip: str) -> Optional[GeoLocation]:
        if not ip:
            return None
        exact = self._table.get(ip)
        if exact:
            return exact
        prefixes = [p for p in self._table if p.endswith((".", ":")) and ip.startswith(p)]
        if not prefixes:
            return None
        return self._table[max(prefixes, key=len)]


def safe_lookup(geo: Optional[GeoLookup], ip: str) -> Optional[GeoLocation]:
    """Run a lookup, treating any failure as unknown location."""
    if geo is None:
        return None
    try:
        return geo.lookup(ip)
    except Exception as e:
        logger.warning(f"Geo lookup failed for {ip}: {e}")
        return None


def _static_lookup(table: Dict[str, Any]) -> StaticGeoLookup:
    lookup = StaticGeoLookup()
    for key, value in table.items():
        if isinstance(value, dict):
            lookup.add(key, value.get("country"), value.get("city"))
        else:
            lookup.add(key, str(value))
    return lookup


def build_geo_lookup(provider: Optional[str] = None) -> GeoLookup:
    """Lookup selected by GEO_PROVIDER."""
    provider = (provider or settings.GEO_PROVIDER).lower()
    if provider == "ip-api":
        return IpApiGeoLookup()
    if provider == "static":
        return _static_lookup(settings.GEO_TABLE)
    if provider != "none":
        logger.warning(f"Unknown GEO_PROVIDER {provider!r}, country lookups disabled")
    return NullGeoLookup()

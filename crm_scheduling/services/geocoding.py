"""
Address geocoding gateway.

Resolves a free-text address to coordinates plus a normalized postal code and
city. Two providers are supported:

- Nominatim (OpenStreetMap): default, no key, needs a descriptive User-Agent
- Mapbox Places: requires MAPBOX_API_KEY

Every provider call, body included, must finish within
GEOCODING_TIMEOUT_SECONDS. Any failure
(timeout, HTTP error, empty result, bad payload, missing configuration) is
raised as ``GeocodingFailure`` so callers have a single thing to catch.
"""

import json
import logging
import time
from typing import Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel

from ..cache import Cache, build_geocode_key, cache
from ..config import (
    GEOCODING_CACHE_SECONDS,
    GEOCODING_COUNTRY,
    GEOCODING_PROVIDER,
    GEOCODING_TIMEOUT_SECONDS,
    MAPBOX_API_KEY,
    MAPBOX_BASE_URL,
    NOMINATIM_BASE_URL,
    NOMINATIM_USER_AGENT,
)

logger = logging.getLogger(__name__)


class GeocodeResult(BaseModel):
    latitude: float
    longitude: float
    postal_code: Optional[str] = None
    city: Optional[str] = None
    address: Optional[str] = None


class GeocodingFailure(Exception):
    """The address could not be resolved"""


class Geocoder:
    """Base class: caching, timeout and error normalization around ``_lookup``"""

    provider = "base"

    def __init__(
        self,
        timeout: float = GEOCODING_TIMEOUT_SECONDS,
        country: Optional[str] = GEOCODING_COUNTRY,
        cache: Optional[Cache] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.timeout = timeout
        self.country = country
        self.cache = cache
        self.transport = transport

    def geocode(self, address: str) -> GeocodeResult:
        address = (address or "").strip()
        if not address:
            raise GeocodingFailure("Empty address")

        cache_key = build_geocode_key(self.provider, self.country, address)
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached:
                return GeocodeResult(**cached)

        deadline = time.monotonic() + self.timeout
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                result = self._lookup(client, address, deadline)
        except GeocodingFailure:
            raise
        except httpx.TimeoutException as e:
            raise GeocodingFailure(f"{self.provider} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise GeocodingFailure(f"{self.provider} request failed: {e}") from e
        except (ValueError, KeyError, TypeError, IndexError) as e:
            raise GeocodingFailure(f"Unexpected {self.provider} response: {e}") from e

        if self.cache is not None:
            self.cache.set(cache_key, result.model_dump(), ttl=GEOCODING_CACHE_SECONDS)

        logger.debug(f"📍 Geocoded via {self.provider}: ({result.latitude}, {result.longitude})")
        return result

    def _lookup(self, client: httpx.Client, address: str, deadline: float) -> GeocodeResult:
        raise NotImplementedError

    def _fetch(self, client: httpx.Client, url: str, deadline: float, **kwargs) -> tuple[int, bytes]:
        """GET ``url`` and read the body, giving up once ``deadline`` passes"""
        chunks = []
        with client.stream("GET", url, **kwargs) as resp:
            for chunk in resp.iter_bytes():
                if time.monotonic() > deadline:
                    raise GeocodingFailure(f"{self.provider} exceeded {self.timeout}s")
                chunks.append(chunk)
        if time.monotonic() > deadline:
            raise GeocodingFailure(f"{self.provider} exceeded {self.timeout}s")
        return resp.status_code, b"".join(chunks)


class NominatimGeocoder(Geocoder):
    provider = "nominatim"

    def __init__(
        self,
        base_url: str = NOMINATIM_BASE_URL,
        user_agent: str = NOMINATIM_USER_AGENT,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent

    def _lookup(self, client: httpx.Client, address: str, deadline: float) -> GeocodeResult:
        params = {
            "q": address,
            "format": "json",
            "addressdetails": "1",
            "limit": "1",
        }
        if self.country:
            params["countrycodes"] = self.country

        headers = {
            "User-Agent": self.user_agent,
            "Accept": "application/json",
        }

        status, body = self._fetch(
            client, f"{self.base_url}/search", deadline, params=params, headers=headers
        )
        if status >= 400:
            logger.warning(f"Nominatim error {status}: {body[:200]!r}")
            raise GeocodingFailure(f"Nominatim returned HTTP {status}")

        items = json.loads(body)
        if not items:
            raise GeocodingFailure("No results from geocoding")

        item = items[0]
        details = item.get("address", {})

        # City can live in several fields depending on the place size
        city = (
            details.get("city")
            or details.get("town")
            or details.get("village")
            or details.get("hamlet")
            or details.get("municipality")
        )

        return GeocodeResult(
            latitude=float(item["lat"]),
            longitude=float(item["lon"]),
            postal_code=details.get("postcode") or None,
            city=city,
            address=item.get("display_name"),
        )


class MapboxGeocoder(Geocoder):
    provider = "mapbox"

    def __init__(
        self,
        api_key: Optional[str] = MAPBOX_API_KEY,
        base_url: str = MAPBOX_BASE_URL,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    def _lookup(self, client: httpx.Client, address: str, deadline: float) -> GeocodeResult:
        if not self.api_key:
            raise GeocodingFailure("MAPBOX_API_KEY not set")

        params = {
            "access_token": self.api_key,
            "limit": "1",
            "types": "address,place,postcode",
        }
        if self.country:
            params["country"] = self.country

        url = f"{self.base_url}/geocoding/v5/mapbox.places/{quote(address, safe='')}.json"
        status, body = self._fetch(client, url, deadline, params=params)
        if status >= 400:
            # Never log the URL, it carries the access token
            logger.warning(f"Mapbox error {status}")
            raise GeocodingFailure(f"Mapbox returned HTTP {status}")

        features = json.loads(body).get("features") or []
        if not features:
            raise GeocodingFailure("No results from geocoding")

        feature = features[0]
        longitude, latitude = feature["center"]

        postal_code = None
        city = feature.get("text")
        for ctx in feature.get("context") or []:
            ctx_id = ctx.get("id") or ""
            if ctx_id.startswith("postcode"):
                postal_code = ctx.get("text")
            elif ctx_id.startswith("place"):
                city = ctx.get("text")

        if not postal_code and "postcode" in (feature.get("place_type") or []):
            postal_code = feature.get("text")

        return GeocodeResult(
            latitude=float(latitude),
            longitude=float(longitude),
            postal_code=postal_code,
            city=city,
            address=feature.get("place_name"),
        )


PROVIDERS = {
    NominatimGeocoder.provider: NominatimGeocoder,
    MapboxGeocoder.provider: MapboxGeocoder,
}


def get_geocoder() -> Geocoder:
    """Build the configured geocoder (FastAPI dependency)"""
    geocoder_cls = PROVIDERS.get(GEOCODING_PROVIDER)
    if geocoder_cls is None:
        logger.warning(f"Unknown GEOCODING_PROVIDER '{GEOCODING_PROVIDER}', using nominatim")
        geocoder_cls = NominatimGeocoder
    return geocoder_cls(cache=cache)

"""Geocoding gateway: provider parsing, failure mapping and caching"""

import json
import time

import httpx
import pytest
from conftest import RIVOLI_RESPONSE, make_geocoder

from crm_scheduling.cache import build_geocode_key
from crm_scheduling.services.geocoding import (
    GeocodingFailure,
    MapboxGeocoder,
    NominatimGeocoder,
    get_geocoder,
)

MAPBOX_RESPONSE = {
    "features": [
        {
            "place_type": ["address"],
            "text": "Rue de Rivoli",
            "place_name": "10 Rue de Rivoli, 75004 Paris, France",
            "center": [2.3376, 48.8606],
            "context": [
                {"id": "postcode.123", "text": "75004"},
                {"id": "place.456", "text": "Paris"},
                {"id": "country.789", "text": "France"},
            ],
        }
    ]
}


class FakeCache:
    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ttl=3600):
        self.store[key] = value
        return True


class TestNominatim:
    def test_parses_first_result(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            seen["user_agent"] = request.headers["User-Agent"]
            return httpx.Response(200, json=RIVOLI_RESPONSE)

        result = make_geocoder(handler).geocode("  10 Rue de Rivoli, Paris  ")

        assert result.latitude == pytest.approx(48.8606)
        assert result.longitude == pytest.approx(2.3376)
        assert result.postal_code == "75004"
        assert result.city == "Paris"
        assert seen["params"]["q"] == "10 Rue de Rivoli, Paris"
        assert seen["params"]["countrycodes"] == "fr"
        assert seen["user_agent"] == "crm-scheduling-tests"

    def test_town_used_when_no_city(self):
        payload = [
            {
                "lat": "48.80",
                "lon": "2.12",
                "display_name": "Versailles",
                "address": {"town": "Versailles", "postcode": "78000"},
            }
        ]
        geocoder = make_geocoder(lambda request: httpx.Response(200, json=payload))
        assert geocoder.geocode("Versailles").city == "Versailles"

    def test_empty_result(self):
        geocoder = make_geocoder(lambda request: httpx.Response(200, json=[]))
        with pytest.raises(GeocodingFailure):
            geocoder.geocode("nowhere")

    def test_http_error_status(self):
        geocoder = make_geocoder(lambda request: httpx.Response(503, text="busy"))
        with pytest.raises(GeocodingFailure):
            geocoder.geocode("10 Rue de Rivoli")

    def test_malformed_payload(self):
        geocoder = make_geocoder(lambda request: httpx.Response(200, json=[{"lat": "x"}]))
        with pytest.raises(GeocodingFailure):
            geocoder.geocode("10 Rue de Rivoli")

    def test_timeout(self, slow_geocoder):
        with pytest.raises(GeocodingFailure) as exc:
            slow_geocoder.geocode("10 Rue de Rivoli")
        assert "timed out" in str(exc.value)

    def test_slow_body_hits_overall_deadline(self):
        class Trickle(httpx.SyncByteStream):
            def __iter__(self):
                body = json.dumps(RIVOLI_RESPONSE).encode()
                for i in range(0, len(body), 40):
                    time.sleep(0.05)
                    yield body[i : i + 40]

        geocoder = NominatimGeocoder(
            base_url="https://nominatim.test",
            timeout=0.2,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, stream=Trickle())),
        )
        with pytest.raises(GeocodingFailure) as exc:
            geocoder.geocode("10 Rue de Rivoli")
        assert "exceeded" in str(exc.value)

    def test_connection_error(self, unreachable_geocoder):
        with pytest.raises(GeocodingFailure):
            unreachable_geocoder.geocode("10 Rue de Rivoli")

    def test_blank_address(self, working_geocoder):
        with pytest.raises(GeocodingFailure):
            working_geocoder.geocode("   ")


class TestMapbox:
    def test_parses_context(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            return httpx.Response(200, json=MAPBOX_RESPONSE)

        geocoder = MapboxGeocoder(
            api_key="pk.test",
            base_url="https://mapbox.test",
            transport=httpx.MockTransport(handler),
        )
        result = geocoder.geocode("10 Rue de Rivoli")

        assert result.latitude == pytest.approx(48.8606)
        assert result.longitude == pytest.approx(2.3376)
        assert result.postal_code == "75004"
        assert result.city == "Paris"
        assert seen["url"].params["access_token"] == "pk.test"
        assert seen["url"].params["country"] == "fr"

    def test_missing_key(self):
        geocoder = MapboxGeocoder(
            api_key=None,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})),
        )
        with pytest.raises(GeocodingFailure):
            geocoder.geocode("10 Rue de Rivoli")

    def test_no_features(self):
        geocoder = MapboxGeocoder(
            api_key="pk.test",
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"features": []})
            ),
        )
        with pytest.raises(GeocodingFailure):
            geocoder.geocode("10 Rue de Rivoli")


class TestCaching:
    def test_second_lookup_served_from_cache(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json=RIVOLI_RESPONSE)

        cache = FakeCache()
        geocoder = NominatimGeocoder(
            base_url="https://nominatim.test",
            cache=cache,
            transport=httpx.MockTransport(handler),
        )

        first = geocoder.geocode("10 Rue de Rivoli")
        second = geocoder.geocode("10  rue de RIVOLI")

        assert len(calls) == 1
        assert second == first

    def test_failures_not_cached(self):
        cache = FakeCache()
        geocoder = NominatimGeocoder(
            base_url="https://nominatim.test",
            cache=cache,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])),
        )
        with pytest.raises(GeocodingFailure):
            geocoder.geocode("nowhere")
        assert cache.store == {}

    def test_key_hides_address(self):
        key = build_geocode_key("nominatim", "fr", "10 Rue de Rivoli")
        assert key.startswith("geo:nominatim:fr:")
        assert "Rivoli" not in key
        assert key == build_geocode_key("nominatim", "fr", "10   rue de rivoli")


def test_default_provider_is_nominatim():
    assert isinstance(get_geocoder(), NominatimGeocoder)

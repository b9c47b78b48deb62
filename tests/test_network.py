from __future__ import annotations

import requests

from wifiprobe.config import MeasurementConfig
from wifiprobe.measurements.network import resolve_network_context


class JsonResponse:
    def __init__(self, payload, status_code: int = 200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self):
        return self.payload


class LookupSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_lookup_resolves_ip_and_location() -> None:
    session = LookupSession(
        [
            JsonResponse({"ip": "198.51.100.7"}),
            JsonResponse({"city": "Lisbon", "region": "Lisbon", "country_name": "Portugal"}),
        ]
    )
    context = resolve_network_context(MeasurementConfig(), session=session)
    assert context.ip_address == "198.51.100.7"
    assert context.location == "Lisbon, Lisbon, Portugal"
    assert session.urls[1] == "https://ipapi.co/198.51.100.7/json/"


def test_ip_lookup_failure_uses_placeholder() -> None:
    session = LookupSession([requests.ConnectionError("offline")])
    context = resolve_network_context(MeasurementConfig(), session=session)
    assert (context.ip_address, context.location) == ("Unknown", "Unknown")


def test_geo_failure_keeps_the_ip() -> None:
    session = LookupSession([JsonResponse({"ip": "198.51.100.7"}), JsonResponse({}, status_code=429)])
    context = resolve_network_context(MeasurementConfig(), session=session)
    assert context.ip_address == "198.51.100.7"
    assert context.location == "Unknown"


def test_lookup_can_be_disabled() -> None:
    session = LookupSession([])
    context = resolve_network_context(MeasurementConfig(network_lookup=False), session=session)
    assert context.ip_address == "Unknown"
    assert session.urls == []

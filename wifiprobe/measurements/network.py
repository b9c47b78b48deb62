"""Public IP and rough location lookup done at the start of a run."""

from __future__ import annotations

import logging
from typing import Optional

import requests

from ..config import MeasurementConfig
from .models import NetworkContext

LOGGER = logging.getLogger(__name__)


def _format_location(payload: dict) -> str:
    parts = [payload.get("city"), payload.get("region"), payload.get("country_name")]
    label = ", ".join(str(p) for p in parts if p)
    return label or "Unknown"


def resolve_network_context(
    config: MeasurementConfig,
    session: Optional[requests.Session] = None,
) -> NetworkContext:
    """Never raises: any lookup failure degrades to placeholder values."""
    if not config.network_lookup:
        return NetworkContext.placeholder()

    http = session or requests
    context = NetworkContext.placeholder()
    try:
        response = http.get(config.ip_lookup_url, timeout=config.lookup_timeout)
        response.raise_for_status()
        ip_address = response.json().get("ip")
        if not ip_address:
            raise ValueError("IP lookup returned no address")
        context.ip_address = ip_address

        response = http.get(config.geo_lookup_url.format(ip=ip_address), timeout=config.lookup_timeout)
        response.raise_for_status()
        payload = response.json()
        if payload.get("error"):
            raise ValueError(payload.get("reason") or "geo lookup refused")
        context.location = _format_location(payload)
    except (requests.RequestException, ValueError) as exc:
        LOGGER.warning("Network context lookup failed, using placeholder: %s", exc)

    return context

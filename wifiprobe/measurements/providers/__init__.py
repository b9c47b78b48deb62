"""Provider registry."""

from __future__ import annotations

from typing import Callable, Dict, List

from ...config import ProviderConfig
from .base import ProbeContext, Provider, SampleCallback
from .heuristic import HeuristicEstimator
from .http_probe import HttpThroughputProvider
from .latency import HttpLatencyProbe, SocketLatencyProbe
from .socket_probe import SocketThroughputProvider

__all__ = [
    "HeuristicEstimator",
    "HttpLatencyProbe",
    "HttpThroughputProvider",
    "ProbeContext",
    "Provider",
    "SampleCallback",
    "SocketLatencyProbe",
    "SocketThroughputProvider",
    "build_provider",
    "build_providers",
    "provider_kinds",
]


def _http(cfg: ProviderConfig) -> Provider:
    return HttpThroughputProvider(cfg.name, url=cfg.url, upload_url=cfg.upload_url, timeout=cfg.timeout)


def _socket(cfg: ProviderConfig) -> Provider:
    return SocketThroughputProvider(cfg.name, host=cfg.host or "127.0.0.1", port=cfg.port, timeout=cfg.timeout)


def _heuristic(cfg: ProviderConfig) -> Provider:
    return HeuristicEstimator(cfg.name)


def _http_latency(cfg: ProviderConfig) -> Provider:
    if not cfg.url:
        raise ValueError(f"http_latency provider {cfg.name!r} needs a url")
    return HttpLatencyProbe(cfg.name, url=cfg.url, timeout=cfg.timeout)


def _socket_latency(cfg: ProviderConfig) -> Provider:
    return SocketLatencyProbe(cfg.name, host=cfg.host or "127.0.0.1", port=cfg.port, timeout=cfg.timeout)


_FACTORIES: Dict[str, Callable[[ProviderConfig], Provider]] = {
    "http": _http,
    "socket": _socket,
    "heuristic": _heuristic,
    "http_latency": _http_latency,
    "socket_latency": _socket_latency,
}


def provider_kinds() -> List[str]:
    return sorted(_FACTORIES)


def build_provider(cfg: ProviderConfig) -> Provider:
    """Instantiate a provider from its config entry."""
    factory = _FACTORIES.get(cfg.kind)
    if factory is None:
        raise ValueError(f"Unknown provider kind: {cfg.kind!r}. Available: {provider_kinds()}")
    return factory(cfg)


def build_providers(entries: List[ProviderConfig]) -> List[Provider]:
    return [build_provider(cfg) for cfg in entries if cfg.enabled]

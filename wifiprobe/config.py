"""Configuration loading helpers for the speed-test service."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


@dataclass
class PathsConfig:
    data_dir: Path
    logs_dir: Path


@dataclass
class DatabaseConfig:
    url: Optional[str] = None
    save_attempts: int = 3
    retry_delay_seconds: float = 0.5


@dataclass
class MeasurementConfig:
    phase_duration_seconds: float = 10.0
    sample_interval_seconds: float = 0.25
    min_viable_mbps: float = 1.0
    download_bytes: int = 25 * 1024 * 1024
    upload_bytes: int = 10 * 1024 * 1024
    latency_probe_count: int = 5
    network_lookup: bool = True
    ip_lookup_url: str = "https://api.ipify.org?format=json"
    geo_lookup_url: str = "https://ipapi.co/{ip}/json/"
    lookup_timeout: float = 5.0


@dataclass
class ProviderConfig:
    kind: str
    name: str
    url: Optional[str] = None
    upload_url: Optional[str] = None
    host: Optional[str] = None
    port: int = 5201
    timeout: float = 20.0
    enabled: bool = True


@dataclass
class ProvidersConfig:
    latency: List[ProviderConfig] = field(default_factory=list)
    download: List[ProviderConfig] = field(default_factory=list)
    upload: List[ProviderConfig] = field(default_factory=list)


@dataclass
class ProgressConfig:
    queue_size: int = 256
    history_size: int = 512
    grace_seconds: float = 30.0
    heartbeat_seconds: float = 15.0


@dataclass
class ProbeServerConfig:
    enabled: bool = True
    bind_address: str = "0.0.0.0"
    port: int = 5201


@dataclass
class SchedulerConfig:
    janitor_interval_seconds: int = 30


@dataclass
class WebConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    secret_key: str = "change-me"
    reverse_proxy_headers: bool = False
    max_workers: int = 4


@dataclass
class LoggingConfig:
    level: str = "INFO"
    buffer_size: int = 200


@dataclass
class AppConfig:
    root_dir: Path
    paths: PathsConfig
    database: DatabaseConfig
    measurement: MeasurementConfig
    providers: ProvidersConfig
    progress: ProgressConfig
    probe_server: ProbeServerConfig
    scheduler: SchedulerConfig
    web: WebConfig
    logging: LoggingConfig

    @property
    def database_url(self) -> str:
        if self.database.url:
            return self.database.url
        return f"sqlite:///{self.paths.data_dir / 'speedtests.db'}"


def _as_path(base: Path, maybe_path: Optional[str]) -> Path:
    if not maybe_path:
        raise ValueError("Path configuration entries cannot be empty")
    path = (base / maybe_path).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def _provider_list(entries: Optional[List[Dict[str, Any]]]) -> List[ProviderConfig]:
    providers = []
    for entry in entries or []:
        if "kind" not in entry:
            raise ValueError(f"Provider entry is missing 'kind': {entry}")
        entry = dict(entry)
        entry.setdefault("name", entry["kind"])
        providers.append(ProviderConfig(**entry))
    return providers


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load application configuration from YAML file."""

    root_dir = Path(path).resolve().parent if path else Path.cwd()
    source_path = Path(path) if path else root_dir / "config.yaml"
    if not source_path.exists():
        raise FileNotFoundError(f"Missing configuration file at {source_path}")

    with source_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    return build_config(data, root_dir)


def build_config(data: Dict[str, Any], root_dir: Path) -> AppConfig:
    paths_data = data.get("paths", {})
    paths = PathsConfig(
        data_dir=_as_path(root_dir, paths_data.get("data_dir", "data")),
        logs_dir=_as_path(root_dir, paths_data.get("logs_dir", "logs")),
    )

    providers_data = data.get("providers", {})
    providers = ProvidersConfig(
        latency=_provider_list(providers_data.get("latency")),
        download=_provider_list(providers_data.get("download")),
        upload=_provider_list(providers_data.get("upload")),
    )

    return AppConfig(
        root_dir=root_dir,
        paths=paths,
        database=DatabaseConfig(**data.get("database", {})),
        measurement=MeasurementConfig(**data.get("measurement", {})),
        providers=providers,
        progress=ProgressConfig(**data.get("progress", {})),
        probe_server=ProbeServerConfig(**data.get("probe_server", {})),
        scheduler=SchedulerConfig(**data.get("scheduler", {})),
        web=WebConfig(**data.get("web", {})),
        logging=LoggingConfig(**data.get("logging", {})),
    )

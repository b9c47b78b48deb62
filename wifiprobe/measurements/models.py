"""Shared dataclasses for measurements."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class Phase(str, Enum):
    LATENCY = "latency"
    DOWNLOAD = "download"
    UPLOAD = "upload"


class SourceKind(str, Enum):
    CLIENT = "client"
    SERVER = "server"


@dataclass(frozen=True)
class Sample:
    """One raw observation: a rate in Mbps, or an RTT in ms for latency."""

    phase: Phase
    source: SourceKind
    value: float
    provider: str
    observed_at: float = field(default_factory=time.time)


@dataclass
class SettledRate:
    phase: Phase
    provider: str
    rate_mbps: float
    sample_count: int
    is_estimated: bool = False
    cancelled: bool = False


@dataclass
class ProviderAttempt:
    provider: str
    outcome: str  # settled | failed | timeout | below_threshold | cancelled
    detail: Optional[str] = None


@dataclass
class Subject:
    subject_id: str
    region: Optional[str] = None


@dataclass
class NetworkContext:
    ip_address: str = "Unknown"
    location: str = "Unknown"

    @classmethod
    def placeholder(cls) -> "NetworkContext":
        return cls()


@dataclass
class AggregateResult:
    download_mbps: float
    upload_mbps: float
    latency_ms: float
    jitter_ms: float
    quality_score: int
    category: str
    download_sample_count: int
    upload_sample_count: int
    is_upload_estimated: bool
    is_latency_estimated: bool
    connection_quality: str = "Poor"
    test_id: Optional[str] = None
    subject_id: Optional[str] = None
    region: Optional[str] = None
    download_provider: Optional[str] = None
    upload_provider: Optional[str] = None
    cancelled: bool = False
    persisted: bool = False
    stored_id: Optional[int] = None
    ip_address: Optional[str] = None
    location: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "testId": self.test_id,
            "subjectId": self.subject_id,
            "region": self.region,
            "downloadMbps": round(self.download_mbps, 2),
            "uploadMbps": round(self.upload_mbps, 2),
            "latencyMs": round(self.latency_ms, 2),
            "jitterMs": round(self.jitter_ms, 2),
            "qualityScore": self.quality_score,
            "category": self.category,
            "quality": self.connection_quality,
            "downloadSampleCount": self.download_sample_count,
            "uploadSampleCount": self.upload_sample_count,
            "isUploadEstimated": self.is_upload_estimated,
            "isLatencyEstimated": self.is_latency_estimated,
            "downloadProvider": self.download_provider,
            "uploadProvider": self.upload_provider,
            "cancelled": self.cancelled,
            "persisted": self.persisted,
            "storedId": self.stored_id,
            "ip": self.ip_address,
            "location": self.location,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "durationSeconds": round(self.duration_seconds, 2) if self.duration_seconds is not None else None,
        }


@dataclass
class ProgressEvent:
    type: str  # init | latency | download | upload | completed | error
    phase: str
    message: str
    percent: float
    current_rate_mbps: Optional[float] = None
    data: Optional[Dict[str, Any]] = None
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def is_terminal(self) -> bool:
        return self.type in ("completed", "error")

    def to_wire(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "phase": self.phase,
            "message": self.message,
            "progress": self.percent,
            "timestamp": self.timestamp,
        }
        if self.current_rate_mbps is not None:
            payload["currentSpeed"] = round(self.current_rate_mbps, 2)
        if self.data is not None:
            payload["data"] = self.data
        if session_id:
            payload["sessionId"] = session_id
        return payload

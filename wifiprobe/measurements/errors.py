"""Exception taxonomy for measurement runs."""

from __future__ import annotations

from typing import Any, Dict, Optional


class MeasurementError(Exception):
    """Base class for every measurement failure."""


class ProviderUnavailable(MeasurementError):
    """A single provider's probe failed or timed out; the chain moves on."""

    def __init__(self, provider: str, reason: str):
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.reason = reason


class NoSamplesCollected(MeasurementError):
    """A whole phase produced nothing from any provider."""

    def __init__(self, phase: str, estimate: Optional[Dict[str, Any]] = None):
        super().__init__(f"No usable {phase} samples were collected")
        self.phase = phase
        self.estimate = estimate


class PersistenceError(MeasurementError):
    """Storage write failed."""


class PersistenceTransientFailure(PersistenceError):
    """Storage write kept failing with transient errors until the retry budget ran out."""


class PersistencePermanentFailure(PersistenceError):
    """Storage write failed in a way retrying cannot fix."""


class ConsumerDisconnected(MeasurementError):
    """A progress consumer went away."""


class SessionCancelled(MeasurementError):
    """The run was cancelled before any download sample existed."""


class SessionError(MeasurementError):
    """Misuse of a measurement session (for example starting it twice)."""


class InvalidTransition(SessionError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal session transition {current} -> {target}")
        self.current = current
        self.target = target

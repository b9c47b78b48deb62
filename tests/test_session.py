from __future__ import annotations

import threading

import pytest

from conftest import RandomProvider, ScriptedProvider, fake_network
from wifiprobe.config import MeasurementConfig
from wifiprobe.measurements.errors import (
    InvalidTransition,
    NoSamplesCollected,
    PersistenceTransientFailure,
    SessionCancelled,
    SessionError,
)
from wifiprobe.measurements.models import Phase, SettledRate, Subject
from wifiprobe.measurements.providers import HeuristicEstimator
from wifiprobe.measurements.session import (
    LATENCY_FAILURE_SENTINEL_MS,
    MeasurementSession,
    SessionState,
    transition,
)

CONFIG = MeasurementConfig(
    phase_duration_seconds=1,
    sample_interval_seconds=0.01,
    network_lookup=False,
    latency_probe_count=3,
)
SUBJECT = Subject(subject_id="user-42", region="eu")


def _latency(values=(20.0, 25.0, 18.0), **kwargs) -> ScriptedProvider:
    return ScriptedProvider("rtt", values=values, phases=[Phase.LATENCY], **kwargs)


def _session(latency=None, download=None, upload=None, store=None) -> MeasurementSession:
    return MeasurementSession(
        latency_providers=latency if latency is not None else [_latency()],
        download_providers=download if download is not None else [ScriptedProvider("down", values=[30.0, 40.0, 50.0])],
        upload_providers=upload if upload is not None else [ScriptedProvider("up", values=[5.0, 6.0])],
        store=store,
        network_resolver=fake_network,
    )


# -- transition table ------------------------------------------------------


def test_transitions_move_forward_and_may_skip() -> None:
    assert transition(SessionState.INIT, SessionState.LATENCY) is SessionState.LATENCY
    assert transition(SessionState.DOWNLOAD, SessionState.FINALIZE) is SessionState.FINALIZE
    assert transition(SessionState.FINALIZE, SessionState.COMPLETED) is SessionState.COMPLETED
    assert transition(SessionState.LATENCY, SessionState.FAILED) is SessionState.FAILED


@pytest.mark.parametrize(
    "current, target",
    [
        (SessionState.DOWNLOAD, SessionState.LATENCY),
        (SessionState.UPLOAD, SessionState.UPLOAD),
        (SessionState.UPLOAD, SessionState.COMPLETED),
        (SessionState.COMPLETED, SessionState.FAILED),
        (SessionState.FAILED, SessionState.INIT),
    ],
)
def test_illegal_transitions_raise(current: SessionState, target: SessionState) -> None:
    with pytest.raises(InvalidTransition):
        transition(current, target)


# -- full runs -------------------------------------------------------------


def test_full_run_completes_and_persists(store) -> None:
    session = _session(store=store)
    result = session.start(SUBJECT, CONFIG)

    assert session.state is SessionState.COMPLETED
    assert result.download_mbps == 50.0
    assert result.upload_mbps == 6.0
    assert result.latency_ms == 18.0
    assert result.is_upload_estimated is False
    assert result.is_latency_estimated is False
    assert result.download_sample_count == 3
    assert result.persisted is True
    assert result.stored_id is not None
    assert result.subject_id == "user-42"
    assert result.ip_address == "203.0.113.5"
    assert store.get(result.test_id) is not None

    history = session.channel.history()
    assert history[0].type == "init"
    assert history[-1].type == "completed"
    assert history[-1].percent == 100
    percents = [event.percent for event in history]
    assert percents == sorted(percents)
    assert session.channel.closed


def test_session_cannot_be_started_twice() -> None:
    session = _session()
    session.start(SUBJECT, CONFIG)
    with pytest.raises(SessionError):
        session.start(SUBJECT, CONFIG)


def test_random_test_double_produces_a_result() -> None:
    session = _session(download=[RandomProvider("noisy", count=15, seed=3)])
    result = session.start(SUBJECT, CONFIG)
    assert 20.0 <= result.download_mbps <= 90.0
    assert result.download_sample_count == 15


# -- degradation -----------------------------------------------------------


def test_download_total_failure_fails_session() -> None:
    session = _session(download=[ScriptedProvider("a", error="refused"), ScriptedProvider("b", error="503")])
    with pytest.raises(NoSamplesCollected):
        session.start(SUBJECT, CONFIG)

    assert session.state is SessionState.FAILED
    last = session.channel.history()[-1]
    assert last.type == "error"
    assert last.data["phase"] == "download"
    assert len(last.data["attemptedProviders"]) >= 2
    assert session.channel.closed


def test_heuristic_only_download_still_fails_but_reports_estimate() -> None:
    session = _session(download=[ScriptedProvider("dead", error="down"), HeuristicEstimator()])
    with pytest.raises(NoSamplesCollected) as info:
        session.start(SUBJECT, CONFIG)
    assert info.value.estimate["downloadMbps"] == 50.0
    assert session.channel.history()[-1].data["estimate"]["downloadMbps"] == 50.0


def test_below_threshold_samples_still_count_as_download() -> None:
    session = _session(download=[ScriptedProvider("slow", values=[0.5, 0.6])])
    result = session.start(SUBJECT, CONFIG)
    assert session.state is SessionState.COMPLETED
    assert result.download_mbps == 0.6


def test_upload_failure_degrades_to_estimate() -> None:
    session = _session(upload=[ScriptedProvider("up", error="timeout"), HeuristicEstimator()])
    result = session.start(SUBJECT, CONFIG)
    assert session.state is SessionState.COMPLETED
    assert result.is_upload_estimated is True
    assert result.upload_mbps == pytest.approx(5.0)


def test_latency_failure_reports_sentinel_and_estimates() -> None:
    session = _session(latency=[_latency(values=(), error="unreachable")])
    result = session.start(SUBJECT, CONFIG)

    assert result.is_latency_estimated is True
    assert result.latency_ms == 50.0
    sentinel_events = [e for e in session.channel.history() if e.data and e.data.get("failed")]
    assert sentinel_events[0].data["latencyMs"] == LATENCY_FAILURE_SENTINEL_MS


def test_persistence_failure_returns_unsaved_result(store, monkeypatch: pytest.MonkeyPatch) -> None:
    def unavailable(_result):
        raise PersistenceTransientFailure("database unreachable")

    monkeypatch.setattr(store, "save", unavailable)
    session = _session(store=store)
    result = session.start(SUBJECT, CONFIG)

    assert session.state is SessionState.COMPLETED
    assert result.persisted is False
    assert result.stored_id is None
    assert session.channel.history()[-1].data["persisted"] is False


# -- cancellation ----------------------------------------------------------


def test_cancel_mid_download_completes_with_partial_data() -> None:
    holder = {}

    def cancel_on_second(index: int) -> None:
        if index == 1:
            holder["session"].cancel()

    upload = ScriptedProvider("up", values=[5.0])
    session = _session(
        download=[ScriptedProvider("down", values=[30.0, 40.0, 50.0, 60.0], before_sample=cancel_on_second)],
        upload=[upload],
    )
    holder["session"] = session

    result = session.start(SUBJECT, CONFIG)

    assert session.state is SessionState.COMPLETED
    assert session.aborted_in is SessionState.DOWNLOAD
    assert result.cancelled is True
    assert result.download_mbps == 40.0
    assert result.is_upload_estimated is True
    assert result.upload_mbps == pytest.approx(4.0)
    assert upload.calls == []


def test_cancel_before_any_download_sample_fails() -> None:
    holder = {}

    def cancel_now(_index: int) -> None:
        holder["session"].cancel()

    session = _session(latency=[_latency(before_sample=cancel_now)])
    holder["session"] = session

    with pytest.raises(SessionCancelled):
        session.start(SUBJECT, CONFIG)
    assert session.state is SessionState.FAILED
    assert session.channel.history()[-1].type == "error"


def test_cancel_after_finish_is_rejected() -> None:
    session = _session()
    session.start(SUBJECT, CONFIG)
    assert session.cancel() is False


class LateLatencyProbe(ScriptedProvider):
    """Answers only after the latency phase has given up on it."""

    def __init__(self) -> None:
        super().__init__("slow", phases=[Phase.LATENCY])
        self.timeout = 0.05
        self.emitted = threading.Event()

    def measure(self, phase, on_sample, context) -> SettledRate:
        self.calls.append(phase)
        context.abort.wait(5.0)
        self._emit(on_sample, phase, 12.0)
        self.emitted.set()
        return SettledRate(phase=phase, provider=self.slug, rate_mbps=0.0, sample_count=1)


def test_round_trips_after_the_latency_budget_are_dropped() -> None:
    slow = LateLatencyProbe()
    fast = _latency(values=(20.0,))
    fast.timeout = 0.05
    # Hold the download open until the slow probe has reported.
    download = ScriptedProvider(
        "down",
        values=[40.0, 50.0, 60.0],
        before_sample=lambda index: slow.emitted.wait(5.0) if index == 1 else None,
    )
    session = _session(latency=[fast, slow], download=[download])

    result = session.start(SUBJECT, CONFIG)

    assert slow.emitted.is_set()
    assert result.latency_ms == 20.0
    assert result.is_latency_estimated is False
    assert session.collector.providers(Phase.LATENCY) == ["scripted:rtt"]
    outcomes = [(a.provider, a.outcome) for a in session.attempted_providers]
    assert ("scripted:slow", "timeout") in outcomes

    types = [event.type for event in session.channel.history()]
    first_download = types.index("download")
    assert "latency" not in types[first_download:]

    assert len(session.stray_futures) == 1
    assert session.wait_for_stray(timeout=2.0) == 0

from __future__ import annotations

import time
from typing import Iterator

import pytest

from conftest import HangingProvider, ScriptedProvider, fake_network
from wifiprobe.measurements.manager import MeasurementManager
from wifiprobe.measurements.models import Phase, Subject
from wifiprobe.measurements.session import SessionState
from wifiprobe.scheduler import SchedulerService


def scripted_providers():
    return (
        [ScriptedProvider("rtt", values=[15.0, 17.0], phases=[Phase.LATENCY])],
        [ScriptedProvider("down", values=[60.0, 70.0, 65.0])],
        [ScriptedProvider("up", values=[12.0, 11.0])],
    )


@pytest.fixture
def manager(app_config, store) -> Iterator[MeasurementManager]:
    manager = MeasurementManager(
        app_config,
        store,
        provider_factory=scripted_providers,
        network_resolver=fake_network,
    )
    yield manager
    manager.shutdown(wait=True)


def test_background_run_completes_and_is_stored(manager: MeasurementManager, store) -> None:
    session = manager.start(Subject("user-1", "us"))
    result = manager.wait(session.session_id, timeout=10)

    assert result is not None
    assert result.persisted is True
    assert session.state is SessionState.COMPLETED
    rows, total = manager.history("user-1")
    assert total == 1
    assert rows[0].test_id == result.test_id


def test_synchronous_run(manager: MeasurementManager) -> None:
    result = manager.run(Subject("user-2"))
    assert result.download_mbps == 70.0
    assert result.upload_mbps == 12.0


def test_finished_sessions_are_pruned_after_grace(manager: MeasurementManager) -> None:
    session = manager.start(Subject("user-3"))
    manager.wait(session.session_id, timeout=10)

    assert manager.prune_finished() == 0
    assert manager.get(session.session_id) is session

    assert manager.prune_finished(now=time.time() + 60) == 1
    assert manager.get(session.session_id) is None


def test_unknown_sessions(manager: MeasurementManager) -> None:
    assert manager.get("nope") is None
    assert manager.cancel("nope") is None
    assert manager.subscribe("nope") is None
    assert manager.wait("nope") is None


def test_sessions_do_not_share_samples(manager: MeasurementManager) -> None:
    first = manager.create_session()
    second = manager.create_session()
    assert first.collector is not second.collector
    assert first.channel is not second.channel
    assert first.session_id == first.channel.session_id


def test_scheduler_janitor_prunes(app_config, manager: MeasurementManager) -> None:
    session = manager.start(Subject("user-4"))
    manager.wait(session.session_id, timeout=10)
    session.finished_at = time.time() - 3600

    scheduler = SchedulerService(app_config, manager)
    scheduler._prune_sessions()
    assert manager.get(session.session_id) is None

    scheduler.start()
    try:
        assert scheduler.started is True
        assert scheduler.scheduler.get_job("session-janitor") is not None
    finally:
        scheduler.shutdown()
    assert scheduler.started is False


def test_shutdown_waits_for_timed_out_provider_threads(app_config, store) -> None:
    hanging = HangingProvider("hanging", timeout=0.1)

    def providers():
        rtt, _, upload = scripted_providers()
        return rtt, [hanging, ScriptedProvider("down", values=[40.0])], upload

    manager = MeasurementManager(app_config, store, provider_factory=providers, network_resolver=fake_network)
    session = manager.start(Subject("user-5"))
    manager.wait(session.session_id, timeout=10)
    manager.shutdown(wait=True)

    assert hanging.released.is_set()
    assert session.wait_for_stray(timeout=0) == 0

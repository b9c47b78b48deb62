from __future__ import annotations

import json
from typing import Iterator

import pytest

from conftest import ScriptedProvider, fake_network
from wifiprobe.logging_setup import RingBufferHandler
from wifiprobe.measurements.manager import MeasurementManager
from wifiprobe.measurements.models import Phase
from wifiprobe.web.app import create_web_app


def scripted_providers():
    return (
        [ScriptedProvider("rtt", values=[12.0, 14.0], phases=[Phase.LATENCY])],
        [ScriptedProvider("down", values=[80.0, 95.0, 90.0])],
        [ScriptedProvider("up", values=[20.0, 25.0])],
    )


@pytest.fixture
def manager(app_config, store) -> Iterator[MeasurementManager]:
    manager = MeasurementManager(app_config, store, provider_factory=scripted_providers, network_resolver=fake_network)
    yield manager
    manager.shutdown(wait=True)


@pytest.fixture
def log_buffer() -> RingBufferHandler:
    buffer = RingBufferHandler(capacity=5)
    return buffer


@pytest.fixture
def client(app_config, manager, store, log_buffer):
    app = create_web_app(app_config, manager, store, log_buffer=log_buffer)
    app.testing = True
    return app.test_client()


HEADERS = {"X-Subject-Id": "venue-9", "X-Region": "eu"}


def _run(client, manager) -> dict:
    response = client.post("/api/speedtest", headers=HEADERS)
    assert response.status_code == 202
    body = response.get_json()
    manager.wait(body["sessionId"], timeout=10)
    return body


def _events(response) -> list:
    lines = response.get_data(as_text=True).splitlines()
    return [json.loads(line[len("data: "):]) for line in lines if line.startswith("data: ")]


def test_start_requires_subject(client) -> None:
    response = client.post("/api/speedtest")
    assert response.status_code == 400


def test_subject_can_come_from_body(client, manager) -> None:
    response = client.post("/api/speedtest", json={"subjectId": "body-user", "region": "us"})
    assert response.status_code == 202
    session = manager.get(response.get_json()["sessionId"])
    manager.wait(session.session_id, timeout=10)
    assert session.subject.subject_id == "body-user"
    assert session.subject.region == "us"


def test_run_status_and_stream(client, manager) -> None:
    body = _run(client, manager)
    session_id = body["sessionId"]

    status = client.get(f"/api/speedtest/{session_id}").get_json()
    assert status["state"] == "completed"
    assert status["result"]["downloadMbps"] == 95.0

    stream = client.get(f"/api/speedtest/{session_id}/stream")
    assert stream.mimetype == "text/event-stream"
    assert stream.headers["X-Accel-Buffering"] == "no"
    events = _events(stream)
    assert events[0]["type"] == "init"
    assert events[-1]["type"] == "completed"
    assert events[-1]["data"]["testId"] == body["testId"]
    assert all(event["sessionId"] == session_id for event in events)
    progress = [event["progress"] for event in events]
    assert progress == sorted(progress)


def test_unknown_session_routes(client) -> None:
    assert client.get("/api/speedtest/missing").status_code == 404
    assert client.get("/api/speedtest/missing/stream").status_code == 404
    assert client.post("/api/speedtest/missing/cancel").status_code == 404


def test_cancel_after_completion_conflicts(client, manager) -> None:
    body = _run(client, manager)
    response = client.post(f"/api/speedtest/{body['sessionId']}/cancel")
    assert response.status_code == 409


def test_results_history_latest_and_delete(client, manager) -> None:
    first = _run(client, manager)
    second = _run(client, manager)

    page = client.get("/api/results?limit=1", headers=HEADERS).get_json()
    assert page["pagination"]["total"] == 2
    assert page["pagination"]["hasMore"] is True
    assert page["results"][0]["testId"] == second["testId"]

    latest = client.get("/api/results/latest", headers=HEADERS).get_json()
    assert latest["testId"] == second["testId"]

    single = client.get(f"/api/results/{first['testId']}")
    assert single.status_code == 200
    assert single.get_json()["subjectId"] == "venue-9"

    stranger = {"X-Subject-Id": "someone-else"}
    assert client.delete(f"/api/results/{first['testId']}", headers=stranger).status_code == 404
    assert client.delete(f"/api/results/{first['testId']}", headers=HEADERS).status_code == 200
    assert client.get(f"/api/results/{first['testId']}").status_code == 404


def test_latest_without_results_is_404(client) -> None:
    assert client.get("/api/results/latest", headers={"X-Subject-Id": "new-user"}).status_code == 404


def test_debug_logs_come_from_the_ring_buffer(client, log_buffer) -> None:
    import logging

    logger = logging.getLogger("wifiprobe.test.web")
    logger.addHandler(log_buffer)
    logger.propagate = False
    try:
        for i in range(8):
            logger.warning("entry %d", i)
    finally:
        logger.removeHandler(log_buffer)

    payload = client.get("/api/debug/logs").get_json()
    assert payload["capacity"] == 5
    assert [e["message"] for e in payload["logs"]] == [f"entry {i}" for i in range(3, 8)]

    limited = client.get("/api/debug/logs?limit=2").get_json()
    assert len(limited["logs"]) == 2


def test_status_counts_sessions(client, manager) -> None:
    _run(client, manager)
    status = client.get("/api/status").get_json()
    assert status["trackedSessions"] == 1
    assert status["activeSessions"] == 0
    assert status["probeServer"] is None


def test_submitted_result_is_scored_and_stored(client) -> None:
    response = client.post(
        "/api/results",
        headers=HEADERS,
        json={"downloadMbps": "85.5", "uploadMbps": 20, "latencyMs": " 12 ", "jitterMs": 1.5, "location": "Lobby"},
    )
    assert response.status_code == 201
    body = response.get_json()
    assert body["persisted"] is True
    assert body["qualityScore"] == 75
    assert body["category"] == "good"
    assert body["downloadProvider"] == "client:ndt7"
    assert body["isUploadEstimated"] is False

    stored = client.get(f"/api/results/{body['testId']}").get_json()
    assert stored["downloadMbps"] == 85.5
    assert stored["latencyMs"] == 12.0
    assert stored["region"] == "eu"

    page = client.get("/api/results", headers=HEADERS).get_json()
    assert [row["testId"] for row in page["results"]] == [body["testId"]]


def test_submitted_result_estimates_what_the_client_could_not_measure(client) -> None:
    response = client.post(
        "/api/results",
        headers=HEADERS,
        json={"downloadMbps": 40, "uploadMbps": None, "latencyMs": None},
    )
    assert response.status_code == 201
    body = response.get_json()
    assert body["uploadMbps"] == 4.0
    assert body["isUploadEstimated"] is True
    assert body["latencyMs"] == 50.0
    assert body["isLatencyEstimated"] is True
    assert body["qualityScore"] == 43


@pytest.mark.parametrize(
    "payload",
    [
        {"downloadMbps": 50, "uploadMbps": 10},
        {"downloadMbps": "fast", "uploadMbps": 10, "latencyMs": 20},
        {"downloadMbps": None, "uploadMbps": 10, "latencyMs": 20},
        {"downloadMbps": -5, "uploadMbps": 10, "latencyMs": 20},
    ],
)
def test_submitted_result_rejects_missing_or_bad_metrics(client, payload) -> None:
    response = client.post("/api/results", headers=HEADERS, json=payload)
    assert response.status_code == 400
    assert client.get("/api/results", headers=HEADERS).get_json()["pagination"]["total"] == 0


def test_submission_requires_subject(client) -> None:
    response = client.post("/api/results", json={"downloadMbps": 50, "uploadMbps": 10, "latencyMs": 20})
    assert response.status_code == 400

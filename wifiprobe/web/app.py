"""Flask application factory and HTTP routes."""

from __future__ import annotations

import json
import logging
import math
import uuid
from datetime import datetime
from typing import Any, Optional

from flask import Flask, Response, jsonify, request
from werkzeug.middleware.proxy_fix import ProxyFix

from ..config import AppConfig
from ..logging_setup import RingBufferHandler
from ..measurements import aggregator
from ..measurements.errors import PersistenceError
from ..measurements.manager import MeasurementManager
from ..measurements.models import Subject
from ..measurements.store import ResultStore
from ..probe_server import ProbeServer

LOGGER = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

REPORTED_METRICS = ("downloadMbps", "uploadMbps", "latencyMs")


def _metric(value: Any) -> Optional[float]:
    """Lenient number parsing for client-reported figures. ``None`` stays ``None``."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    number = float(value.strip() if isinstance(value, str) else value)
    if not math.isfinite(number) or number < 0:
        raise ValueError(f"out of range: {value!r}")
    return number


def create_web_app(
    config: AppConfig,
    measurement_manager: MeasurementManager,
    store: ResultStore,
    log_buffer: Optional[RingBufferHandler] = None,
    probe_server: Optional[ProbeServer] = None,
) -> Flask:
    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.web.secret_key

    if config.web.reverse_proxy_headers:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)  # type: ignore

    def _subject() -> Optional[Subject]:
        body = request.get_json(silent=True) or {}
        subject_id = request.headers.get("X-Subject-Id") or body.get("subjectId") or request.args.get("subjectId")
        if not subject_id:
            return None
        region = request.headers.get("X-Region") or body.get("region") or request.args.get("region")
        return Subject(subject_id=str(subject_id), region=region)

    def _missing_subject():
        return jsonify({"error": "Missing subject (X-Subject-Id header or subjectId field)"}), 400

    @app.post("/api/speedtest")
    def api_start_speedtest():
        subject = _subject()
        if subject is None:
            return _missing_subject()
        session = measurement_manager.start(subject)
        return (
            jsonify(
                {
                    "status": "queued",
                    "sessionId": session.session_id,
                    "testId": session.test_id,
                    "streamUrl": f"/api/speedtest/{session.session_id}/stream",
                }
            ),
            202,
        )

    @app.get("/api/speedtest/<session_id>")
    def api_speedtest_status(session_id: str):
        session = measurement_manager.get(session_id)
        if session is None:
            return jsonify({"error": "Unknown session"}), 404
        return jsonify(session.to_dict())

    @app.post("/api/speedtest/<session_id>/cancel")
    def api_speedtest_cancel(session_id: str):
        accepted = measurement_manager.cancel(session_id)
        if accepted is None:
            return jsonify({"error": "Unknown session"}), 404
        if not accepted:
            return jsonify({"error": "Session already finished or cancelled"}), 409
        return jsonify({"status": "cancelling", "sessionId": session_id}), 202

    @app.get("/api/speedtest/<session_id>/stream")
    def api_speedtest_stream(session_id: str):
        """Server-sent events for one run, starting with a replay of what already happened."""
        subscriber = measurement_manager.subscribe(session_id)
        if subscriber is None:
            return jsonify({"error": "Unknown session"}), 404
        heartbeat = config.progress.heartbeat_seconds

        def generate():
            try:
                for event in subscriber.events(heartbeat=heartbeat):
                    if event is None:
                        yield ": keep-alive\n\n"
                        continue
                    yield f"data: {json.dumps(event.to_wire(session_id))}\n\n"
            finally:
                # Client went away or the run ended; either way stop receiving.
                subscriber.close()

        return Response(
            generate(),
            mimetype="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # For nginx
            },
        )

    @app.get("/api/results")
    def api_results():
        subject = _subject()
        if subject is None:
            return _missing_subject()
        limit = min(max(request.args.get("limit", default=10, type=int), 1), MAX_PAGE_SIZE)
        offset = max(request.args.get("offset", default=0, type=int), 0)
        rows, total = store.list_for_subject(subject.subject_id, limit=limit, offset=offset)
        return jsonify(
            {
                "results": [store.to_dict(row) for row in rows],
                "pagination": {
                    "total": total,
                    "limit": limit,
                    "offset": offset,
                    "hasMore": offset + len(rows) < total,
                },
            }
        )

    @app.post("/api/results")
    def api_submit_result():
        """Store figures measured by the client itself (e.g. a browser test)."""
        subject = _subject()
        if subject is None:
            return _missing_subject()
        body = request.get_json(silent=True) or {}
        missing = [name for name in REPORTED_METRICS if name not in body]
        if missing:
            return (
                jsonify(
                    {
                        "error": "Speed test metrics (downloadMbps, uploadMbps, latencyMs) are required",
                        "missing": missing,
                    }
                ),
                400,
            )
        try:
            download = _metric(body["downloadMbps"])
            upload = _metric(body["uploadMbps"])
            latency = _metric(body["latencyMs"])
            jitter = _metric(body.get("jitterMs"))
        except (TypeError, ValueError) as exc:
            return jsonify({"error": f"Invalid speed test metric: {exc}"}), 400
        if download is None:
            return jsonify({"error": "downloadMbps must be a number"}), 400

        method = str(body.get("testMethod") or "ndt7")
        result = aggregator.from_reported(download, upload, latency, jitter, provider=f"client:{method}")
        result.test_id = str(uuid.uuid4())
        result.subject_id = subject.subject_id
        result.region = subject.region
        result.ip_address = request.remote_addr
        location = body.get("location")
        result.location = location if isinstance(location, str) else None
        result.started_at = result.completed_at = datetime.utcnow()

        try:
            result.stored_id = store.save(result)
            result.persisted = True
        except PersistenceError as exc:
            LOGGER.error("Reported result %s not persisted: %s", result.test_id, exc)
            return jsonify({"error": "Result could not be stored", "result": result.to_dict()}), 503

        LOGGER.info(
            "Stored reported result %s for %s: down %.2f / up %.2f Mbps, score %d",
            result.test_id,
            subject.subject_id,
            result.download_mbps,
            result.upload_mbps,
            result.quality_score,
        )
        return jsonify(result.to_dict()), 201

    @app.get("/api/results/latest")
    def api_results_latest():
        subject = _subject()
        if subject is None:
            return _missing_subject()
        row = store.latest_for_subject(subject.subject_id)
        if row is None:
            return jsonify({"error": "No results yet"}), 404
        return jsonify(store.to_dict(row))

    @app.get("/api/results/<test_id>")
    def api_result(test_id: str):
        row = store.get(test_id)
        if row is None:
            return jsonify({"error": "Result not found"}), 404
        return jsonify(store.to_dict(row))

    @app.delete("/api/results/<test_id>")
    def api_delete_result(test_id: str):
        subject = _subject()
        if subject is None:
            return _missing_subject()
        if not store.delete(test_id, subject_id=subject.subject_id):
            return jsonify({"error": "Result not found"}), 404
        return jsonify({"status": "deleted", "testId": test_id})

    @app.get("/api/debug/logs")
    def api_debug_logs():
        if log_buffer is None:
            return jsonify({"logs": [], "capacity": 0})
        limit = request.args.get("limit", type=int)
        return jsonify({"logs": log_buffer.snapshot(limit), "capacity": log_buffer.capacity})

    @app.get("/api/status")
    def api_status():
        return jsonify(
            {
                "activeSessions": sum(1 for s in measurement_manager.sessions() if not s.is_finished),
                "trackedSessions": len(measurement_manager.sessions()),
                "probeServer": probe_server.get_status() if probe_server else None,
            }
        )

    return app

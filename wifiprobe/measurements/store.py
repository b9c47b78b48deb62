"""Persistence boundary for aggregated results."""

from __future__ import annotations

import json
import logging
import time
from typing import Callable, List, Optional, Tuple

from sqlalchemy import desc
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..db import SpeedTestResult, get_session, init_db
from .errors import PersistencePermanentFailure, PersistenceTransientFailure
from .models import AggregateResult

LOGGER = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, DisconnectionError)


class ResultStore:
    """Writes results idempotently on ``test_id`` with bounded retry.

    Transient database errors are retried up to ``attempts`` times with a
    fixed delay, disposing the connection pool between attempts so the next
    one reconnects. Anything else is permanent.
    """

    def __init__(
        self,
        engine: Engine,
        session_factory: sessionmaker,
        attempts: int = 3,
        retry_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.engine = engine
        self.Session = session_factory
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self._sleep = sleep

    @classmethod
    def from_url(cls, database_url: str, attempts: int = 3, retry_delay: float = 0.5) -> "ResultStore":
        engine, session_factory = init_db(database_url)
        return cls(engine, session_factory, attempts=attempts, retry_delay=retry_delay)

    def reconnect(self) -> None:
        LOGGER.info("Disposing database connection pool before retry")
        self.engine.dispose()

    def save(self, result: AggregateResult) -> int:
        if not result.test_id:
            raise PersistencePermanentFailure("Result has no test_id")

        last_error: Optional[Exception] = None
        for attempt in range(1, self.attempts + 1):
            try:
                stored_id = self._save_once(result)
            except TRANSIENT_ERRORS as exc:
                last_error = exc
                LOGGER.warning(
                    "Transient failure saving %s (attempt %d/%d): %s",
                    result.test_id,
                    attempt,
                    self.attempts,
                    exc,
                    extra={"data": {"testId": result.test_id, "attempt": attempt}},
                )
                if attempt < self.attempts:
                    self._sleep(self.retry_delay)
                    self.reconnect()
                continue
            except SQLAlchemyError as exc:
                LOGGER.error("Permanent failure saving %s: %s", result.test_id, exc)
                raise PersistencePermanentFailure(str(exc)) from exc

            LOGGER.info(
                "Stored result %s (down %.2f Mbps / up %.2f Mbps, score %d)",
                result.test_id,
                result.download_mbps,
                result.upload_mbps,
                result.quality_score,
            )
            return stored_id

        raise PersistenceTransientFailure(
            f"Gave up saving {result.test_id} after {self.attempts} attempts: {last_error}"
        ) from last_error

    def _save_once(self, result: AggregateResult) -> int:
        try:
            with get_session(self.Session) as session:
                existing = session.query(SpeedTestResult).filter(SpeedTestResult.test_id == result.test_id).first()
                if existing is not None:
                    LOGGER.debug("Result %s already stored as row %d", result.test_id, existing.id)
                    return existing.id
                record = self._to_record(result)
                session.add(record)
                session.flush()
                return record.id
        except IntegrityError:
            # Lost a race with a concurrent insert of the same test_id.
            stored = self.get(result.test_id)
            if stored is None:
                raise
            return stored.id

    @staticmethod
    def _to_record(result: AggregateResult) -> SpeedTestResult:
        record = SpeedTestResult(
            test_id=result.test_id,
            subject_id=result.subject_id or "anonymous",
            region=result.region,
            download_mbps=result.download_mbps,
            upload_mbps=result.upload_mbps,
            latency_ms=result.latency_ms,
            jitter_ms=result.jitter_ms,
            quality_score=result.quality_score,
            category=result.category,
            download_sample_count=result.download_sample_count,
            upload_sample_count=result.upload_sample_count,
            is_upload_estimated=result.is_upload_estimated,
            is_latency_estimated=result.is_latency_estimated,
            cancelled=result.cancelled,
            download_provider=result.download_provider,
            upload_provider=result.upload_provider,
            ip_address=result.ip_address,
            location=result.location,
            duration_seconds=result.duration_seconds,
            raw_json=json.dumps(result.to_dict()),
        )
        if result.completed_at is not None:
            record.timestamp = result.completed_at
        return record

    def get(self, test_id: str) -> Optional[SpeedTestResult]:
        with get_session(self.Session) as session:
            return session.query(SpeedTestResult).filter(SpeedTestResult.test_id == test_id).first()

    def list_for_subject(
        self,
        subject_id: str,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[List[SpeedTestResult], int]:
        with get_session(self.Session) as session:
            query = session.query(SpeedTestResult).filter(SpeedTestResult.subject_id == subject_id)
            total = query.count()
            rows = (
                query.order_by(desc(SpeedTestResult.timestamp), desc(SpeedTestResult.id))
                .offset(offset)
                .limit(limit)
                .all()
            )
            return rows, total

    def latest_for_subject(self, subject_id: str) -> Optional[SpeedTestResult]:
        rows, _ = self.list_for_subject(subject_id, limit=1)
        return rows[0] if rows else None

    def delete(self, test_id: str, subject_id: Optional[str] = None) -> bool:
        """Delete a stored result; with ``subject_id`` only if it owns the row."""
        with get_session(self.Session) as session:
            query = session.query(SpeedTestResult).filter(SpeedTestResult.test_id == test_id)
            if subject_id is not None:
                query = query.filter(SpeedTestResult.subject_id == subject_id)
            record = query.first()
            if record is None:
                return False
            session.delete(record)
            LOGGER.info("Deleted result %s", test_id)
            return True

    def count(self) -> int:
        with get_session(self.Session) as session:
            return session.query(SpeedTestResult).count()

    @staticmethod
    def to_dict(record: SpeedTestResult) -> dict:
        return {
            "id": record.id,
            "testId": record.test_id,
            "subjectId": record.subject_id,
            "region": record.region,
            "timestamp": record.timestamp.isoformat() if record.timestamp else None,
            "downloadMbps": record.download_mbps,
            "uploadMbps": record.upload_mbps,
            "latencyMs": record.latency_ms,
            "jitterMs": record.jitter_ms,
            "qualityScore": record.quality_score,
            "category": record.category,
            "downloadSampleCount": record.download_sample_count,
            "uploadSampleCount": record.upload_sample_count,
            "isUploadEstimated": record.is_upload_estimated,
            "isLatencyEstimated": record.is_latency_estimated,
            "cancelled": record.cancelled,
            "downloadProvider": record.download_provider,
            "uploadProvider": record.upload_provider,
            "ip": record.ip_address,
            "location": record.location,
            "durationSeconds": record.duration_seconds,
        }

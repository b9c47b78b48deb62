"""Database utilities and ORM models."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional, Tuple

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


class Base(DeclarativeBase):
    pass


class SpeedTestResult(Base):
    """One aggregated speed-test run."""
    __tablename__ = "speed_test_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    test_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    subject_id: Mapped[str] = mapped_column(String(128), index=True)
    region: Mapped[Optional[str]] = mapped_column(String(16), index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    download_mbps: Mapped[float] = mapped_column(Float)
    upload_mbps: Mapped[float] = mapped_column(Float)
    latency_ms: Mapped[float] = mapped_column(Float)
    jitter_ms: Mapped[float] = mapped_column(Float)
    quality_score: Mapped[int] = mapped_column(Integer)
    category: Mapped[str] = mapped_column(String(16))

    download_sample_count: Mapped[int] = mapped_column(Integer, default=0)
    upload_sample_count: Mapped[int] = mapped_column(Integer, default=0)
    is_upload_estimated: Mapped[bool] = mapped_column(Boolean, default=False)
    is_latency_estimated: Mapped[bool] = mapped_column(Boolean, default=False)
    cancelled: Mapped[bool] = mapped_column(Boolean, default=False)

    # Provenance
    download_provider: Mapped[Optional[str]] = mapped_column(String(64))
    upload_provider: Mapped[Optional[str]] = mapped_column(String(64))
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    location: Mapped[Optional[str]] = mapped_column(String(255))
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float)
    raw_json: Mapped[Optional[str]] = mapped_column(Text)


def init_db(database_url: str) -> Tuple[Engine, sessionmaker]:
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, future=True, expire_on_commit=False)


@contextmanager
def get_session(Session: sessionmaker) -> Iterator:
    session = Session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

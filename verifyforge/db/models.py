"""
Database Models for Verify Forge
================================

SQLAlchemy models for the persisted state: content-addressed caches,
rolling metric aggregates, anomaly alerts and the running session log.
Live session state is never stored here.
"""

from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import String, Integer, Float, DateTime, JSON, Text, Boolean, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class CacheEntryModel(Base):
    """
    Single current entry per (cache_name, logical_key).

    A row is superseded in place when a different fingerprint is stored.
    """
    __tablename__ = "cache_entries"
    __table_args__ = (UniqueConstraint("cache_name", "logical_key", name="uq_cache_slot"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cache_name: Mapped[str] = mapped_column(String(50), index=True)  # profile, patterns
    logical_key: Mapped[str] = mapped_column(String(100), index=True)
    fingerprint: Mapped[str] = mapped_column(String(64))
    payload: Mapped[Any] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MetricAggregateModel(Base):
    """Per-session aggregate for one metric (rolling anomaly window source)."""
    __tablename__ = "metric_aggregates"
    __table_args__ = (UniqueConstraint("session_id", "metric_name", name="uq_session_metric"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), index=True)
    metric_name: Mapped[str] = mapped_column(String(100), index=True)
    value: Mapped[float] = mapped_column(Float)
    sample_count: Mapped[int] = mapped_column(Integer, default=0)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)


class AnomalyAlertModel(Base):
    """Advisory alerts raised by the anomaly monitor."""
    __tablename__ = "anomaly_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    session_id: Mapped[str] = mapped_column(String(64), index=True)
    metric_name: Mapped[str] = mapped_column(String(100))
    flag: Mapped[str] = mapped_column(String(30))  # anomaly, trend_alert, threshold_alert
    severity: Mapped[str] = mapped_column(String(20), default="MEDIUM")
    value: Mapped[float] = mapped_column(Float)
    reference: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # mean or moving average
    message: Mapped[str] = mapped_column(Text)


class SessionLogModel(Base):
    """Running log of phase transitions (read-only telemetry)."""
    __tablename__ = "session_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    session_id: Mapped[str] = mapped_column(String(64), index=True)
    phase: Mapped[str] = mapped_column(String(50))
    tier: Mapped[str] = mapped_column(String(20))
    loop_index: Mapped[int] = mapped_column(Integer, default=0)
    max_loops: Mapped[int] = mapped_column(Integer, default=1)
    load_percent: Mapped[int] = mapped_column(Integer, default=0)
    message: Mapped[str] = mapped_column(Text, default="")
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)


class EscalationLogModel(Base):
    """Log of tier escalations."""
    __tablename__ = "escalation_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    session_id: Mapped[str] = mapped_column(String(64), index=True)

    from_tier: Mapped[str] = mapped_column(String(20))
    to_tier: Mapped[str] = mapped_column(String(20))
    trigger: Mapped[str] = mapped_column(String(50), index=True)  # EscalationTrigger value
    immediate: Mapped[bool] = mapped_column(Boolean, default=False)
    loop_index: Mapped[int] = mapped_column(Integer, default=0)
    discarded_violations: Mapped[int] = mapped_column(Integer, default=0)

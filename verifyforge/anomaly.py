"""
Anomaly Monitor
===============

Advisory, always-on statistics over a session's metric stream (token cost,
tool-call cost, wall-clock duration). Completely decoupled from the
verification loop: it only appends samples and computes scores, and has no
access to session state, tiers or escalation.

Signals:
- Z-score of a sample against the most recent session aggregates
  (ANOMALY when |z| > 2.0, INSUFFICIENT_DATA with fewer than 5 sessions)
- Moving-average trend on session aggregates
  (TREND_ALERT when the session aggregate exceeds 1.5x the moving average)
- Static session-end thresholds
  (error rate above 20% with more than 5 tool calls, tokens above 100k)

Storage: session aggregates and alerts go to metric_aggregates and
anomaly_alerts when a database session maker is supplied. Only the newest
window of aggregates per metric is kept.

Usage:
    monitor = AnomalyMonitor()
    z, flag = monitor.score(MetricSample("tokens", 52_000))
    monitor.record(MetricSample("tokens", 52_000, session_id="s1"))
    summary = monitor.end_session("s1")
"""

import logging
import math
import statistics
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verifyforge.config import AnomalyConfig
from verifyforge.db.models import AnomalyAlertModel, MetricAggregateModel

logger = logging.getLogger(__name__)

# Well-known metric names
METRIC_TOKENS = "tokens"
METRIC_TOOL_CALLS = "tool_calls"
METRIC_ERRORS = "errors"
METRIC_DURATION = "duration_ms"
METRIC_COST = "cost_usd"


class AnomalyFlag(Enum):
    NORMAL = "normal"
    ANOMALY = "anomaly"
    INSUFFICIENT_DATA = "insufficient_data"
    TREND_ALERT = "trend_alert"
    THRESHOLD_ALERT = "threshold_alert"


@dataclass(frozen=True)
class MetricSample:
    metric_name: str
    value: float
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    session_id: str = ""


@dataclass
class AnomalyScore:
    metric_name: str
    value: float
    z: Optional[float]
    flag: AnomalyFlag
    mean: Optional[float] = None
    stddev: Optional[float] = None
    window_size: int = 0


@dataclass
class TrendResult:
    metric_name: str
    aggregate: float
    moving_average: Optional[float]
    flag: AnomalyFlag

    @property
    def ratio(self) -> Optional[float]:
        if self.moving_average is None or self.moving_average == 0:
            return None
        return self.aggregate / self.moving_average


@dataclass
class AnomalyAlert:
    session_id: str
    metric_name: str
    flag: AnomalyFlag
    severity: str
    value: float
    reference: Optional[float]
    message: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "metric_name": self.metric_name,
            "flag": self.flag.value,
            "severity": self.severity,
            "value": self.value,
            "reference": self.reference,
            "message": self.message,
            "timestamp": self.timestamp,
        }


@dataclass
class SessionSummary:
    session_id: str
    aggregates: dict[str, float]
    trends: list[TrendResult] = field(default_factory=list)
    alerts: list[AnomalyAlert] = field(default_factory=list)


@dataclass
class RetiredSummary:
    """Running summary of aggregates that fell out of the window."""
    count: int = 0
    mean: float = 0.0

    def fold(self, value: float) -> None:
        self.count += 1
        self.mean += (value - self.mean) / self.count


class MetricWindow:
    """Bounded window of per-session aggregates for one metric."""

    def __init__(self, size: int):
        self.values: deque[float] = deque(maxlen=size)
        self.retired = RetiredSummary()

    def push(self, value: float) -> None:
        if len(self.values) == self.values.maxlen:
            self.retired.fold(self.values[0])
        self.values.append(float(value))


def z_score(value: float, window: list[float]) -> tuple[float, float, float]:
    """(z, mean, population stddev). A flat window gives z = 0 or +/-inf."""
    mean = statistics.fmean(window)
    stddev = statistics.pstdev(window, mu=mean)
    if stddev == 0:
        z = 0.0 if value == mean else math.copysign(math.inf, value - mean)
    else:
        z = (value - mean) / stddev
    return z, mean, stddev


class AnomalyMonitor:
    """
    Rolling-window anomaly scoring. Thread-safe; may run alongside the loop.
    """

    def __init__(
        self,
        config: Optional[AnomalyConfig] = None,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.config = config or AnomalyConfig()
        self._session_maker = session_maker
        self._lock = threading.Lock()
        self._windows: dict[str, MetricWindow] = {}
        self._current: dict[str, list[float]] = {}
        self.alerts: list[AnomalyAlert] = []

    def _window(self, metric_name: str) -> MetricWindow:
        window = self._windows.get(metric_name)
        if window is None:
            window = MetricWindow(self.config.window_sessions)
            self._windows[metric_name] = window
        return window

    # =========================================================================
    # Scoring
    # =========================================================================

    def metric_names(self) -> list[str]:
        with self._lock:
            return sorted(self._windows)

    def window_values(self, metric_name: str) -> list[float]:
        with self._lock:
            window = self._windows.get(metric_name)
            return list(window.values) if window else []

    def retired_summary(self, metric_name: str) -> RetiredSummary:
        with self._lock:
            window = self._windows.get(metric_name)
            return RetiredSummary(window.retired.count, window.retired.mean) if window else RetiredSummary()

    def add_session_aggregate(self, metric_name: str, value: float) -> None:
        """Push one completed session's aggregate into the window."""
        with self._lock:
            self._window(metric_name).push(value)

    def score_detail(self, sample: MetricSample) -> AnomalyScore:
        window = self.window_values(sample.metric_name)
        if len(window) < self.config.min_samples:
            return AnomalyScore(
                metric_name=sample.metric_name,
                value=sample.value,
                z=None,
                flag=AnomalyFlag.INSUFFICIENT_DATA,
                window_size=len(window),
            )

        z, mean, stddev = z_score(sample.value, window)
        flag = AnomalyFlag.ANOMALY if abs(z) > self.config.z_threshold else AnomalyFlag.NORMAL
        return AnomalyScore(
            metric_name=sample.metric_name,
            value=sample.value,
            z=z,
            flag=flag,
            mean=mean,
            stddev=stddev,
            window_size=len(window),
        )

    def score(self, sample: MetricSample) -> tuple[Optional[float], AnomalyFlag]:
        """(z, flag) for a sample against the current window."""
        detail = self.score_detail(sample)
        return detail.z, detail.flag

    def check_trend(self, metric_name: str, aggregate: float) -> TrendResult:
        """Compare a session aggregate with the moving average of recent sessions."""
        window = self.window_values(metric_name)
        recent = window[-self.config.trend_window:]
        if len(recent) < self.config.trend_window:
            return TrendResult(metric_name, aggregate, None, AnomalyFlag.INSUFFICIENT_DATA)

        moving_average = statistics.fmean(recent)
        flag = (
            AnomalyFlag.TREND_ALERT
            if aggregate > self.config.trend_ratio * moving_average
            else AnomalyFlag.NORMAL
        )
        return TrendResult(metric_name, aggregate, moving_average, flag)

    # =========================================================================
    # Session stream
    # =========================================================================

    def record(self, sample: MetricSample) -> AnomalyScore:
        """Append a sample to the current session and score it."""
        detail = self.score_detail(sample)
        with self._lock:
            self._current.setdefault(sample.metric_name, []).append(float(sample.value))
        if detail.flag == AnomalyFlag.ANOMALY:
            self._alert(AnomalyAlert(
                session_id=sample.session_id,
                metric_name=sample.metric_name,
                flag=AnomalyFlag.ANOMALY,
                severity="MEDIUM",
                value=sample.value,
                reference=detail.mean,
                message=f"{sample.metric_name}={sample.value:g} is {detail.z:+.1f} sd from the recent mean {detail.mean:g}",
            ))
        return detail

    def current_aggregates(self) -> dict[str, float]:
        with self._lock:
            return {name: float(sum(values)) for name, values in self._current.items()}

    def _threshold_alerts(self, session_id: str, aggregates: dict[str, float]) -> list[AnomalyAlert]:
        alerts = []
        calls = aggregates.get(METRIC_TOOL_CALLS, 0)
        errors = aggregates.get(METRIC_ERRORS, 0)
        if calls > self.config.min_calls_for_error_rate:
            rate = errors / calls
            # Compared in whole percent, truncated: 20.9% does not exceed 20%.
            if int(errors * 100 / calls) > round(self.config.error_rate_threshold * 100):
                alerts.append(AnomalyAlert(
                    session_id=session_id,
                    metric_name="error_rate",
                    flag=AnomalyFlag.THRESHOLD_ALERT,
                    severity="HIGH",
                    value=rate,
                    reference=self.config.error_rate_threshold,
                    message=f"Error rate {rate:.1%} exceeds threshold ({self.config.error_rate_threshold:.0%})",
                ))

        tokens = aggregates.get(METRIC_TOKENS, 0)
        if tokens > self.config.token_threshold:
            alerts.append(AnomalyAlert(
                session_id=session_id,
                metric_name=METRIC_TOKENS,
                flag=AnomalyFlag.THRESHOLD_ALERT,
                severity="MEDIUM",
                value=tokens,
                reference=self.config.token_threshold,
                message=f"Token usage ~{tokens:,.0f} exceeds threshold ({self.config.token_threshold:,.0f})",
            ))
        return alerts

    def end_session(self, session_id: str) -> SessionSummary:
        """
        Close the current session: aggregate its samples, check trend and
        static thresholds, then roll the aggregates into the window.
        """
        with self._lock:
            aggregates = {name: float(sum(values)) for name, values in self._current.items()}
            self._current = {}

        summary = SessionSummary(session_id=session_id, aggregates=aggregates)
        for name, aggregate in sorted(aggregates.items()):
            trend = self.check_trend(name, aggregate)
            summary.trends.append(trend)
            if trend.flag == AnomalyFlag.TREND_ALERT:
                summary.alerts.append(AnomalyAlert(
                    session_id=session_id,
                    metric_name=name,
                    flag=AnomalyFlag.TREND_ALERT,
                    severity="MEDIUM",
                    value=aggregate,
                    reference=trend.moving_average,
                    message=(
                        f"{name} session total {aggregate:g} exceeds "
                        f"{self.config.trend_ratio:g}x moving average {trend.moving_average:g}"
                    ),
                ))

        summary.alerts.extend(self._threshold_alerts(session_id, aggregates))
        for alert in summary.alerts:
            self._alert(alert)

        for name, aggregate in aggregates.items():
            self.add_session_aggregate(name, aggregate)
        return summary

    def _alert(self, alert: AnomalyAlert) -> None:
        with self._lock:
            self.alerts.append(alert)

    # =========================================================================
    # Persistence
    # =========================================================================

    async def load_window_async(self) -> int:
        """Restore windows from the newest stored aggregates. Returns metrics loaded."""
        if self._session_maker is None:
            return 0

        async with self._session_maker() as session:
            result = await session.execute(
                select(MetricAggregateModel).order_by(MetricAggregateModel.id.desc())
            )
            rows = result.scalars().all()

        newest: dict[str, list[float]] = {}
        for row in rows:
            values = newest.setdefault(row.metric_name, [])
            if len(values) < self.config.window_sessions:
                values.append(row.value)

        with self._lock:
            for name, values in newest.items():
                window = MetricWindow(self.config.window_sessions)
                for value in reversed(values):
                    window.push(value)
                self._windows[name] = window
        return len(newest)

    async def end_session_async(self, session_id: str) -> SessionSummary:
        """end_session() plus persistence of aggregates and alerts."""
        with self._lock:
            counts = {name: len(values) for name, values in self._current.items()}
        summary = self.end_session(session_id)
        if self._session_maker is None:
            return summary

        try:
            async with self._session_maker() as session:
                for name, aggregate in summary.aggregates.items():
                    session.add(MetricAggregateModel(
                        session_id=session_id,
                        metric_name=name,
                        value=aggregate,
                        sample_count=counts.get(name, 0),
                    ))
                for alert in summary.alerts:
                    session.add(AnomalyAlertModel(
                        session_id=session_id,
                        metric_name=alert.metric_name,
                        flag=alert.flag.value,
                        severity=alert.severity,
                        value=alert.value,
                        reference=alert.reference,
                        message=alert.message,
                    ))
                await session.flush()

                for name in summary.aggregates:
                    keep = await session.execute(
                        select(MetricAggregateModel.id)
                        .where(MetricAggregateModel.metric_name == name)
                        .order_by(MetricAggregateModel.id.desc())
                        .limit(self.config.window_sessions)
                    )
                    keep_ids = [row_id for (row_id,) in keep.all()]
                    await session.execute(
                        delete(MetricAggregateModel).where(
                            MetricAggregateModel.metric_name == name,
                            MetricAggregateModel.id.not_in(keep_ids),
                        )
                    )
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Anomaly data for session %s not persisted: %s", session_id, e)
        return summary

    async def get_alerts_async(self, limit: int = 50) -> list[dict]:
        """Recent persisted alerts (newest first)."""
        if self._session_maker is None:
            return [a.to_dict() for a in reversed(self.alerts)][:limit]

        async with self._session_maker() as session:
            result = await session.execute(
                select(AnomalyAlertModel).order_by(AnomalyAlertModel.id.desc()).limit(limit)
            )
            rows = result.scalars().all()
        return [
            {
                "timestamp": row.timestamp.isoformat() if row.timestamp else None,
                "session_id": row.session_id,
                "metric_name": row.metric_name,
                "flag": row.flag,
                "severity": row.severity,
                "value": row.value,
                "reference": row.reference,
                "message": row.message,
            }
            for row in rows
        ]

"""
Verification Orchestrator
=========================

Wires one verification session end to end:

    fingerprint -> profile cache -> classify -> select tier
        -> (implement) -> loop with escalation -> anomaly session summary

DRY_RUN stops after classification and tier selection. VERIFY_ONLY skips
the implement step but runs the full loop. The anomaly monitor only sees
the session's metrics; nothing it reports feeds back into the loop.

Usage:
    orchestrator = VerificationOrchestrator(project_dir, verify=run_checks)
    report = await orchestrator.run(metrics, mode_token="loop 3")
"""

import inspect
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verifyforge.anomaly import (
    METRIC_DURATION,
    AnomalyMonitor,
    MetricSample,
    SessionSummary,
)
from verifyforge.cache import CacheResult, ProfileCache
from verifyforge.config import VerifyConfig
from verifyforge.escalation import EscalationEngine
from verifyforge.loop import (
    FixFn,
    LoopController,
    LoopOutcome,
    RootCauseFn,
    TargetFn,
    VerifyFn,
)
from verifyforge.risk import ChangeClassifier, ChangeMetrics, ChangeRisk
from verifyforge.session_state import (
    ExecutionMode,
    SessionMode,
    SessionSnapshot,
    SessionState,
    parse_mode_token,
)
from verifyforge.status import Phase, StatusReporter
from verifyforge.tiers import TierSelection, TierSelector

logger = logging.getLogger(__name__)

METRIC_VERIFY_PASSES = "verify_passes"
METRIC_ESCALATIONS = "escalations"

ImplementFn = Callable[[TierSelection, Any], Any]
DiscoverFn = Callable[[], Any]


@dataclass
class VerificationReport:
    """Everything one session decided and produced."""
    session_id: str
    risk: ChangeRisk
    selection: TierSelection
    execution: ExecutionMode
    outcome: LoopOutcome
    profile: Optional[CacheResult] = None
    anomaly: Optional[SessionSummary] = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "signal": self.risk.signal.value,
            "rule": self.risk.rule.value,
            "selection": self.selection.to_dict(),
            "mode": self.execution.mode.value,
            "loop_count": self.execution.loop_count,
            "profile_cache_hit": self.profile.hit if self.profile else None,
            "outcome": self.outcome.to_dict(),
            "anomaly_alerts": [a.to_dict() for a in self.anomaly.alerts] if self.anomaly else [],
        }


class VerificationOrchestrator:
    """
    Runs classification, tier selection and the verification loop for a project.
    """

    def __init__(
        self,
        project_dir: Path,
        verify: Union[VerifyFn, Sequence[VerifyFn]],
        fix: Optional[FixFn] = None,
        implement: Optional[ImplementFn] = None,
        target_condition: Optional[TargetFn] = None,
        root_cause: Optional[RootCauseFn] = None,
        discover: Optional[DiscoverFn] = None,
        config: Optional[VerifyConfig] = None,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        anomaly_monitor: Optional[AnomalyMonitor] = None,
        echo: bool = False,
    ):
        self.project_dir = Path(project_dir)
        self.config = config or VerifyConfig()
        self.classifier = ChangeClassifier.from_config(self.config)
        self.selector = TierSelector()
        self.implement = implement
        self.discover = discover
        self.anomaly_monitor = anomaly_monitor
        self._session_maker = session_maker

        self.reporter = StatusReporter(session_maker=session_maker, echo=echo)
        self.controller = LoopController(
            verify=verify,
            fix=fix,
            target_condition=target_condition,
            root_cause=root_cause,
            circuit_breaker_threshold=self.config.circuit_breaker_threshold,
            reporter=self.reporter,
        )
        self.profile_cache = ProfileCache(session_maker=session_maker) if session_maker else None

    async def load_profile(self, refresh: bool = False) -> Optional[CacheResult]:
        """Project discovery through the profile cache, or uncached without a database."""
        if self.discover is None:
            return None
        if self.profile_cache is None:
            payload = self.discover()
            if inspect.isawaitable(payload):
                payload = await payload
            return CacheResult(payload=payload, fingerprint="", hit=False, stored=False)
        return await self.profile_cache.get_profile(self.project_dir, self.discover, refresh=refresh)

    def plan(
        self,
        metrics: Union[ChangeMetrics, dict],
        mode_token: Optional[str] = None,
    ) -> tuple[ChangeRisk, TierSelection, ExecutionMode]:
        """
        Classify a change and pick its starting tier without running anything.

        Raises:
            ClassificationError: malformed metrics
            InvalidModeToken: unparseable mode token
        """
        execution = parse_mode_token(mode_token)
        if isinstance(metrics, dict):
            metrics = ChangeMetrics.from_dict(metrics)
        risk = self.classifier.classify(metrics)
        selection = self.selector.plan(risk, explicit_loop_requested=execution.explicit_loop)
        return risk, selection, execution

    async def run(
        self,
        metrics: Union[ChangeMetrics, dict],
        mode_token: Optional[str] = None,
        scope: Any = None,
        refresh_profile: bool = False,
    ) -> VerificationReport:
        started = time.monotonic()

        profile = await self.load_profile(refresh=refresh_profile)
        risk, selection, execution = self.plan(metrics, mode_token)

        state = SessionState(
            current_tier=selection.tier,
            max_loops=execution.loop_count or self.config.default_max_loops,
            mode=execution.mode,
        )
        logger.info(
            "Session %s: %s (%s) -> %s, max_loops=%d, mode=%s",
            state.session_id, risk.signal.value, risk.rule.value,
            selection.tier.name, state.max_loops, state.mode.value,
        )
        await self._report(state, Phase.CLASSIFIED, risk.describe())
        await self._report(state, Phase.TIER_SELECTED, selection.reason)

        if self.implement is not None and execution.mode == SessionMode.NORMAL:
            new_scope = self.implement(selection, scope)
            if inspect.isawaitable(new_scope):
                new_scope = await new_scope
            if new_scope is not None:
                scope = new_scope
            await self._report(state, Phase.IMPLEMENTED)

        engine = EscalationEngine(
            state,
            security_keywords=self.classifier.security_keywords,
            session_maker=self._session_maker,
        )
        outcome = await self.controller.run(state, scope=scope, engine=engine)

        anomaly = None
        if self.anomaly_monitor is not None and execution.mode != SessionMode.DRY_RUN:
            anomaly = await self._observe(state.session_id, outcome, time.monotonic() - started)

        return VerificationReport(
            session_id=state.session_id,
            risk=risk,
            selection=selection,
            execution=execution,
            outcome=outcome,
            profile=profile,
            anomaly=anomaly,
        )

    async def resume(
        self,
        snapshot: SessionSnapshot,
        scope: Any = None,
        max_loops: Optional[int] = None,
    ) -> LoopOutcome:
        """Continue a session halted by the circuit breaker."""
        state = SessionState.from_snapshot(snapshot, max_loops=max_loops)
        engine = EscalationEngine(
            state,
            security_keywords=self.classifier.security_keywords,
            session_maker=self._session_maker,
        )
        return await self.controller.resume(snapshot, scope=scope, max_loops=max_loops, engine=engine)

    async def _observe(self, session_id: str, outcome: LoopOutcome, elapsed: float) -> SessionSummary:
        monitor = self.anomaly_monitor
        for name, value in (
            (METRIC_VERIFY_PASSES, outcome.verify_calls),
            (METRIC_ESCALATIONS, len(outcome.escalations)),
            (METRIC_DURATION, elapsed * 1000),
        ):
            monitor.record(MetricSample(name, float(value), session_id=session_id))
        summary = await monitor.end_session_async(session_id)
        for alert in summary.alerts:
            logger.warning("Anomaly (%s): %s", alert.flag.value, alert.message)
        return summary

    async def _report(self, state: SessionState, phase: Phase, message: str = "") -> None:
        await self.reporter.report(
            session_id=state.session_id,
            phase=phase,
            tier=state.current_tier,
            loop_index=state.loop_index,
            max_loops=state.max_loops,
            completed_passes=0,
            message=message,
        )

"""
Tests for the Verification Orchestrator
=======================================

Tests for orchestrator.py - the end-to-end session flow.
"""

import pytest
import tempfile
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from verifyforge.anomaly import AnomalyMonitor
from verifyforge.config import VerifyConfig
from verifyforge.db import EscalationLogModel, SessionLogModel, close_db, init_db
from verifyforge.loop import LoopStatus
from verifyforge.orchestrator import METRIC_VERIFY_PASSES, VerificationOrchestrator
from verifyforge.risk import ChangeMetrics, ClassificationError, RiskSignal
from verifyforge.session_state import InvalidModeToken, SessionMode
from verifyforge.status import Phase
from verifyforge.tiers import Tier
from verifyforge.violations import ViolationSet


LOW = ChangeMetrics(files_changed=2, lines_changed=30, layers_touched={"domain"})
SECURE = ChangeMetrics(files_changed=1, lines_changed=5, layers_touched={"infra"}, keyword_hits={"auth"})
V = ViolationSet.of(("lint", "E501"))


@pytest.fixture
def temp_project():
    """Create a temporary project directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


class Recorder:
    """Verify collaborator returning a fixed result and recording calls."""

    def __init__(self, result=None):
        self.result = result
        self.calls = []

    def __call__(self, tier, scope):
        self.calls.append((tier, scope))
        return self.result


# =============================================================================
# Planning Tests
# =============================================================================

class TestPlan:
    """Classification and tier selection without running anything."""

    def test_security_plan(self, temp_project):
        orchestrator = VerificationOrchestrator(temp_project, verify=Recorder())
        risk, selection, execution = orchestrator.plan(SECURE)
        assert risk.signal == RiskSignal.SECURITY
        assert selection.tier == Tier.THOROUGH
        assert execution.mode == SessionMode.NORMAL

    def test_plan_from_dict(self, temp_project):
        orchestrator = VerificationOrchestrator(temp_project, verify=Recorder())
        _, selection, _ = orchestrator.plan(
            {"files_changed": 25, "lines_changed": 2000, "layers_touched": ["domain", "infra"]}
        )
        assert selection.tier == Tier.THOROUGH

    def test_malformed_metrics_fail_fast(self, temp_project):
        orchestrator = VerificationOrchestrator(temp_project, verify=Recorder())
        with pytest.raises(ClassificationError):
            orchestrator.plan({"files_changed": 2})

    @pytest.mark.asyncio
    async def test_bad_mode_token_runs_nothing(self, temp_project):
        verify = Recorder()
        orchestrator = VerificationOrchestrator(temp_project, verify=verify)
        with pytest.raises(InvalidModeToken):
            await orchestrator.run(LOW, mode_token="loop 0")
        assert verify.calls == []


# =============================================================================
# Run Tests
# =============================================================================

class TestRun:
    """End-to-end sessions."""

    @pytest.mark.asyncio
    async def test_low_risk_clean(self, temp_project):
        verify = Recorder(ViolationSet())
        report = await VerificationOrchestrator(temp_project, verify=verify).run(LOW)

        assert report.selection.tier == Tier.LIGHT
        assert report.outcome.succeeded
        assert report.outcome.max_loops == 1
        assert verify.calls == [(Tier.LIGHT, None)]

    @pytest.mark.asyncio
    async def test_loop_token_floors_and_sets_budget(self, temp_project):
        verify = Recorder(V)
        report = await VerificationOrchestrator(temp_project, verify=verify).run(LOW, mode_token="loop 3")

        assert report.selection.tier == Tier.STANDARD
        assert report.selection.loop_floor_applied
        assert report.outcome.max_loops == 3
        assert verify.calls[0][0] == Tier.STANDARD

    @pytest.mark.asyncio
    async def test_config_default_max_loops(self, temp_project):
        verify = Recorder(V)
        config = VerifyConfig(default_max_loops=2)
        report = await VerificationOrchestrator(temp_project, verify=verify, config=config).run(LOW)
        assert report.outcome.max_loops == 2
        assert report.outcome.status == LoopStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_dry_run_stops_after_planning(self, temp_project):
        verify = Recorder(V)
        implemented = []
        orchestrator = VerificationOrchestrator(
            temp_project, verify=verify, implement=lambda sel, scope: implemented.append(sel),
        )
        report = await orchestrator.run(SECURE, mode_token="dry-run")

        assert report.outcome.status == LoopStatus.DRY_RUN
        assert report.selection.tier == Tier.THOROUGH
        assert verify.calls == []
        assert implemented == []

    @pytest.mark.asyncio
    async def test_implement_feeds_scope(self, temp_project):
        verify = Recorder(ViolationSet())

        def implement(selection, scope):
            return f"{scope}+impl@{selection.tier.name}"

        orchestrator = VerificationOrchestrator(temp_project, verify=verify, implement=implement)
        await orchestrator.run(LOW, scope="change")
        assert verify.calls == [(Tier.LIGHT, "change+impl@LIGHT")]

    @pytest.mark.asyncio
    async def test_verify_only_skips_implement(self, temp_project):
        verify = Recorder(ViolationSet())
        implemented = []
        orchestrator = VerificationOrchestrator(
            temp_project, verify=verify, implement=lambda sel, scope: implemented.append(sel),
        )
        report = await orchestrator.run(LOW, mode_token="verify-only")
        assert implemented == []
        assert report.outcome.succeeded
        assert len(verify.calls) == 1

    @pytest.mark.asyncio
    async def test_phases_reported_in_order(self, temp_project):
        orchestrator = VerificationOrchestrator(temp_project, verify=Recorder(ViolationSet()))
        await orchestrator.run(LOW)
        phases = [s.phase for s in orchestrator.reporter.history]
        assert phases[:2] == [Phase.CLASSIFIED, Phase.TIER_SELECTED]
        assert phases[-1] == Phase.EXITED

    @pytest.mark.asyncio
    async def test_report_to_dict(self, temp_project):
        report = await VerificationOrchestrator(temp_project, verify=Recorder(V)).run(SECURE)
        data = report.to_dict()
        assert data["signal"] == "security"
        assert data["selection"]["cost_class"] == "PREMIUM"
        assert data["outcome"]["status"] == "partial"


# =============================================================================
# Profile Cache / Anomaly / Resume Tests
# =============================================================================

class TestIntegrations:
    """Profile cache, anomaly monitor and resume."""

    @pytest.mark.asyncio
    async def test_profile_cached_between_runs(self, temp_project):
        maker = await init_db(temp_project)
        try:
            discovered = []

            def discover():
                discovered.append(1)
                return {"language": "python"}

            orchestrator = VerificationOrchestrator(
                temp_project, verify=Recorder(ViolationSet()), discover=discover, session_maker=maker,
            )
            first = await orchestrator.run(LOW)
            second = await orchestrator.run(LOW)

            assert first.profile.hit is False
            assert second.profile.hit is True
            assert second.profile.payload == {"language": "python"}
            assert len(discovered) == 1
        finally:
            await close_db()

    @pytest.mark.asyncio
    async def test_profile_without_database(self, temp_project):
        orchestrator = VerificationOrchestrator(
            temp_project, verify=Recorder(ViolationSet()), discover=lambda: {"language": "kotlin"},
        )
        report = await orchestrator.run(LOW)
        assert report.profile.payload == {"language": "kotlin"}
        assert report.profile.hit is False

    @pytest.mark.asyncio
    async def test_anomaly_monitor_observes_session(self, temp_project):
        monitor = AnomalyMonitor()
        orchestrator = VerificationOrchestrator(
            temp_project, verify=Recorder(ViolationSet()), anomaly_monitor=monitor,
        )
        report = await orchestrator.run(LOW)

        assert report.anomaly.aggregates[METRIC_VERIFY_PASSES] == 1
        assert monitor.window_values(METRIC_VERIFY_PASSES) == [1]

    @pytest.mark.asyncio
    async def test_session_persisted_with_database(self, temp_project):
        maker = await init_db(temp_project)
        try:
            orchestrator = VerificationOrchestrator(
                temp_project,
                verify=Recorder(ViolationSet.of(("architecture_boundary", "ui->data"))),
                session_maker=maker,
                anomaly_monitor=AnomalyMonitor(session_maker=maker),
            )
            report = await orchestrator.run(LOW)
            assert report.outcome.tier == Tier.STANDARD

            async with maker() as session:
                escalations = (await session.execute(select(EscalationLogModel))).scalars().all()
                phases = (await session.execute(
                    select(SessionLogModel)
                    .where(SessionLogModel.session_id == report.session_id)
                    .order_by(SessionLogModel.id)
                )).scalars().all()

            assert [(e.from_tier, e.to_tier) for e in escalations] == [("LIGHT", "STANDARD")]
            assert phases[0].phase == "classified"
            assert phases[-1].phase == "exited"
        finally:
            await close_db()

    @pytest.mark.asyncio
    async def test_unreachable_database_keeps_outcome(self, temp_project):
        db = create_async_engine(f"sqlite+aiosqlite:///{temp_project / 'missing' / 'state.db'}")
        maker = async_sessionmaker(db, expire_on_commit=False)
        try:
            orchestrator = VerificationOrchestrator(
                temp_project,
                verify=Recorder(ViolationSet()),
                session_maker=maker,
                anomaly_monitor=AnomalyMonitor(session_maker=maker),
            )
            report = await orchestrator.run(LOW)
        finally:
            await db.dispose()

        assert report.outcome.succeeded
        assert report.anomaly.aggregates[METRIC_VERIFY_PASSES] == 1

    @pytest.mark.asyncio
    async def test_resume_after_halt(self, temp_project):
        results = [V, V, V, ViolationSet()]

        def verify(tier, scope):
            return results.pop(0)

        orchestrator = VerificationOrchestrator(temp_project, verify=verify)
        report = await orchestrator.run(SECURE, mode_token="loop 3")
        assert report.outcome.status == LoopStatus.HALTED

        outcome = await orchestrator.resume(report.outcome.snapshot, max_loops=5)
        assert outcome.succeeded
        assert outcome.tier == Tier.THOROUGH
        assert outcome.loop_index == 4

"""
Tests for Tier Escalation Engine
================================

Tests for escalation.py - monotonic tier transitions.
"""

import itertools
import pytest
import tempfile
from pathlib import Path

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from verifyforge.db import close_db, init_db
from verifyforge.escalation import (
    ESCALATION_TABLE,
    EscalationEngine,
    EscalationTrigger,
)
from verifyforge.session_state import SessionState
from verifyforge.tiers import Tier
from verifyforge.violations import ARCHITECTURE_BOUNDARY, ViolationSet


BOUNDARY = ViolationSet.of((ARCHITECTURE_BOUNDARY, "domain->infra"))
SECURITY = ViolationSet.of(("auth", "missing-check"))
LINT = ViolationSet.of(("lint", "E501"))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def temp_project():
    """Create a temporary project directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def make_engine(tier=Tier.LIGHT, max_loops=5):
    state = SessionState(current_tier=tier, max_loops=max_loops)
    return EscalationEngine(state), state


# =============================================================================
# Immediate Escalation Tests
# =============================================================================

class TestImmediateEscalation:
    """Boundary and security findings escalate mid-iteration."""

    def test_boundary_light_to_standard(self):
        engine, state = make_engine(Tier.LIGHT)
        event = engine.observe(BOUNDARY)
        assert event.to_tier == Tier.STANDARD
        assert event.immediate
        assert state.current_tier == Tier.STANDARD
        assert state.escalated

    def test_boundary_at_standard_no_change(self):
        engine, state = make_engine(Tier.STANDARD)
        assert engine.observe(BOUNDARY) is None
        assert state.current_tier == Tier.STANDARD

    @pytest.mark.parametrize("tier", [Tier.LIGHT, Tier.STANDARD])
    def test_security_to_thorough(self, tier):
        engine, state = make_engine(tier)
        event = engine.observe(SECURITY)
        assert event.trigger == EscalationTrigger.SECURITY_VIOLATION
        assert state.current_tier == Tier.THOROUGH

    def test_security_at_thorough_no_change(self):
        engine, state = make_engine(Tier.THOROUGH)
        assert engine.observe(SECURITY) is None

    def test_security_beats_boundary(self):
        engine, state = make_engine(Tier.LIGHT)
        mixed = ViolationSet.of((ARCHITECTURE_BOUNDARY, "x"), ("token-leak", "y"))
        event = engine.observe(mixed)
        assert event.trigger == EscalationTrigger.SECURITY_VIOLATION
        assert state.current_tier == Tier.THOROUGH

    def test_plain_findings_no_change(self):
        engine, state = make_engine(Tier.LIGHT)
        assert engine.observe(LINT) is None
        assert not state.escalated

    def test_escalation_discards_history(self):
        engine, state = make_engine(Tier.LIGHT)
        state.record_pass(LINT)
        state.record_pass(LINT)
        event = engine.observe(BOUNDARY)
        assert event.discarded_passes == 2
        assert state.violation_history == []


# =============================================================================
# Repeated Violation Tests
# =============================================================================

class TestRepeatedEscalation:
    """Same set twice schedules a one-level escalation for the next iteration."""

    def test_single_pass_schedules_nothing(self):
        engine, state = make_engine(Tier.LIGHT)
        state.record_pass(LINT)
        assert engine.review_completed_pass() is None

    def test_two_repeats_schedule(self):
        engine, state = make_engine(Tier.LIGHT)
        state.record_pass(LINT)
        state.record_pass(LINT)
        pending = engine.review_completed_pass()
        assert pending.to_tier == Tier.STANDARD
        assert not pending.applied
        # Not applied until the next iteration starts
        assert state.current_tier == Tier.LIGHT

        applied = engine.apply_pending()
        assert applied.to_tier == Tier.STANDARD
        assert not applied.immediate
        assert state.current_tier == Tier.STANDARD
        assert state.violation_history == []

    def test_standard_to_thorough(self):
        engine, state = make_engine(Tier.STANDARD)
        state.record_pass(LINT)
        state.record_pass(LINT)
        engine.review_completed_pass()
        engine.apply_pending()
        assert state.current_tier == Tier.THOROUGH

    def test_thorough_defers_to_breaker(self):
        engine, state = make_engine(Tier.THOROUGH)
        state.record_pass(LINT)
        state.record_pass(LINT)
        assert engine.review_completed_pass() is None
        assert engine.apply_pending() is None

    def test_immediate_supersedes_pending(self):
        engine, state = make_engine(Tier.LIGHT)
        state.record_pass(LINT)
        state.record_pass(LINT)
        engine.review_completed_pass()
        engine.observe(SECURITY)
        assert engine.pending is None
        assert engine.apply_pending() is None
        assert state.current_tier == Tier.THOROUGH

    def test_apply_without_pending(self):
        engine, _ = make_engine(Tier.LIGHT)
        assert engine.apply_pending() is None


# =============================================================================
# Monotonicity Tests
# =============================================================================

class TestMonotonicity:
    """The tier never decreases under any sequence of signals."""

    def test_table_only_raises(self):
        for (tier, _trigger), target in ESCALATION_TABLE.items():
            assert target > tier

    @pytest.mark.parametrize("sequence", list(itertools.product(["boundary", "security", "lint"], repeat=4)))
    def test_never_decreases(self, sequence):
        engine, state = make_engine(Tier.LIGHT)
        sets = {"boundary": BOUNDARY, "security": SECURITY, "lint": LINT}
        seen = [state.current_tier]
        for name in sequence:
            engine.observe(sets[name])
            state.record_pass(sets[name])
            engine.review_completed_pass()
            engine.apply_pending()
            seen.append(state.current_tier)
        assert seen == sorted(seen)

    def test_raise_to_refuses_lowering(self):
        engine, _ = make_engine(Tier.THOROUGH)
        with pytest.raises(RuntimeError):
            engine._raise_to(Tier.STANDARD, EscalationTrigger.REPEATED_VIOLATIONS, immediate=False)


# =============================================================================
# Persistence / Stats Tests
# =============================================================================

class TestEscalationLog:
    """Tests for the escalation log."""

    def test_stats(self):
        engine, _ = make_engine(Tier.LIGHT)
        engine.observe(BOUNDARY)
        engine.observe(SECURITY)
        stats = engine.get_stats()
        assert stats["total_escalations"] == 2
        assert stats["current_tier"] == "THOROUGH"
        assert stats["by_trigger"] == {"architecture_boundary": 1, "security_violation": 1}

    @pytest.mark.asyncio
    async def test_in_memory_history(self):
        engine, _ = make_engine(Tier.LIGHT)
        engine.observe(BOUNDARY)
        assert await engine.flush_log() == 0
        history = await engine.get_escalation_history_async()
        assert history[0]["to_tier"] == "STANDARD"

    @pytest.mark.asyncio
    async def test_flush_to_database(self, temp_project):
        maker = await init_db(temp_project)
        try:
            state = SessionState(current_tier=Tier.LIGHT)
            engine = EscalationEngine(state, session_maker=maker)
            engine.observe(BOUNDARY)
            engine.observe(SECURITY)

            assert await engine.flush_log() == 2
            assert await engine.flush_log() == 0

            history = await engine.get_escalation_history_async(session_id=state.session_id)
            assert [h["to_tier"] for h in history] == ["THOROUGH", "STANDARD"]
            assert history[0]["immediate"] is True
        finally:
            await close_db()

    @pytest.mark.asyncio
    async def test_flush_to_unreachable_database(self, temp_project):
        db = create_async_engine(f"sqlite+aiosqlite:///{temp_project / 'missing' / 'state.db'}")
        try:
            state = SessionState(current_tier=Tier.LIGHT)
            engine = EscalationEngine(state, session_maker=async_sessionmaker(db, expire_on_commit=False))
            engine.observe(BOUNDARY)

            assert await engine.flush_log() == 0
        finally:
            await db.dispose()

        assert state.current_tier == Tier.STANDARD
        assert [e.to_tier for e in engine.events] == [Tier.STANDARD]

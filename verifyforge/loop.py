"""
Verification Loop Controller
============================

Drives bounded verify iterations for one session and decides, after every
completed pass, whether to exit, halt or continue.

Each iteration:
    1. apply any escalation scheduled by the previous iteration
    2. verify at the current tier (workers run concurrently, results merged)
    3. immediate escalations force re-verification at the new tier
    4. optional auto-fix, followed by a post-fix verify
    5. evaluate, strictly in order:
         empty set                        -> EXIT success
         target condition met             -> EXIT success
         same set N times in a row        -> HALT (circuit breaker)
         loop_index >= max_loops          -> EXIT partial
         otherwise                        -> escalation first refusal, next iteration

A circuit-break halt is not an error: the outcome carries a resumable
snapshot and the root-cause collaborator (if any) decides resume or abort.

Usage:
    controller = LoopController(verify=run_checks, fix=auto_fix)
    outcome = await controller.run(SessionState(current_tier=Tier.STANDARD, max_loops=3))
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, Union

from verifyforge.config import CIRCUIT_BREAKER_THRESHOLD
from verifyforge.escalation import EscalationEngine, EscalationEvent
from verifyforge.session_state import SessionMode, SessionSnapshot, SessionState
from verifyforge.status import Phase, StatusReporter
from verifyforge.tiers import Tier
from verifyforge.violations import Violation, ViolationSet

logger = logging.getLogger(__name__)


class LoopStatus(Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    HALTED = "halted"
    ABORTED = "aborted"
    DRY_RUN = "dry_run"


class ExitReason(Enum):
    NO_VIOLATIONS = "no_violations"
    TARGET_MET = "target_met"
    CIRCUIT_BREAK = "circuit_break"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"
    DRY_RUN = "dry_run"


class ResumeDecision(Enum):
    RESUME = "resume"
    ABORT = "abort"


VerifyResult = Union[ViolationSet, Iterable[Violation], Iterable[tuple], None]
VerifyFn = Callable[[Tier, Any], Union[VerifyResult, Awaitable[VerifyResult]]]
FixFn = Callable[[ViolationSet], Any]
TargetFn = Callable[[ViolationSet, SessionState], bool]
RootCauseFn = Callable[[SessionSnapshot], Union[ResumeDecision, Awaitable[ResumeDecision]]]


@dataclass
class LoopOutcome:
    """Result of driving a session's loop."""
    status: LoopStatus
    reason: ExitReason
    tier: Tier
    loop_index: int
    max_loops: int
    remaining: ViolationSet = field(default_factory=ViolationSet)
    snapshot: Optional[SessionSnapshot] = None
    escalations: list[EscalationEvent] = field(default_factory=list)
    verify_calls: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == LoopStatus.SUCCESS

    @property
    def needs_decision(self) -> bool:
        return self.status == LoopStatus.HALTED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "reason": self.reason.value,
            "tier": self.tier.name,
            "loop_index": self.loop_index,
            "max_loops": self.max_loops,
            "remaining": self.remaining.to_list(),
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "escalations": [e.to_dict() for e in self.escalations],
            "verify_calls": self.verify_calls,
        }


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


def _coerce_violations(result: VerifyResult) -> ViolationSet:
    if result is None:
        return ViolationSet()
    if isinstance(result, ViolationSet):
        return result
    items = []
    for item in result:
        if isinstance(item, Violation):
            items.append(item)
        elif isinstance(item, (tuple, list)) and len(item) == 2:
            items.append(Violation(str(item[0]), str(item[1])))
        else:
            raise TypeError(f"Verify collaborator returned an unrecognised finding: {item!r}")
    return ViolationSet(items)


@dataclass
class _Run:
    """Per-run bookkeeping."""
    state: SessionState
    engine: EscalationEngine
    scope: Any
    completed_passes: int = 0
    verify_calls: int = 0
    first_event: int = 0


class LoopController:
    """
    Bounded verify loop with escalation hand-off and circuit breaker.
    """

    def __init__(
        self,
        verify: Union[VerifyFn, Sequence[VerifyFn]],
        fix: Optional[FixFn] = None,
        target_condition: Optional[TargetFn] = None,
        root_cause: Optional[RootCauseFn] = None,
        circuit_breaker_threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        reporter: Optional[StatusReporter] = None,
    ):
        if callable(verify):
            self._workers: list[VerifyFn] = [verify]
        else:
            self._workers = list(verify)
        if not self._workers:
            raise ValueError("At least one verify collaborator is required")
        if circuit_breaker_threshold < 2:
            raise ValueError("circuit_breaker_threshold must be at least 2")

        self.fix = fix
        self.target_condition = target_condition
        self.root_cause = root_cause
        self.circuit_breaker_threshold = circuit_breaker_threshold
        self.reporter = reporter or StatusReporter()

    # =========================================================================
    # Public API
    # =========================================================================

    async def run(
        self,
        state: SessionState,
        scope: Any = None,
        engine: Optional[EscalationEngine] = None,
    ) -> LoopOutcome:
        """Drive the loop for a fresh session."""
        run = _Run(state=state, engine=engine or EscalationEngine(state), scope=scope)
        run.first_event = len(run.engine.events)

        if state.mode == SessionMode.DRY_RUN:
            await self._report(run, Phase.EXITED, "dry run: loop not entered")
            return self._outcome(run, LoopStatus.DRY_RUN, ExitReason.DRY_RUN)

        return await self._drive(run)

    async def resume(
        self,
        snapshot: SessionSnapshot,
        scope: Any = None,
        max_loops: Optional[int] = None,
        engine: Optional[EscalationEngine] = None,
    ) -> LoopOutcome:
        """
        Continue a halted session from its snapshot.

        The tier and loop index are restored; the repeat counter starts over.
        Pass a larger max_loops to grant more iterations. A supplied engine
        must already own the restored state.
        """
        if engine is not None:
            state = engine.state
        else:
            state = SessionState.from_snapshot(snapshot, max_loops=max_loops)
            engine = EscalationEngine(state)
        run = _Run(state=state, engine=engine, scope=scope)
        run.first_event = len(run.engine.events)
        run.completed_passes = state.loop_index

        await self._report(run, Phase.RESUMED, f"resumed at loop {state.loop_index}")
        if state.loop_index >= state.max_loops:
            return self._outcome(
                run, LoopStatus.PARTIAL, ExitReason.EXHAUSTED, remaining=snapshot.last_violations,
            )
        state.loop_index += 1
        return await self._drive(run)

    # =========================================================================
    # Loop
    # =========================================================================

    async def _drive(self, run: _Run) -> LoopOutcome:
        state = run.state

        while True:
            scheduled = run.engine.apply_pending()
            if scheduled is not None:
                await self._report(run, Phase.ESCALATED, f"{scheduled.from_tier.name} -> {scheduled.to_tier.name}")

            violations = await self._run_pass(run)
            state.record_pass(violations)
            run.completed_passes += 1
            await run.engine.flush_log()
            await self._report(run, Phase.EVALUATED, f"{len(violations)} violation(s)")

            if violations.is_empty:
                return await self._finish(run, LoopStatus.SUCCESS, ExitReason.NO_VIOLATIONS)

            if self.target_condition is not None and self.target_condition(violations, state):
                return await self._finish(run, LoopStatus.SUCCESS, ExitReason.TARGET_MET, violations)

            if state.consecutive_repeats() >= self.circuit_breaker_threshold:
                snapshot = state.snapshot()
                await self._report(run, Phase.HALTED, "identical violations repeated")
                decision = await self._ask_root_cause(snapshot)
                if decision is None:
                    return self._outcome(
                        run, LoopStatus.HALTED, ExitReason.CIRCUIT_BREAK, violations, snapshot,
                    )
                if decision == ResumeDecision.ABORT:
                    return self._outcome(
                        run, LoopStatus.ABORTED, ExitReason.ABORTED, violations, snapshot,
                    )
                state.discard_history()
                await self._report(run, Phase.RESUMED, "root-cause review requested resume")

            if state.loop_index >= state.max_loops:
                return await self._finish(run, LoopStatus.PARTIAL, ExitReason.EXHAUSTED, violations)

            run.engine.review_completed_pass()
            state.loop_index += 1

    async def _run_pass(self, run: _Run) -> ViolationSet:
        violations = await self._verify_settled(run)

        if violations and self.fix is not None:
            new_scope = await _maybe_await(self.fix(violations))
            if new_scope is not None:
                run.scope = new_scope
            await self._report(run, Phase.FIXED, f"auto-fix applied to {len(violations)} violation(s)")
            violations = await self._verify_settled(run)

        return violations

    async def _verify_settled(self, run: _Run) -> ViolationSet:
        """Verify, re-verifying after each immediate escalation until the tier is stable."""
        violations = await self._verify(run)
        while True:
            event = run.engine.observe(violations)
            if event is None:
                return violations
            await self._report(run, Phase.ESCALATED, f"{event.from_tier.name} -> {event.to_tier.name}")
            violations = await self._verify(run)

    async def _verify(self, run: _Run) -> ViolationSet:
        tier = run.state.current_tier
        named = len(self._workers) > 1
        results = await asyncio.gather(*(
            self._call_worker(worker, tier, run.scope, parallel=named) for worker in self._workers
        ))
        run.verify_calls += 1
        merged = ViolationSet.merge(results)
        await self._report(run, Phase.VERIFIED, f"{len(merged)} violation(s) at {tier.name}")
        return merged

    async def _call_worker(self, worker: VerifyFn, tier: Tier, scope: Any, parallel: bool) -> ViolationSet:
        source = getattr(worker, "__name__", type(worker).__name__) if parallel else None
        try:
            if parallel and not inspect.iscoroutinefunction(worker):
                result = await asyncio.to_thread(worker, tier, scope)
            else:
                result = worker(tier, scope)
            result = await _maybe_await(result)
            return _coerce_violations(result)
        except Exception as e:
            logger.warning("Verify collaborator %s failed: %s", source or "", e)
            return ViolationSet.tooling_failure(e, source=source)

    async def _ask_root_cause(self, snapshot: SessionSnapshot) -> Optional[ResumeDecision]:
        if self.root_cause is None:
            return None
        decision = await _maybe_await(self.root_cause(snapshot))
        if not isinstance(decision, ResumeDecision):
            decision = ResumeDecision(str(decision).lower())
        return decision

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _report(self, run: _Run, phase: Phase, message: str = "") -> None:
        state = run.state
        await self.reporter.report(
            session_id=state.session_id,
            phase=phase,
            tier=state.current_tier,
            loop_index=state.loop_index,
            max_loops=state.max_loops,
            completed_passes=run.completed_passes,
            message=message,
        )

    async def _finish(
        self,
        run: _Run,
        status: LoopStatus,
        reason: ExitReason,
        remaining: Optional[ViolationSet] = None,
    ) -> LoopOutcome:
        await self._report(run, Phase.EXITED, reason.value)
        return self._outcome(run, status, reason, remaining)

    def _outcome(
        self,
        run: _Run,
        status: LoopStatus,
        reason: ExitReason,
        remaining: Optional[ViolationSet] = None,
        snapshot: Optional[SessionSnapshot] = None,
    ) -> LoopOutcome:
        state = run.state
        return LoopOutcome(
            status=status,
            reason=reason,
            tier=state.current_tier,
            loop_index=state.loop_index,
            max_loops=state.max_loops,
            remaining=remaining if remaining is not None else ViolationSet(),
            snapshot=snapshot,
            escalations=list(run.engine.events[run.first_event:]),
            verify_calls=run.verify_calls,
        )

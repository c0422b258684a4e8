"""
Tier Escalation Engine
======================

Owns the current verification tier of a session and raises it, never lowers
it, as risk signals arrive during execution.

Transitions (one-directional):

    trigger                 LIGHT      STANDARD   THOROUGH
    architecture_boundary   STANDARD   -          -           immediate
    security_violation      THOROUGH   THOROUGH   -           immediate
    repeated_violations     STANDARD   THOROUGH   (breaker)   next iteration

Any escalation discards the violations gathered under the superseded tier,
so verification restarts from scratch at the new tier. Immediate
escalations happen mid-iteration and force re-verification before the
iteration completes; repeated-violation escalations are scheduled and take
effect when the next iteration starts. At THOROUGH a repeated set has no
higher tier and is left to the loop's circuit breaker.

Storage: escalations are logged to the escalation_log table when a database
session maker is supplied.

Usage:
    from verifyforge.escalation import EscalationEngine

    engine = EscalationEngine(state)
    event = engine.observe(violations)      # immediate rules
    if event:
        ...re-verify at state.current_tier...
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verifyforge.db.models import EscalationLogModel
from verifyforge.risk import SECURITY_KEYWORDS, is_security_term
from verifyforge.session_state import SessionState
from verifyforge.tiers import Tier
from verifyforge.violations import ARCHITECTURE_BOUNDARY, ViolationSet

logger = logging.getLogger(__name__)


class EscalationTrigger(Enum):
    ARCHITECTURE_BOUNDARY = "architecture_boundary"
    SECURITY_VIOLATION = "security_violation"
    REPEATED_VIOLATIONS = "repeated_violations"


IMMEDIATE_TRIGGERS = frozenset({
    EscalationTrigger.ARCHITECTURE_BOUNDARY,
    EscalationTrigger.SECURITY_VIOLATION,
})

# (current tier, trigger) -> target tier. Missing entries mean "no escalation".
ESCALATION_TABLE: dict[tuple[Tier, EscalationTrigger], Tier] = {
    (Tier.LIGHT, EscalationTrigger.ARCHITECTURE_BOUNDARY): Tier.STANDARD,
    (Tier.LIGHT, EscalationTrigger.SECURITY_VIOLATION): Tier.THOROUGH,
    (Tier.STANDARD, EscalationTrigger.SECURITY_VIOLATION): Tier.THOROUGH,
    (Tier.LIGHT, EscalationTrigger.REPEATED_VIOLATIONS): Tier.STANDARD,
    (Tier.STANDARD, EscalationTrigger.REPEATED_VIOLATIONS): Tier.THOROUGH,
}

# Consecutive identical passes that schedule a one-level escalation
REPEAT_ESCALATION_COUNT = 2


@dataclass
class EscalationEvent:
    """A tier change (or a scheduled one)."""
    from_tier: Tier
    to_tier: Tier
    trigger: EscalationTrigger
    immediate: bool
    loop_index: int
    discarded_passes: int = 0
    applied: bool = True
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "from_tier": self.from_tier.name,
            "to_tier": self.to_tier.name,
            "trigger": self.trigger.value,
            "immediate": self.immediate,
            "loop_index": self.loop_index,
            "discarded_passes": self.discarded_passes,
            "applied": self.applied,
            "timestamp": self.timestamp,
        }


class EscalationEngine:
    """
    Monotonic tier state machine for one session.

    The engine mutates only state.current_tier, state.escalated and (on
    escalation) state.violation_history.
    """

    def __init__(
        self,
        state: SessionState,
        security_keywords: Iterable[str] = SECURITY_KEYWORDS,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.state = state
        self.security_keywords = frozenset(k.lower() for k in security_keywords)
        self._session_maker = session_maker

        self._pending: Optional[EscalationEvent] = None
        self.events: list[EscalationEvent] = []
        self._unlogged: list[EscalationEvent] = []

    @property
    def current_tier(self) -> Tier:
        return self.state.current_tier

    @property
    def pending(self) -> Optional[EscalationEvent]:
        return self._pending

    # =========================================================================
    # Transitions
    # =========================================================================

    def _target(self, trigger: EscalationTrigger) -> Optional[Tier]:
        return ESCALATION_TABLE.get((self.state.current_tier, trigger))

    def _raise_to(self, target: Tier, trigger: EscalationTrigger, immediate: bool) -> EscalationEvent:
        current = self.state.current_tier
        if target <= current:
            raise RuntimeError(f"Refusing non-increasing tier change {current.name} -> {target.name}")

        discarded = self.state.discard_history()
        self.state.current_tier = target
        self.state.escalated = True

        event = EscalationEvent(
            from_tier=current,
            to_tier=target,
            trigger=trigger,
            immediate=immediate,
            loop_index=self.state.loop_index,
            discarded_passes=discarded,
        )
        self.events.append(event)
        self._unlogged.append(event)
        logger.info(
            "Escalated %s -> %s (%s, loop %d, %d pass(es) discarded)",
            current.name, target.name, trigger.value, self.state.loop_index, discarded,
        )
        return event

    def classify_violations(self, violations: ViolationSet) -> Optional[EscalationTrigger]:
        """The strongest immediate trigger present in a fresh set, if any."""
        categories = violations.categories()
        if any(is_security_term(c, self.security_keywords) for c in categories):
            return EscalationTrigger.SECURITY_VIOLATION
        if ARCHITECTURE_BOUNDARY in categories:
            return EscalationTrigger.ARCHITECTURE_BOUNDARY
        return None

    def observe(self, violations: ViolationSet) -> Optional[EscalationEvent]:
        """
        Apply immediate rules to a freshly reported violation set.

        Security findings take priority over boundary findings. Returns the
        event if the tier changed; the caller must then re-verify.
        """
        trigger = self.classify_violations(violations)
        if trigger is None:
            return None

        target = self._target(trigger)
        if target is None:
            return None

        # An immediate escalation supersedes anything scheduled for next iteration.
        if self._pending is not None and self._pending.to_tier <= target:
            self._pending = None
        return self._raise_to(target, trigger, immediate=True)

    def review_completed_pass(self) -> Optional[EscalationEvent]:
        """
        First refusal before the loop continues.

        If the latest completed set repeated REPEAT_ESCALATION_COUNT times in
        a row, schedule a one-level escalation for the next iteration. At
        THOROUGH nothing is scheduled and the circuit breaker decides.
        """
        if self.state.consecutive_repeats() < REPEAT_ESCALATION_COUNT:
            return None

        target = self._target(EscalationTrigger.REPEATED_VIOLATIONS)
        if target is None:
            return None

        self._pending = EscalationEvent(
            from_tier=self.state.current_tier,
            to_tier=target,
            trigger=EscalationTrigger.REPEATED_VIOLATIONS,
            immediate=False,
            loop_index=self.state.loop_index,
            applied=False,
        )
        return self._pending

    def apply_pending(self) -> Optional[EscalationEvent]:
        """Apply a scheduled escalation at the start of an iteration."""
        pending, self._pending = self._pending, None
        if pending is None or pending.to_tier <= self.state.current_tier:
            return None
        return self._raise_to(pending.to_tier, pending.trigger, immediate=False)

    # =========================================================================
    # Persistence
    # =========================================================================

    async def flush_log(self) -> int:
        """Write unlogged escalations to the database. Returns rows written."""
        if self._session_maker is None or not self._unlogged:
            self._unlogged.clear()
            return 0

        events, self._unlogged = self._unlogged, []
        try:
            async with self._session_maker() as session:
                for event in events:
                    session.add(EscalationLogModel(
                        session_id=self.state.session_id,
                        from_tier=event.from_tier.name,
                        to_tier=event.to_tier.name,
                        trigger=event.trigger.value,
                        immediate=event.immediate,
                        loop_index=event.loop_index,
                        discarded_violations=event.discarded_passes,
                    ))
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            # The in-memory events stay authoritative; only the log row is lost.
            logger.warning("Escalation log write failed, %d event(s) not logged: %s", len(events), e)
            return 0
        return len(events)

    async def get_escalation_history_async(
        self,
        limit: int = 50,
        session_id: Optional[str] = None,
    ) -> list[dict]:
        """
        Recent escalations from the database (newest first).

        Args:
            limit: Maximum entries to return
            session_id: Optional filter by session
        """
        if self._session_maker is None:
            return [e.to_dict() for e in reversed(self.events)][:limit]

        query = select(EscalationLogModel).order_by(EscalationLogModel.id.desc())
        if session_id:
            query = query.where(EscalationLogModel.session_id == session_id)
        query = query.limit(limit)

        async with self._session_maker() as session:
            result = await session.execute(query)
            rows = result.scalars().all()

        return [
            {
                "timestamp": row.timestamp.isoformat() if row.timestamp else None,
                "session_id": row.session_id,
                "from_tier": row.from_tier,
                "to_tier": row.to_tier,
                "trigger": row.trigger,
                "immediate": row.immediate,
                "loop_index": row.loop_index,
            }
            for row in rows
        ]

    def get_stats(self) -> dict:
        """Escalation statistics for this session."""
        by_trigger: dict[str, int] = {}
        for event in self.events:
            by_trigger[event.trigger.value] = by_trigger.get(event.trigger.value, 0) + 1
        return {
            "current_tier": self.state.current_tier.name,
            "escalated": self.state.escalated,
            "total_escalations": len(self.events),
            "by_trigger": by_trigger,
            "pending": self._pending.to_tier.name if self._pending else None,
        }

"""
Session State
=============

Live state of one verification session. Owned by a single session, mutated
only by the EscalationEngine (tier) and the LoopController (loop index and
violation history), and discarded when the session ends.

A SessionSnapshot is the frozen, resumable form left behind by a
circuit-break halt.
"""

import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List

from verifyforge.tiers import Tier
from verifyforge.violations import ViolationSet


class InvalidModeToken(ValueError):
    """Raised for an execution mode token that cannot be parsed."""


class SessionMode(Enum):
    NORMAL = "normal"
    VERIFY_ONLY = "verify_only"
    DRY_RUN = "dry_run"


@dataclass(frozen=True)
class ExecutionMode:
    """Parsed execution mode token."""
    mode: SessionMode = SessionMode.NORMAL
    loop_count: Optional[int] = None  # set only for an explicit "loop N"

    @property
    def explicit_loop(self) -> bool:
        return self.loop_count is not None


_LOOP_RE = re.compile(r"^loop\s+(\S+)$")


def parse_mode_token(token: Optional[str]) -> ExecutionMode:
    """
    Parse "loop N", "verify-only", "dry-run" or an empty token.

    Raises:
        InvalidModeToken: for unknown tokens or a loop count below 1
    """
    if token is None:
        return ExecutionMode()

    normalized = " ".join(token.strip().lower().split())
    if not normalized:
        return ExecutionMode()
    if normalized in ("verify-only", "verify_only"):
        return ExecutionMode(mode=SessionMode.VERIFY_ONLY)
    if normalized in ("dry-run", "dry_run"):
        return ExecutionMode(mode=SessionMode.DRY_RUN)

    match = _LOOP_RE.match(normalized)
    if match:
        try:
            count = int(match.group(1))
        except ValueError:
            raise InvalidModeToken(f"Loop count must be an integer: {token!r}") from None
        if count < 1:
            raise InvalidModeToken(f"Loop count must be at least 1: {token!r}")
        return ExecutionMode(mode=SessionMode.NORMAL, loop_count=count)

    raise InvalidModeToken(f"Unknown mode token: {token!r}")


@dataclass(frozen=True)
class SessionSnapshot:
    """Resumable state captured when the circuit breaker halts a session."""
    session_id: str
    tier: Tier
    escalated: bool
    loop_index: int
    max_loops: int
    mode: SessionMode
    last_violations: ViolationSet
    consecutive_repeats: int

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "tier": self.tier.name,
            "escalated": self.escalated,
            "loop_index": self.loop_index,
            "max_loops": self.max_loops,
            "mode": self.mode.value,
            "last_violations": self.last_violations.to_list(),
            "consecutive_repeats": self.consecutive_repeats,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionSnapshot":
        return cls(
            session_id=data["session_id"],
            tier=Tier[data["tier"]],
            escalated=data.get("escalated", False),
            loop_index=data["loop_index"],
            max_loops=data["max_loops"],
            mode=SessionMode(data.get("mode", SessionMode.NORMAL.value)),
            last_violations=ViolationSet.from_dicts(data.get("last_violations", [])),
            consecutive_repeats=data.get("consecutive_repeats", 0),
        )


@dataclass
class SessionState:
    """Live state for one verification session."""
    current_tier: Tier
    max_loops: int = 1
    mode: SessionMode = SessionMode.NORMAL
    escalated: bool = False
    loop_index: int = 1
    violation_history: List[ViolationSet] = field(default_factory=list)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if self.max_loops < 1:
            raise ValueError(f"max_loops must be at least 1, got {self.max_loops}")

    @property
    def last_violations(self) -> ViolationSet:
        return self.violation_history[-1] if self.violation_history else ViolationSet()

    def consecutive_repeats(self) -> int:
        """How many times the latest non-empty set has appeared back to back."""
        if not self.violation_history or self.violation_history[-1].is_empty:
            return 0
        latest = self.violation_history[-1]
        count = 0
        for vs in reversed(self.violation_history):
            if vs != latest:
                break
            count += 1
        return count

    def record_pass(self, violations: ViolationSet) -> None:
        self.violation_history.append(violations)

    def discard_history(self) -> int:
        """Drop findings gathered under a superseded tier. Returns how many passes were dropped."""
        dropped = len(self.violation_history)
        self.violation_history.clear()
        return dropped

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            tier=self.current_tier,
            escalated=self.escalated,
            loop_index=self.loop_index,
            max_loops=self.max_loops,
            mode=self.mode,
            last_violations=self.last_violations,
            consecutive_repeats=self.consecutive_repeats(),
        )

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot, max_loops: Optional[int] = None) -> "SessionState":
        """
        Rebuild live state for a resumed session; the repeat counter starts fresh.

        max_loops can only extend the original budget, never shrink it.
        """
        return cls(
            current_tier=snapshot.tier,
            max_loops=max(max_loops or 0, snapshot.max_loops),
            mode=snapshot.mode,
            escalated=snapshot.escalated,
            loop_index=snapshot.loop_index,
            session_id=snapshot.session_id,
        )

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "current_tier": self.current_tier.name,
            "escalated": self.escalated,
            "loop_index": self.loop_index,
            "max_loops": self.max_loops,
            "mode": self.mode.value,
            "violation_history": [vs.to_list() for vs in self.violation_history],
        }

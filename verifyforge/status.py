"""
Phase Status Reporting
======================

Read-only telemetry emitted after every phase transition: current tier,
loop index/max and a 0-100% advisory load indicator. Entries go to the
console (optional), to registered listeners, and to the session_log table
when a database is configured. Nothing here feeds back into decisions.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verifyforge.db.models import SessionLogModel
from verifyforge.output import print_status_line
from verifyforge.tiers import Tier

logger = logging.getLogger(__name__)


class Phase(Enum):
    CLASSIFIED = "classified"
    TIER_SELECTED = "tier_selected"
    IMPLEMENTED = "implemented"
    VERIFIED = "verified"
    ESCALATED = "escalated"
    FIXED = "fixed"
    EVALUATED = "evaluated"
    HALTED = "halted"
    RESUMED = "resumed"
    EXITED = "exited"


@dataclass(frozen=True)
class PhaseStatus:
    session_id: str
    phase: Phase
    tier: Tier
    loop_index: int
    max_loops: int
    load_percent: int
    message: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "phase": self.phase.value,
            "tier": self.tier.name,
            "loop_index": self.loop_index,
            "max_loops": self.max_loops,
            "load_percent": self.load_percent,
            "message": self.message,
            "timestamp": self.timestamp,
        }


def load_indicator(completed_passes: int, max_loops: int) -> int:
    """Share of the loop budget consumed, clamped to 0-100."""
    if max_loops <= 0:
        return 100
    return max(0, min(100, round(100 * completed_passes / max_loops)))


StatusListener = Callable[[PhaseStatus], None]


class StatusReporter:
    """Collects and publishes phase status lines for one session."""

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        echo: bool = False,
    ):
        self._session_maker = session_maker
        self.echo = echo
        self.history: list[PhaseStatus] = []
        self._listeners: list[StatusListener] = []

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    async def report(
        self,
        session_id: str,
        phase: Phase,
        tier: Tier,
        loop_index: int,
        max_loops: int,
        completed_passes: int,
        message: str = "",
    ) -> PhaseStatus:
        status = PhaseStatus(
            session_id=session_id,
            phase=phase,
            tier=tier,
            loop_index=loop_index,
            max_loops=max_loops,
            load_percent=load_indicator(completed_passes, max_loops),
            message=message,
        )
        self.history.append(status)

        if self.echo:
            print_status_line(phase.value, tier.name, loop_index, max_loops, status.load_percent)

        for listener in self._listeners:
            try:
                listener(status)
            except Exception as e:
                # Telemetry must never break the loop
                logger.warning("Status listener failed: %s", e)

        if self._session_maker is not None:
            await self._persist(status)
        return status

    async def _persist(self, status: PhaseStatus) -> None:
        try:
            async with self._session_maker() as session:
                session.add(SessionLogModel(
                    session_id=status.session_id,
                    phase=status.phase.value,
                    tier=status.tier.name,
                    loop_index=status.loop_index,
                    max_loops=status.max_loops,
                    load_percent=status.load_percent,
                    message=status.message,
                ))
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Session log write failed (%s): %s", status.phase.value, e)

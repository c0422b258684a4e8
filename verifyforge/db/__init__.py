"""
Database Package
================

Exports key database components.
"""

from verifyforge.db.models import (
    Base,
    CacheEntryModel,
    MetricAggregateModel,
    AnomalyAlertModel,
    SessionLogModel,
    EscalationLogModel,
)
from verifyforge.db.connection import init_db, get_session_maker, close_db, is_initialized

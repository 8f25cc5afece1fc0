"""
Database models package
"""

from .base import BaseModel, as_utc, db, utc_now
from .customer import Customer, LifecycleStage
from .importer import (
    TERMINAL_ROW_STATUSES,
    ImportRun,
    ImportRunStatus,
    StagingRow,
    StagingRowStatus,
)
from .sync import (
    ACTIVE_SYNC_STATUSES,
    TERMINAL_SYNC_STATUSES,
    SyncRun,
    SyncRunStatus,
    SystemSetting,
    Transaction,
    TransactionStatus,
)

__all__ = [
    "db",
    "BaseModel",
    "as_utc",
    "utc_now",
    "Customer",
    "LifecycleStage",
    "ImportRun",
    "ImportRunStatus",
    "StagingRow",
    "StagingRowStatus",
    "TERMINAL_ROW_STATUSES",
    "SyncRun",
    "SyncRunStatus",
    "ACTIVE_SYNC_STATUSES",
    "TERMINAL_SYNC_STATUSES",
    "SystemSetting",
    "Transaction",
    "TransactionStatus",
]

"""Change detection, reconciliation and batch migration."""

from celine.idsync.sync.dispatcher import ChangeDispatcher
from celine.idsync.sync.handler import ReconciliationHandler
from celine.idsync.sync.migration import MigrationDriver, MigrationReport, run_migration

__all__ = [
    "ChangeDispatcher",
    "MigrationDriver",
    "MigrationReport",
    "ReconciliationHandler",
    "run_migration",
]

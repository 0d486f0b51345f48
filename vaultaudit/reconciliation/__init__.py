"""
Discrepancy Reconciliation Module

Tracks privileged-account coverage per platform:
- Vault vs platform set comparison (not-vaulted / orphaned)
- Persistent discrepancy history with detect/update/resolve/reappear rules
- One atomic transaction per platform run
"""

from vaultaudit.database.discrepancy_models import DiscrepancyType
from vaultaudit.reconciliation.account_sets import AccountRecord, AccountSet, AccountSide
from vaultaudit.reconciliation.errors import (
    ReconciliationError,
    FetchError,
    ConflictError,
    NotFoundError,
    InvariantViolation,
    PersistenceError,
    StaleRunTimeError,
)
from vaultaudit.reconciliation.matching_rules.set_comparator import ComparisonResult, compare
from vaultaudit.reconciliation.services.history_store import (
    DiscrepancyHistoryStore,
    DiscrepancyRecord,
    HistoryStatus,
)
from vaultaudit.reconciliation.services.reconciliation_service import (
    ReconciliationEngine,
    ReconciliationSummary,
    PlatformRunOutcome,
)
from vaultaudit.reconciliation.sources import AccountSource, StaticAccountSource, HttpAccountSource

__all__ = [
    # Account sets
    'AccountRecord',
    'AccountSet',
    'AccountSide',
    'DiscrepancyType',
    # Errors
    'ReconciliationError',
    'FetchError',
    'ConflictError',
    'NotFoundError',
    'InvariantViolation',
    'PersistenceError',
    'StaleRunTimeError',
    # Comparison
    'ComparisonResult',
    'compare',
    # History and engine
    'DiscrepancyHistoryStore',
    'DiscrepancyRecord',
    'HistoryStatus',
    'ReconciliationEngine',
    'ReconciliationSummary',
    'PlatformRunOutcome',
    # Sources
    'AccountSource',
    'StaticAccountSource',
    'HttpAccountSource',
]

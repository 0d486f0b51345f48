from .history_store import DiscrepancyHistoryStore, DiscrepancyRecord, HistoryStatus
from .reconciliation_service import (
    ReconciliationEngine,
    ReconciliationSummary,
    PlatformRunOutcome,
    DiscrepancyAuditEvent,
)

__all__ = [
    'DiscrepancyHistoryStore', 'DiscrepancyRecord', 'HistoryStatus',
    'ReconciliationEngine', 'ReconciliationSummary', 'PlatformRunOutcome',
    'DiscrepancyAuditEvent',
]

"""
Reconciliation Engine

Core business logic for vault coverage auditing, per platform:
- Fetch the vault and platform inventories from the account source
- Compare them (not-vaulted / orphaned account ids)
- Reconcile the result against open discrepancy history:
  observed + open   -> advance last_seen   (updated)
  observed + none   -> open a new record    (created)
  open + unobserved -> resolve the record   (resolved)
- Commit everything for the platform in one transaction

Runs for one platform are serialized (a second run waits). Runs for
different platforms share nothing and may execute concurrently.
"""

import asyncio
import uuid
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from vaultaudit.database.discrepancy_models import DiscrepancyType
from vaultaudit.logging_config import set_run_context, clear_run_context
from vaultaudit.reconciliation.account_sets import AccountSet, AccountSide
from vaultaudit.reconciliation.errors import (
    ConflictError,
    FetchError,
    InvariantViolation,
    PersistenceError,
    ReconciliationError,
)
from vaultaudit.reconciliation.matching_rules.set_comparator import compare
from vaultaudit.reconciliation.services.history_store import (
    DiscrepancyHistoryStore,
    DiscrepancyRecord,
)
from vaultaudit.reconciliation.sources.base import AccountSource
from vaultaudit.sentry_integration import capture_exception

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationSummary:
    """Counts for one committed platform run."""
    platform: str
    run_at: datetime
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created: int = 0
    updated: int = 0
    resolved: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "platform": self.platform,
            "run_at": self.run_at.isoformat(),
            "created": self.created,
            "updated": self.updated,
            "resolved": self.resolved,
        }


@dataclass
class PlatformRunOutcome:
    """Result of one platform within a batch: a summary or an error."""
    platform: str
    summary: Optional[ReconciliationSummary] = None
    error: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DiscrepancyAuditEvent:
    """Audit event types for reconciliation runs."""
    RUN_STARTED = "discrepancy.run_started"
    RUN_COMPLETED = "discrepancy.run_completed"
    RUN_FAILED = "discrepancy.run_failed"
    DISCREPANCY_CREATED = "discrepancy.created"
    DISCREPANCY_RESOLVED = "discrepancy.resolved"


def log_reconciliation_event(
    event_type: str,
    platform: str,
    details: Dict[str, Any],
    level: int = logging.INFO
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "platform": platform,
        "details": details,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.log(level, f"Reconciliation event: {event_type}", extra=log_entry)


def normalize_run_time(at: Optional[datetime]) -> datetime:
    """Default to now; reject naive timestamps; express in UTC."""
    if at is None:
        return datetime.now(timezone.utc)
    if at.tzinfo is None or at.tzinfo.utcoffset(at) is None:
        raise ValueError("Run timestamp must be timezone-aware")
    return at.astimezone(timezone.utc)


class ReconciliationEngine:
    """
    Reconciles observed vault/platform inventories against discrepancy history.

    The engine holds no database handle of its own: each run opens a
    session from ``session_factory`` and commits or rolls back as a unit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        account_source: AccountSource,
        run_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.account_source = account_source
        self.run_timeout = run_timeout
        self._platform_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _platform_lock(self, platform: str):
        """
        Hold the in-process lock for ``platform``.

        The lock is dropped once no run holds or waits on it.
        """
        lock = self._platform_locks.setdefault(platform, asyncio.Lock())
        self._lock_users[platform] = self._lock_users.get(platform, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[platform] -= 1
            if not self._lock_users[platform]:
                del self._lock_users[platform]
                del self._platform_locks[platform]

    # ==================== PUBLIC API ====================

    async def run(self, platform: str, at: Optional[datetime] = None) -> ReconciliationSummary:
        """
        Reconcile one platform at time ``at``.

        Raises:
            FetchError: an inventory could not be read (nothing written)
            ConflictError / NotFoundError: concurrent write detected (retryable)
            StaleRunTimeError: ``at`` is not later than recorded history (rerun later)
            InvariantViolation: duplicate open records found for a key
            PersistenceError: any other database failure
            asyncio.TimeoutError: run_timeout exceeded before commit
        """
        if not isinstance(platform, str) or not platform.strip():
            raise ValueError("platform must be a non-empty string")
        at = normalize_run_time(at)
        run_id = str(uuid.uuid4())

        set_run_context(platform=platform, run_id=run_id)
        log_reconciliation_event(
            DiscrepancyAuditEvent.RUN_STARTED,
            platform,
            {"run_id": run_id, "run_at": at.isoformat()}
        )

        try:
            if self.run_timeout:
                return await asyncio.wait_for(self._run(platform, at, run_id), self.run_timeout)
            return await self._run(platform, at, run_id)

        except ReconciliationError as e:
            if e.platform is None:
                e.platform = platform
            self._report_failure(platform, run_id, e)
            raise
        except IntegrityError as e:
            err = ConflictError(f"Concurrent write detected: {e.orig}", platform=platform)
            self._report_failure(platform, run_id, err)
            raise err from e
        except SQLAlchemyError as e:
            err = PersistenceError(f"Database error: {e}", platform=platform)
            self._report_failure(platform, run_id, err)
            raise err from e
        except asyncio.TimeoutError as e:
            self._report_failure(platform, run_id, e)
            raise
        finally:
            clear_run_context()

    async def run_many(
        self,
        platforms: Iterable[str],
        at: Optional[datetime] = None
    ) -> List[PlatformRunOutcome]:
        """
        Reconcile several platforms concurrently at a shared run time.

        Each platform succeeds or fails on its own; the outcome list keeps
        the order of first appearance.
        """
        at = normalize_run_time(at)
        unique_platforms = list(dict.fromkeys(platforms))

        async def _run_one(platform: str) -> PlatformRunOutcome:
            try:
                summary = await self.run(platform, at)
                return PlatformRunOutcome(platform=platform, summary=summary)
            except asyncio.TimeoutError:
                return PlatformRunOutcome(
                    platform=platform,
                    error="TimeoutError",
                    error_message=f"Run exceeded {self.run_timeout}s"
                )
            except (ReconciliationError, ValueError) as e:
                return PlatformRunOutcome(platform=platform, error=type(e).__name__, error_message=str(e))
            except Exception as e:
                logger.exception(f"Unexpected failure reconciling {platform}")
                return PlatformRunOutcome(platform=platform, error=type(e).__name__, error_message=str(e))

        return list(await asyncio.gather(*(_run_one(p) for p in unique_platforms)))

    # ==================== INTERNALS ====================

    async def _run(self, platform: str, at: datetime, run_id: str) -> ReconciliationSummary:
        vault_set, platform_set = await self._fetch_sets(platform)
        comparison = compare(vault_set, platform_set)

        summary = ReconciliationSummary(platform=platform, run_at=at, run_id=run_id)
        pending_events: List[Tuple[str, Dict[str, Any]]] = []

        async with self._platform_lock(platform):
            async with self.session_factory() as session:
                async with session.begin():
                    store = DiscrepancyHistoryStore(session)
                    await store.lock_platform(platform)

                    await self._reconcile_type(
                        store, platform, DiscrepancyType.NOT_VAULTED,
                        comparison.not_vaulted, platform_set, at, summary, pending_events
                    )
                    await self._reconcile_type(
                        store, platform, DiscrepancyType.ORPHANED,
                        comparison.orphaned, vault_set, at, summary, pending_events
                    )

        # Committed; history is now visible
        for event_type, details in pending_events:
            log_reconciliation_event(event_type, platform, details, level=logging.DEBUG)
        log_reconciliation_event(
            DiscrepancyAuditEvent.RUN_COMPLETED,
            platform,
            summary.to_dict()
        )
        return summary

    async def _fetch_sets(self, platform: str) -> Tuple[AccountSet, AccountSet]:
        sets = []
        for side in (AccountSide.VAULT, AccountSide.PLATFORM):
            try:
                sets.append(await self.account_source.fetch_accounts(platform, side))
            except FetchError as e:
                if e.side is None:
                    e.side = side.value
                raise
            except Exception as e:
                raise FetchError(
                    f"Failed to fetch {side.value} accounts: {e}",
                    platform=platform,
                    side=side.value
                ) from e
        return sets[0], sets[1]

    async def _reconcile_type(
        self,
        store: DiscrepancyHistoryStore,
        platform: str,
        discrepancy_type: DiscrepancyType,
        observed: frozenset,
        source_set: AccountSet,
        at: datetime,
        summary: ReconciliationSummary,
        pending_events: List[Tuple[str, Dict[str, Any]]],
    ) -> None:
        open_by_key: Dict[str, DiscrepancyRecord] = {}
        for record in await store.get_open_records(platform, discrepancy_type):
            if record.account_id in open_by_key:
                raise InvariantViolation(
                    f"Multiple open {discrepancy_type.value} records for account {record.account_id}",
                    platform=platform
                )
            open_by_key[record.account_id] = record

        for account_id in sorted(observed):
            existing = open_by_key.get(account_id)
            if existing is not None:
                await store.touch_last_seen(existing.id, at)
                summary.updated += 1
                continue

            await store.insert_record(DiscrepancyRecord(
                platform=platform,
                discrepancy_type=discrepancy_type,
                account_id=account_id,
                account_name=source_set.name_of(account_id),
                first_detected=at,
                last_seen=at,
            ))
            summary.created += 1
            pending_events.append((
                DiscrepancyAuditEvent.DISCREPANCY_CREATED,
                {"discrepancy_type": discrepancy_type.value, "account_id": account_id}
            ))

        for account_id in sorted(set(open_by_key) - observed):
            await store.mark_resolved(open_by_key[account_id].id, at)
            summary.resolved += 1
            pending_events.append((
                DiscrepancyAuditEvent.DISCREPANCY_RESOLVED,
                {"discrepancy_type": discrepancy_type.value, "account_id": account_id}
            ))

    def _report_failure(self, platform: str, run_id: str, error: BaseException) -> None:
        log_reconciliation_event(
            DiscrepancyAuditEvent.RUN_FAILED,
            platform,
            {"run_id": run_id, "error": type(error).__name__, "message": str(error)},
            level=logging.ERROR
        )
        capture_exception(error, platform=platform, run_id=run_id)

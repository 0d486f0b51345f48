"""
Discrepancy History Store

The only writer of the account_discrepancies table. Operations:
- Load open records for a platform
- Insert a new open record (guarded: at most one open record per key)
- Advance last_seen on an open record
- Mark an open record resolved
- Read history for reporting

The store never commits. All writes of one reconciliation run join the
caller's transaction and become visible together on commit.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Union
import logging

from pydantic import BaseModel, ConfigDict
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vaultaudit.database.discrepancy_models import DiscrepancyDB, DiscrepancyType, generate_uuid
from vaultaudit.reconciliation.errors import ConflictError, NotFoundError, StaleRunTimeError

logger = logging.getLogger(__name__)


# ==================== PYDANTIC MODELS ====================

class DiscrepancyRecord(BaseModel):
    """A discrepancy history entry. ``id`` is assigned by the store."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: Optional[str] = None
    platform: str
    discrepancy_type: DiscrepancyType
    account_id: str
    account_name: str = ""
    first_detected: datetime
    last_seen: datetime
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        return (self.platform, self.discrepancy_type, self.account_id)


class HistoryStatus(str, Enum):
    """Filter for history reads"""
    OPEN = "open"
    RESOLVED = "resolved"
    ALL = "all"


def _db_to_record(db_obj: DiscrepancyDB) -> DiscrepancyRecord:
    return DiscrepancyRecord.model_validate(db_obj)


# ==================== REPOSITORY CLASS ====================

class DiscrepancyHistoryStore:
    """Repository for discrepancy history, bound to one session/transaction"""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ==================== LOCKING ====================

    async def lock_platform(self, platform: str) -> None:
        """
        Serialize runs for ``platform`` across processes.

        PostgreSQL only: a transaction-scoped advisory lock, released on
        commit or rollback. Other backends rely on the in-process lock.
        """
        if self.session.get_bind().dialect.name != "postgresql":
            return
        await self.session.execute(
            text("SELECT pg_advisory_xact_lock(hashtextextended(:platform, 0))"),
            {"platform": platform}
        )

    # ==================== READ ====================

    async def get_open_records(
        self,
        platform: str,
        discrepancy_type: Optional[Union[DiscrepancyType, str]] = None
    ) -> List[DiscrepancyRecord]:
        """Open records for a platform, optionally for one discrepancy type"""
        query = select(DiscrepancyDB).where(
            DiscrepancyDB.platform == platform,
            DiscrepancyDB.is_resolved.is_(False)
        )
        if discrepancy_type is not None:
            query = query.where(DiscrepancyDB.discrepancy_type == DiscrepancyType(discrepancy_type))

        query = query.order_by(DiscrepancyDB.account_id, DiscrepancyDB.first_detected)
        result = await self.session.execute(query)
        return [_db_to_record(row) for row in result.scalars().all()]

    async def get_history(
        self,
        platform: str,
        discrepancy_type: Optional[Union[DiscrepancyType, str]] = None,
        account_id: Optional[str] = None,
        status: Union[HistoryStatus, str] = HistoryStatus.ALL,
        limit: Optional[int] = None,
    ) -> List[DiscrepancyRecord]:
        """History rows for a platform ordered by account and detection time"""
        status = HistoryStatus(status)
        query = select(DiscrepancyDB).where(DiscrepancyDB.platform == platform)

        if discrepancy_type is not None:
            query = query.where(DiscrepancyDB.discrepancy_type == DiscrepancyType(discrepancy_type))
        if account_id is not None:
            query = query.where(DiscrepancyDB.account_id == account_id)
        if status == HistoryStatus.OPEN:
            query = query.where(DiscrepancyDB.is_resolved.is_(False))
        elif status == HistoryStatus.RESOLVED:
            query = query.where(DiscrepancyDB.is_resolved.is_(True))

        query = query.order_by(
            DiscrepancyDB.discrepancy_type,
            DiscrepancyDB.account_id,
            DiscrepancyDB.first_detected
        )
        if limit is not None:
            query = query.limit(limit)

        result = await self.session.execute(query)
        return [_db_to_record(row) for row in result.scalars().all()]

    async def _get_open_db(self, record_id: str) -> DiscrepancyDB:
        db_obj = await self.session.get(DiscrepancyDB, record_id)
        if db_obj is None:
            raise NotFoundError(f"Discrepancy record {record_id} not found")
        if db_obj.is_resolved:
            raise NotFoundError(
                f"Discrepancy record {record_id} is already resolved",
                platform=db_obj.platform
            )
        return db_obj

    # ==================== WRITE ====================

    async def insert_record(self, record: DiscrepancyRecord) -> str:
        """
        Insert a new open record and return its id.

        Raises ConflictError if an open record already exists for
        (platform, discrepancy_type, account_id), and StaleRunTimeError if
        the key was resolved at or after ``record.first_detected``.
        """
        if record.is_resolved or record.resolved_at is not None:
            raise ValueError("New discrepancy records must be open")
        if record.first_detected > record.last_seen:
            raise ValueError("first_detected must not be after last_seen")

        key_filter = (
            DiscrepancyDB.platform == record.platform,
            DiscrepancyDB.discrepancy_type == record.discrepancy_type,
            DiscrepancyDB.account_id == record.account_id,
        )

        existing = await self.session.execute(
            select(DiscrepancyDB.id).where(*key_filter, DiscrepancyDB.is_resolved.is_(False))
        )
        if existing.first() is not None:
            raise ConflictError(
                f"Open {record.discrepancy_type.value} record already exists for account {record.account_id}",
                platform=record.platform
            )

        last_resolved_at = await self.session.scalar(
            select(func.max(DiscrepancyDB.resolved_at)).where(*key_filter, DiscrepancyDB.is_resolved.is_(True))
        )
        if last_resolved_at is not None and record.first_detected <= last_resolved_at:
            raise StaleRunTimeError(
                f"Run time {record.first_detected.isoformat()} is not later than the last resolution "
                f"({last_resolved_at.isoformat()}) of {record.discrepancy_type.value} account "
                f"{record.account_id}; rerun with a later time",
                platform=record.platform
            )

        db_obj = DiscrepancyDB(
            id=generate_uuid(),
            platform=record.platform,
            discrepancy_type=record.discrepancy_type,
            account_id=record.account_id,
            account_name=record.account_name,
            first_detected=record.first_detected,
            last_seen=record.last_seen,
            is_resolved=False,
            resolved_at=None,
        )
        self.session.add(db_obj)

        try:
            await self.session.flush()
        except IntegrityError as e:
            # Partial unique index caught a concurrent insert
            raise ConflictError(
                f"Concurrent insert detected for {record.discrepancy_type.value} account {record.account_id}",
                platform=record.platform
            ) from e

        return db_obj.id

    async def touch_last_seen(self, record_id: str, at: datetime) -> None:
        """Advance last_seen on an open record"""
        db_obj = await self._get_open_db(record_id)
        if at < db_obj.last_seen:
            raise StaleRunTimeError(
                f"Run time {at.isoformat()} precedes last_seen of record {record_id}",
                platform=db_obj.platform
            )
        db_obj.last_seen = at
        await self.session.flush()

    async def mark_resolved(self, record_id: str, at: datetime) -> None:
        """Close an open record. last_seen is left untouched."""
        db_obj = await self._get_open_db(record_id)
        if at < db_obj.last_seen:
            raise StaleRunTimeError(
                f"Run time {at.isoformat()} precedes last_seen of record {record_id}",
                platform=db_obj.platform
            )
        db_obj.is_resolved = True
        db_obj.resolved_at = at
        await self.session.flush()

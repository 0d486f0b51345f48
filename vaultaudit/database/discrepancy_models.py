"""
Vault Audit - Discrepancy History Database Models

One fixed table holds the discrepancy history for every platform. Platform
and discrepancy type are ordinary indexed columns.

Tables:
- account_discrepancies: open and resolved not-vaulted / orphaned records
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Boolean, DateTime, Index, UniqueConstraint,
    Enum as SQLEnum, text
)
from sqlalchemy.types import TypeDecorator

from vaultaudit.database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as UTC.

    SQLite drops tzinfo on the way back; values are re-tagged as UTC so
    comparisons against aware run timestamps stay valid on every backend.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; pass a timezone-aware value")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ==================== ENUMS ====================

class DiscrepancyType(str, PyEnum):
    """Class of coverage gap between vault and platform"""
    NOT_VAULTED = "NOT_VAULTED"  # On the platform, missing from the vault
    ORPHANED = "ORPHANED"        # In the vault, missing from the platform


# ==================== DATABASE MODELS ====================

class DiscrepancyDB(Base):
    """
    Discrepancy history.

    A row is open while ``is_resolved`` is false. Rows are never deleted or
    reopened; a key that reappears after resolution gets a new row.
    """
    __tablename__ = "account_discrepancies"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    platform = Column(String(255), nullable=False)
    discrepancy_type = Column(
        SQLEnum(DiscrepancyType, name="discrepancy_type", native_enum=False, length=20),
        nullable=False
    )
    account_id = Column(String(255), nullable=False)
    account_name = Column(String(255), nullable=False, default="")

    first_detected = Column(UTCDateTime(), nullable=False)
    last_seen = Column(UTCDateTime(), nullable=False)
    is_resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(UTCDateTime(), nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime(), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint(
            "platform", "discrepancy_type", "account_id", "first_detected",
            name="uq_discrepancy_interval"
        ),
        Index("idx_discrepancy_platform_open", "platform", "discrepancy_type", "is_resolved"),
        # At most one open row per key
        Index(
            "uq_discrepancy_open_key",
            "platform", "discrepancy_type", "account_id",
            unique=True,
            postgresql_where=text("is_resolved = false"),
            sqlite_where=text("is_resolved = 0"),
        ),
    )

    def __repr__(self) -> str:
        state = "resolved" if self.is_resolved else "open"
        return f"<DiscrepancyDB {self.platform}/{self.discrepancy_type}/{self.account_id} {state}>"

"""
Database Migration: Create Discrepancy History Tables

Creates the single fixed-schema table for not-vaulted / orphaned
discrepancy history, plus the partial unique index that allows at most one
open row per (platform, discrepancy_type, account_id).

Run with: python -m vaultaudit.migrations.create_discrepancy_tables
"""

import asyncio

from sqlalchemy import text

from vaultaudit.config import get_settings
from vaultaudit.database.connection import create_engine


SQL_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS public.account_discrepancies (
        id VARCHAR(36) PRIMARY KEY,
        platform VARCHAR(255) NOT NULL,
        discrepancy_type VARCHAR(20) NOT NULL,
        account_id VARCHAR(255) NOT NULL,
        account_name VARCHAR(255) NOT NULL DEFAULT '',

        -- Open interval
        first_detected TIMESTAMPTZ NOT NULL,
        last_seen TIMESTAMPTZ NOT NULL,
        is_resolved BOOLEAN NOT NULL DEFAULT false,
        resolved_at TIMESTAMPTZ,

        -- Metadata
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

        -- Constraints
        CONSTRAINT account_discrepancies_type_check
            CHECK (discrepancy_type IN ('NOT_VAULTED', 'ORPHANED')),
        CONSTRAINT account_discrepancies_seen_check
            CHECK (first_detected <= last_seen),
        CONSTRAINT account_discrepancies_resolved_check
            CHECK (
                (is_resolved = false AND resolved_at IS NULL)
                OR (is_resolved = true AND resolved_at IS NOT NULL AND resolved_at >= last_seen)
            ),
        CONSTRAINT uq_discrepancy_interval
            UNIQUE (platform, discrepancy_type, account_id, first_detected)
    )
    """,

    "CREATE INDEX IF NOT EXISTS idx_discrepancy_platform_open ON public.account_discrepancies(platform, discrepancy_type, is_resolved)",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_discrepancy_open_key
        ON public.account_discrepancies(platform, discrepancy_type, account_id)
        WHERE is_resolved = false
    """,
]


async def create_tables():
    """Create the discrepancy history tables."""
    print("Creating discrepancy history tables...")

    settings = get_settings()
    engine = create_engine(settings.get_database_url())

    try:
        async with engine.begin() as conn:
            for i, sql in enumerate(SQL_STATEMENTS):
                await conn.execute(text(sql))
                print(f"  Statement {i+1}/{len(SQL_STATEMENTS)} executed")
    finally:
        await engine.dispose()

    print("\nDiscrepancy history tables created successfully")


if __name__ == "__main__":
    asyncio.run(create_tables())

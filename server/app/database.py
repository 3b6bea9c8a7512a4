from contextlib import asynccontextmanager
from typing import Optional

import asyncpg

_pool: Optional[asyncpg.Pool] = None


async def init_pool(database_url: str, min_size: int = 2, max_size: int = 10):
    """Initialize the connection pool."""
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(database_url, min_size=min_size, max_size=max_size)
    return _pool


async def get_pool() -> asyncpg.Pool:
    """Get the existing connection pool."""
    global _pool
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool first.")
    return _pool


async def close_pool():
    """Close the connection pool."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None


@asynccontextmanager
async def get_connection():
    """Get a database connection from the pool."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        yield conn


async def init_db():
    """Create tables if they don't exist."""
    async with get_connection() as conn:
        # Organizations are owned by the host application; only id/name are read here.
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS organizations (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                name VARCHAR(255) NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)

        # Incidents: intake columns plus engine-owned classification columns
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS osha_incidents (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                org_id UUID NOT NULL REFERENCES organizations(id),
                kind VARCHAR(20) NOT NULL DEFAULT 'original'
                    CHECK (kind IN ('original', 'correction')),
                corrects_incident_id UUID REFERENCES osha_incidents(id),
                occurred_at TIMESTAMPTZ NOT NULL,
                title VARCHAR(255) NOT NULL,
                description TEXT,
                location VARCHAR(255),
                severity SMALLINT NOT NULL DEFAULT 3 CHECK (severity BETWEEN 1 AND 5),
                injury_category VARCHAR(100),
                body_part_affected VARCHAR(100),
                nature_of_injury VARCHAR(255),
                fatal BOOLEAN NOT NULL DEFAULT false,
                treatment VARCHAR(20) NOT NULL DEFAULT 'none'
                    CHECK (treatment IN ('none', 'first_aid', 'medical', 'emergency_room', 'hospitalized')),
                loss_of_consciousness BOOLEAN NOT NULL DEFAULT false,
                diagnosed_by_professional BOOLEAN NOT NULL DEFAULT false,
                standard_threshold_shift BOOLEAN NOT NULL DEFAULT false,
                days_away_from_work INTEGER NOT NULL DEFAULT 0 CHECK (days_away_from_work >= 0),
                days_on_restriction INTEGER NOT NULL DEFAULT 0 CHECK (days_on_restriction >= 0),
                days_on_transfer INTEGER NOT NULL DEFAULT 0 CHECK (days_on_transfer >= 0),
                privacy_case BOOLEAN NOT NULL DEFAULT false,
                log_year_override INTEGER,
                classification_override JSONB,
                recordable BOOLEAN NOT NULL DEFAULT false,
                classification VARCHAR(30),
                event_type VARCHAR(20),
                illness_type VARCHAR(30),
                log_year INTEGER,
                classification_source VARCHAR(20),
                classified_at TIMESTAMPTZ,
                case_report_completed_at TIMESTAMPTZ,
                locked_at TIMESTAMPTZ,
                archived_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                CHECK ((classification IS NULL) OR (recordable = (classification <> 'NOT_RECORDABLE')))
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_osha_incidents_org_year
            ON osha_incidents(org_id, log_year) WHERE recordable = true
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_osha_incidents_corrects
            ON osha_incidents(corrects_incident_id) WHERE corrects_incident_id IS NOT NULL
        """)

        # Annual logs: one row per (organization, year)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS osha_logs (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                org_id UUID NOT NULL REFERENCES organizations(id),
                year INTEGER NOT NULL,
                total_hours_worked NUMERIC NOT NULL DEFAULT 0 CHECK (total_hours_worked >= 0),
                avg_employee_count INTEGER NOT NULL DEFAULT 0 CHECK (avg_employee_count >= 0),
                total_deaths INTEGER NOT NULL DEFAULT 0,
                total_days_away INTEGER NOT NULL DEFAULT 0,
                total_restricted INTEGER NOT NULL DEFAULT 0,
                total_transfer INTEGER NOT NULL DEFAULT 0,
                total_other_recordable INTEGER NOT NULL DEFAULT 0,
                total_injuries INTEGER NOT NULL DEFAULT 0,
                total_skin_disorders INTEGER NOT NULL DEFAULT 0,
                total_respiratory_conditions INTEGER NOT NULL DEFAULT 0,
                total_poisonings INTEGER NOT NULL DEFAULT 0,
                total_hearing_loss INTEGER NOT NULL DEFAULT 0,
                total_other_illnesses INTEGER NOT NULL DEFAULT 0,
                total_recordable INTEGER NOT NULL DEFAULT 0,
                total_days_away_from_work INTEGER NOT NULL DEFAULT 0,
                total_days_restricted_or_transferred INTEGER NOT NULL DEFAULT 0,
                trir NUMERIC NOT NULL DEFAULT 0,
                dart_rate NUMERIC NOT NULL DEFAULT 0,
                ltir NUMERIC NOT NULL DEFAULT 0,
                severity_rate NUMERIC NOT NULL DEFAULT 0,
                certified_at TIMESTAMPTZ,
                certified_by VARCHAR(255),
                certified_title VARCHAR(255),
                posted_at TIMESTAMPTZ,
                posted_by VARCHAR(255),
                version INTEGER NOT NULL DEFAULT 1,
                revision INTEGER NOT NULL DEFAULT 1,
                archived_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                UNIQUE (org_id, year),
                CHECK (posted_at IS NULL OR certified_at IS NOT NULL)
            )
        """)

        # Frozen snapshot of every certified revision
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS osha_log_revisions (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                log_id UUID NOT NULL REFERENCES osha_logs(id),
                org_id UUID NOT NULL,
                year INTEGER NOT NULL,
                revision INTEGER NOT NULL,
                snapshot JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                UNIQUE (org_id, year, revision)
            )
        """)

        # Append-only certification trail
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS osha_certification_events (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                org_id UUID NOT NULL,
                year INTEGER NOT NULL,
                revision INTEGER NOT NULL,
                action VARCHAR(30) NOT NULL
                    CHECK (action IN ('certified', 'posted', 'correction_opened', 'archived')),
                actor VARCHAR(255),
                actor_title VARCHAR(255),
                details JSONB DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_osha_certification_events_org_year
            ON osha_certification_events(org_id, year)
        """)

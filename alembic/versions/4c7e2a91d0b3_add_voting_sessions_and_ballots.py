"""add_voting_sessions_and_ballots

Revision ID: 4c7e2a91d0b3
Revises:
Create Date: 2026-02-14 10:30:00.000000

"""

from collections.abc import Sequence

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4c7e2a91d0b3"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Add the election catalog, voting sessions and ballots tables."""
    op.execute("""
    CREATE EXTENSION IF NOT EXISTS "uuid-ossp";

    -- ============================================
    -- ELECTIONS TABLE - owned by election administration
    -- ============================================
    CREATE TABLE IF NOT EXISTS elections (
        id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
        title VARCHAR(255) NOT NULL,
        description TEXT,

        start_date TIMESTAMP WITH TIME ZONE NOT NULL,
        end_date TIMESTAMP WITH TIME ZONE NOT NULL,

        status VARCHAR(50) NOT NULL DEFAULT 'draft' CHECK (status IN ('draft', 'scheduled', 'active', 'paused', 'completed', 'cancelled')),
        allow_abstain BOOLEAN NOT NULL DEFAULT TRUE,

        created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
        deleted BOOLEAN NOT NULL DEFAULT FALSE,

        CONSTRAINT valid_election_dates CHECK (end_date > start_date)
    );

    CREATE INDEX IF NOT EXISTS idx_elections_status ON elections(status) WHERE deleted = FALSE;

    -- ============================================
    -- ELECTION POSITIONS TABLE
    -- ============================================
    CREATE TABLE IF NOT EXISTS election_positions (
        id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
        election_id UUID NOT NULL REFERENCES elections(id) ON DELETE CASCADE,
        title VARCHAR(255) NOT NULL,
        description TEXT,
        max_selections INTEGER NOT NULL DEFAULT 1 CHECK (max_selections >= 1),
        required BOOLEAN NOT NULL DEFAULT TRUE,
        display_order INTEGER DEFAULT 0,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_election_positions_election ON election_positions(election_id, display_order);

    -- ============================================
    -- CANDIDATES TABLE
    -- ============================================
    CREATE TABLE IF NOT EXISTS candidates (
        id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
        position_id UUID NOT NULL REFERENCES election_positions(id) ON DELETE CASCADE,
        name VARCHAR(255) NOT NULL,
        status VARCHAR(50) NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'approved', 'rejected', 'disqualified', 'withdrawn')),
        display_order INTEGER DEFAULT 0,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_candidates_position ON candidates(position_id, display_order);

    -- ============================================
    -- VOTING SESSIONS TABLE
    -- ============================================
    CREATE TABLE IF NOT EXISTS voting_sessions (
        id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
        election_id UUID NOT NULL REFERENCES elections(id) ON DELETE CASCADE,
        voter_id VARCHAR(255) NOT NULL,

        status VARCHAR(20) NOT NULL DEFAULT 'created' CHECK (status IN ('created', 'active', 'submitted', 'expired', 'cancelled')),

        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        expires_at TIMESTAMP WITH TIME ZONE NOT NULL,
        submitted_at TIMESTAMP WITH TIME ZONE,
        last_activity_at TIMESTAMP WITH TIME ZONE,

        -- Client metadata
        ip_address VARCHAR(45),
        user_agent TEXT,
        device_fingerprint VARCHAR(255),

        -- In-progress ballot; cleared when the session ends
        draft JSONB DEFAULT '{}'
    );

    -- At most one live session per voter per election
    CREATE UNIQUE INDEX IF NOT EXISTS uq_voting_sessions_live
        ON voting_sessions(election_id, voter_id)
        WHERE status IN ('created', 'active');

    CREATE INDEX IF NOT EXISTS idx_voting_sessions_voter ON voting_sessions(election_id, voter_id);

    -- ============================================
    -- BALLOTS TABLE - immutable once written
    -- ============================================
    CREATE TABLE IF NOT EXISTS ballots (
        id UUID PRIMARY KEY,
        session_id UUID NOT NULL REFERENCES voting_sessions(id),
        election_id UUID NOT NULL REFERENCES elections(id),
        voter_hash VARCHAR(64) NOT NULL,
        position_votes JSONB NOT NULL,
        submitted_at TIMESTAMP WITH TIME ZONE NOT NULL,
        integrity_hash VARCHAR(64) NOT NULL,
        verification_code VARCHAR(14) NOT NULL,

        CONSTRAINT uq_ballots_voter UNIQUE (election_id, voter_hash),
        CONSTRAINT uq_ballots_session UNIQUE (session_id),
        CONSTRAINT uq_ballots_verification_code UNIQUE (verification_code)
    );

    CREATE INDEX IF NOT EXISTS idx_ballots_election ON ballots(election_id, submitted_at);

    COMMENT ON TABLE ballots IS 'Submitted ballots; no column links a ballot to a raw voter id';
    COMMENT ON COLUMN ballots.voter_hash IS 'SHA-256 of election id and voter id';
    """)


def downgrade() -> None:
    """Remove voting tables."""
    op.execute("""
    DROP TABLE IF EXISTS ballots CASCADE;
    DROP TABLE IF EXISTS voting_sessions CASCADE;
    DROP TABLE IF EXISTS candidates CASCADE;
    DROP TABLE IF EXISTS election_positions CASCADE;
    DROP TABLE IF EXISTS elections CASCADE;
    """)

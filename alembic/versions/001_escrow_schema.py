"""Escrow schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Creates: transactions, transaction_transitions, disputes, dispute_messages,
         admin_actions, event_outbox, processed_events
Enums: transactionstatus, transactiontransitiontype, disputestatus,
       resolutionoutcome, adminactiontype, eventstatus
"""

from collections.abc import Sequence

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    # ── 1. Create enum types ──────────────────────────────────────────────
    op.execute("""
        CREATE TYPE transactionstatus AS ENUM (
            'PENDING', 'IN_ESCROW', 'SHIPPED', 'DELIVERED',
            'COMPLETED', 'DISPUTED', 'CANCELLED'
        );
    """)
    op.execute("""
        CREATE TYPE transactiontransitiontype AS ENUM (
            'INITIATE', 'CAPTURE_SUCCEEDED', 'CAPTURE_FAILED', 'SHIP',
            'DELIVER', 'ACCEPT', 'AUTO_RELEASE', 'RAISE_DISPUTE',
            'FORCE_PAYOUT', 'FORCE_REFUND', 'REVERSE'
        );
    """)
    op.execute("""
        CREATE TYPE disputestatus AS ENUM (
            'OPEN', 'ESCALATED', 'RESOLVED'
        );
    """)
    op.execute("""
        CREATE TYPE resolutionoutcome AS ENUM (
            'RELEASE', 'FULL_REFUND', 'PARTIAL_REFUND'
        );
    """)
    op.execute("""
        CREATE TYPE adminactiontype AS ENUM (
            'FORCED_PAYOUT', 'FORCED_FULL_REFUND', 'PARTIAL_REFUND', 'REVERSAL'
        );
    """)
    op.execute("""
        CREATE TYPE eventstatus AS ENUM (
            'PENDING', 'PROCESSING', 'COMPLETED', 'FAILED'
        );
    """)

    # ── 2. Create transactions table ──────────────────────────────────────
    op.execute("""
        CREATE TABLE transactions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),

            -- Parties
            buyer_id UUID NOT NULL,
            seller_id UUID NOT NULL,

            -- Commerce snapshot
            listing_id VARCHAR(255) NOT NULL,
            item_description VARCHAR(500) NOT NULL,
            amount NUMERIC(15, 2) NOT NULL,
            currency VARCHAR(3) NOT NULL DEFAULT 'NGN',

            status transactionstatus NOT NULL DEFAULT 'PENDING',
            version INTEGER NOT NULL,

            -- Lifecycle
            captured_at TIMESTAMPTZ,
            shipped_at TIMESTAMPTZ,
            delivered_at TIMESTAMPTZ,
            inspection_period_ends TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            cancelled_at TIMESTAMPTZ,

            -- Shipment
            tracking_number VARCHAR(100),
            shipping_proof_key VARCHAR(500),
            shipping_proof_filename VARCHAR(255),
            shipping_proof_content_type VARCHAR(100),

            -- Outcome
            refunded_amount NUMERIC(15, 2),
            failure_reason TEXT,
            stuck_alerted_at TIMESTAMPTZ,

            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),

            CONSTRAINT ck_transactions_amount_positive CHECK (amount > 0),
            CONSTRAINT ck_transactions_refund_bounds CHECK (
                refunded_amount IS NULL OR (refunded_amount > 0 AND refunded_amount <= amount)
            ),
            CONSTRAINT ck_transactions_single_outcome CHECK (
                completed_at IS NULL OR cancelled_at IS NULL
            )
        );
    """)
    op.execute("CREATE INDEX ix_transactions_buyer_id ON transactions (buyer_id);")
    op.execute("CREATE INDEX ix_transactions_seller_id ON transactions (seller_id);")
    op.execute("CREATE INDEX ix_transactions_status ON transactions (status);")
    op.execute("""
        CREATE INDEX ix_transactions_inspection_due ON transactions (inspection_period_ends)
        WHERE status = 'DELIVERED';
    """)

    # ── 3. Create transaction_transitions table ───────────────────────────
    op.execute("""
        CREATE TABLE transaction_transitions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            transaction_id UUID NOT NULL REFERENCES transactions(id) ON DELETE CASCADE,
            from_status transactionstatus,
            to_status transactionstatus NOT NULL,
            transition_type transactiontransitiontype NOT NULL,
            triggered_by UUID,
            trigger_source VARCHAR(20) NOT NULL,
            reason TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    op.execute(
        "CREATE INDEX ix_transaction_transitions_transaction_id "
        "ON transaction_transitions (transaction_id);"
    )

    # ── 4. Create disputes and dispute_messages tables ────────────────────
    op.execute("""
        CREATE TABLE disputes (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            transaction_id UUID NOT NULL REFERENCES transactions(id) ON DELETE RESTRICT,
            buyer_id UUID NOT NULL,
            seller_id UUID NOT NULL,
            reason TEXT NOT NULL,
            status disputestatus NOT NULL DEFAULT 'OPEN',
            opened_at TIMESTAMPTZ NOT NULL,
            escalated_at TIMESTAMPTZ,
            escalated_by UUID,
            resolved_at TIMESTAMPTZ,
            resolved_by_admin_id UUID,
            resolution_outcome resolutionoutcome,
            resolution_amount NUMERIC(15, 2),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_disputes_transaction_id ON disputes (transaction_id);")
    op.execute("CREATE INDEX ix_disputes_status ON disputes (status);")
    op.execute("""
        CREATE UNIQUE INDEX uq_disputes_open_per_transaction ON disputes (transaction_id)
        WHERE status IN ('OPEN', 'ESCALATED');
    """)

    op.execute("""
        CREATE TABLE dispute_messages (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            dispute_id UUID NOT NULL REFERENCES disputes(id) ON DELETE CASCADE,
            sequence_number INTEGER NOT NULL,
            sender_id UUID NOT NULL,
            text TEXT,
            attachment_key VARCHAR(500),
            attachment_filename VARCHAR(255),
            attachment_content_type VARCHAR(100),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_dispute_messages_sequence UNIQUE (dispute_id, sequence_number)
        );
    """)
    op.execute("CREATE INDEX ix_dispute_messages_dispute_id ON dispute_messages (dispute_id);")

    # ── 5. Create admin_actions table ─────────────────────────────────────
    op.execute("""
        CREATE TABLE admin_actions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            transaction_id UUID NOT NULL REFERENCES transactions(id) ON DELETE RESTRICT,
            sequence_number INTEGER NOT NULL,
            admin_id UUID NOT NULL,
            admin_name VARCHAR(255) NOT NULL,
            action_type adminactiontype NOT NULL,
            original_status transactionstatus NOT NULL,
            resulting_status transactionstatus NOT NULL,
            amount NUMERIC(15, 2),
            details TEXT,
            reverses_action_id UUID REFERENCES admin_actions(id) ON DELETE RESTRICT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_admin_actions_sequence UNIQUE (transaction_id, sequence_number),
            CONSTRAINT uq_admin_actions_reverses UNIQUE (reverses_action_id)
        );
    """)
    op.execute("CREATE INDEX ix_admin_actions_transaction_id ON admin_actions (transaction_id);")

    # The ledger is append-only
    op.execute("""
        CREATE OR REPLACE FUNCTION admin_actions_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'admin_actions is append-only';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER admin_actions_no_update
        BEFORE UPDATE OR DELETE ON admin_actions
        FOR EACH ROW EXECUTE FUNCTION admin_actions_immutable();
    """)

    # ── 6. Create event_outbox table ──────────────────────────────────────
    op.execute("""
        CREATE TABLE event_outbox (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            event_type VARCHAR(255) NOT NULL,
            aggregate_type VARCHAR(255) NOT NULL,
            aggregate_id VARCHAR(255) NOT NULL,
            payload JSONB NOT NULL DEFAULT '{}',
            status eventstatus NOT NULL DEFAULT 'PENDING',
            retry_count INTEGER NOT NULL DEFAULT 0,
            max_retries INTEGER NOT NULL DEFAULT 3,
            last_error TEXT,
            processed_at TIMESTAMPTZ,
            schema_version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_event_outbox_status ON event_outbox (status);")
    op.execute("CREATE INDEX ix_event_outbox_event_type ON event_outbox (event_type);")
    op.execute("CREATE INDEX ix_event_outbox_aggregate ON event_outbox (aggregate_type, aggregate_id);")
    op.execute("CREATE INDEX ix_event_outbox_pending ON event_outbox (created_at) WHERE status = 'PENDING';")

    # ── 7. Create processed_events table ──────────────────────────────────
    op.execute("""
        CREATE TABLE processed_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            event_id UUID NOT NULL,
            event_type VARCHAR(255) NOT NULL,
            handler_name VARCHAR(255) NOT NULL,
            processed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            expires_at TIMESTAMPTZ NOT NULL,
            CONSTRAINT uq_processed_events_event_id UNIQUE (event_id)
        );
    """)
    op.execute("CREATE INDEX ix_processed_events_expires_at ON processed_events (expires_at);")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS processed_events CASCADE;")
    op.execute("DROP TABLE IF EXISTS event_outbox CASCADE;")
    op.execute("DROP TRIGGER IF EXISTS admin_actions_no_update ON admin_actions;")
    op.execute("DROP FUNCTION IF EXISTS admin_actions_immutable();")
    op.execute("DROP TABLE IF EXISTS admin_actions CASCADE;")
    op.execute("DROP TABLE IF EXISTS dispute_messages CASCADE;")
    op.execute("DROP TABLE IF EXISTS disputes CASCADE;")
    op.execute("DROP TABLE IF EXISTS transaction_transitions CASCADE;")
    op.execute("DROP TABLE IF EXISTS transactions CASCADE;")

    op.execute("DROP TYPE IF EXISTS eventstatus;")
    op.execute("DROP TYPE IF EXISTS adminactiontype;")
    op.execute("DROP TYPE IF EXISTS resolutionoutcome;")
    op.execute("DROP TYPE IF EXISTS disputestatus;")
    op.execute("DROP TYPE IF EXISTS transactiontransitiontype;")
    op.execute("DROP TYPE IF EXISTS transactionstatus;")

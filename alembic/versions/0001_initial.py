from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "listings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("slug", sa.String(length=32), nullable=False),
        sa.Column("listing_type", sa.String(length=20), nullable=False, server_default="invite_link"),
        sa.Column("secret_ciphertext", sa.Text(), nullable=False),
        sa.Column("app_url", sa.String(length=2048), nullable=True),
        sa.Column("app_id", sa.String(length=120), nullable=True),
        sa.Column("app_name", sa.String(length=120), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price_usdc", sa.Numeric(18, 6), nullable=False),
        sa.Column("seller_address", sa.String(length=42), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("max_uses", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("purchase_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),

        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),

        sa.CheckConstraint("listing_type IN ('invite_link', 'access_code')", name="ck_listing_type"),
        sa.CheckConstraint("status IN ('active', 'sold', 'cancelled')", name="ck_listing_status"),
        sa.CheckConstraint("price_usdc > 0", name="ck_listing_price_positive"),
        sa.CheckConstraint("max_uses = -1 OR max_uses > 0", name="ck_listing_max_uses"),
        sa.CheckConstraint("purchase_count >= 0", name="ck_listing_purchase_count"),
        sa.CheckConstraint("max_uses = -1 OR purchase_count <= max_uses", name="ck_listing_purchase_within_cap"),
    )
    op.create_index("ix_listings_slug", "listings", ["slug"], unique=True)
    op.create_index("ix_listings_app_id", "listings", ["app_id"])
    op.create_index("ix_listings_seller_address", "listings", ["seller_address"])
    op.create_index("ix_listings_chain_id", "listings", ["chain_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("listing_slug", sa.String(length=32), nullable=False),
        sa.Column("seller_address", sa.String(length=42), nullable=False),
        sa.Column("buyer_address", sa.String(length=42), nullable=False),
        sa.Column("price_usdc", sa.Numeric(18, 6), nullable=False),
        sa.Column("app_id", sa.String(length=120), nullable=True),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("tx_hash", sa.String(length=128), nullable=True),
        sa.Column("source", sa.String(length=30), nullable=False, server_default="purchase"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_transactions_listing_slug", "transactions", ["listing_slug"])
    op.create_index("ix_transactions_seller_address", "transactions", ["seller_address"])
    op.create_index("ix_transactions_buyer_address", "transactions", ["buyer_address"])
    op.create_index("ix_transactions_chain_id", "transactions", ["chain_id"])
    op.create_index(
        "ix_transactions_slug_buyer_chain",
        "transactions",
        ["listing_slug", "buyer_address", "chain_id", "created_at"],
    )

    op.create_table(
        "idempotency_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("signer_address", sa.String(length=42), nullable=False),
        sa.Column("operation", sa.String(length=40), nullable=False),
        sa.Column("key", sa.String(length=80), nullable=False),
        sa.Column("request_hash", sa.String(length=80), nullable=False),
        sa.Column("response", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("key", name="uq_idempotency_key"),
    )

    op.create_table(
        "outbox",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("aggregate_type", sa.String(length=100), nullable=False),
        sa.Column("aggregate_id", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=200), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("lease_id", sa.String(length=64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_outbox_status_next_attempt", "outbox", ["status", "next_attempt_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("actor", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=120), nullable=False),
        sa.Column("target_type", sa.String(length=120), nullable=True),
        sa.Column("target_id", sa.String(length=200), nullable=True),
        sa.Column("detail", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_audit_logs_target", "audit_logs", ["target_type", "target_id"])

    op.create_table(
        "resolved_addresses",
        sa.Column("address", sa.String(length=42), primary_key=True),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("avatar_url", sa.String(length=2048), nullable=True),
        sa.Column("resolved_type", sa.String(length=20), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade():
    op.drop_table("resolved_addresses")
    op.drop_index("ix_audit_logs_target", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_outbox_status_next_attempt", table_name="outbox")
    op.drop_table("outbox")
    op.drop_table("idempotency_keys")
    op.drop_index("ix_transactions_slug_buyer_chain", table_name="transactions")
    op.drop_index("ix_transactions_chain_id", table_name="transactions")
    op.drop_index("ix_transactions_buyer_address", table_name="transactions")
    op.drop_index("ix_transactions_seller_address", table_name="transactions")
    op.drop_index("ix_transactions_listing_slug", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_listings_chain_id", table_name="listings")
    op.drop_index("ix_listings_seller_address", table_name="listings")
    op.drop_index("ix_listings_app_id", table_name="listings")
    op.drop_index("ix_listings_slug", table_name="listings")
    op.drop_table("listings")

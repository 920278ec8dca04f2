"""webhook inbox, product mappings and integration settings"""
from alembic import op
import sqlalchemy as sa

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "webhookevent",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("provider", sa.String(length=16), index=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False, unique=True, index=True),
        sa.Column("event_type", sa.String(length=64)),
        sa.Column("transaction_id", sa.String(length=128), nullable=True, index=True),
        sa.Column("email", sa.String(length=255), nullable=True, index=True),
        sa.Column("payload", sa.JSON()),
        sa.Column("status", sa.String(length=16), server_default="pending"),
        sa.Column("attempts", sa.Integer, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.String(length=16), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("source_ip", sa.String(length=64), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_webhookevent_status_received", "webhookevent", ["status", "received_at"])

    op.create_table(
        "productmapping",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("provider", sa.String(length=16), index=True),
        sa.Column("product_id", sa.String(length=128), nullable=False),
        sa.Column("offer_id", sa.String(length=128), nullable=True),
        sa.Column("product_name", sa.String(length=255), nullable=True),
        sa.Column("plan_type", sa.String(length=32), server_default="premium"),
        sa.Column("duration_days", sa.Integer, server_default="30"),
        sa.Column("is_lifetime", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("provider", "product_id", "offer_id", name="uq_productmapping_provider_product_offer"),
    )
    op.create_index(
        "uq_productmapping_provider_product_no_offer",
        "productmapping",
        ["provider", "product_id"],
        unique=True,
        postgresql_where=sa.text("offer_id IS NULL"),
        sqlite_where=sa.text("offer_id IS NULL"),
    )

    op.create_table(
        "integrationsetting",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("provider", sa.String(length=16), nullable=False),
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("is_secret", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("provider", "key", name="uq_integrationsetting_provider_key"),
    )


def downgrade() -> None:
    op.drop_table("integrationsetting")
    op.drop_index("uq_productmapping_provider_product_no_offer", table_name="productmapping")
    op.drop_table("productmapping")
    op.drop_index("ix_webhookevent_status_received", table_name="webhookevent")
    op.drop_table("webhookevent")

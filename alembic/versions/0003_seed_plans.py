"""seed doppus product mappings"""
from alembic import op
import sqlalchemy as sa

revision = "0003"
down_revision = "0002"
branch_labels = None
depends_on = None

DOPPUS_PLANS = (
    ("PREMIUM_MENSAL", "Premium Mensal", "premium_30", 30, False),
    ("PREMIUM_SEMESTRAL", "Premium Semestral", "premium_180", 180, False),
    ("PREMIUM_ANUAL", "Premium Anual", "premium_365", 365, False),
    ("PREMIUM_VITALICIO", "Premium Vitalicio", "premium_lifetime", 36500, True),
)


def upgrade() -> None:
    for code, name, plan_type, days, lifetime in DOPPUS_PLANS:
        op.execute(
            sa.text(
                "INSERT INTO productmapping (provider, product_id, offer_id, product_name, plan_type, duration_days, is_lifetime) "
                "VALUES ('doppus', :code, NULL, :name, :plan_type, :days, :lifetime) "
                "ON CONFLICT DO NOTHING"
            ).bindparams(code=code, name=name, plan_type=plan_type, days=days, lifetime=lifetime)
        )


def downgrade() -> None:
    op.execute(
        sa.text(
            "DELETE FROM productmapping WHERE provider = 'doppus' AND product_id IN "
            "('PREMIUM_MENSAL','PREMIUM_SEMESTRAL','PREMIUM_ANUAL','PREMIUM_VITALICIO')"
        )
    )

"""contract lifecycle: contracts, signatures, payments, notification outbox

Revision ID: 0001_contract_lifecycle
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_contract_lifecycle"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _ts(name, nullable=True, **kw):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, **kw)


def upgrade():
    op.create_table(
        "contracts",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("reference", sa.String(length=32), nullable=False, unique=True),
        sa.Column("contract_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'DRAFT'")),
        sa.Column("listing_id", sa.String(length=64), nullable=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("rent_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("deposit_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("duration_months", sa.Integer(), nullable=False),
        sa.Column("special_conditions", sa.Text(), nullable=True),
        _ts("signature_complete_at"),
        _ts("start_date"),
        _ts("planned_end_date"),
        _ts("end_date"),
        _ts("cancelled_at"),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        _ts("retraction_reminder_sent_at"),
        _ts("archived_at"),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _ts("locked_at"),
        sa.Column("seal_hash", sa.String(length=128), nullable=True),
        sa.Column(
            "renewed_from_id",
            sa.Uuid(),
            sa.ForeignKey("contracts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("updated_at", nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_contracts_status_signature_complete", "contracts", ["status", "signature_complete_at"])
    op.create_index("ix_contracts_status_planned_end", "contracts", ["status", "planned_end_date"])
    op.create_index("ix_contracts_owner", "contracts", ["owner_id"])
    op.create_index("ix_contracts_tenant", "contracts", ["tenant_id"])

    op.create_table(
        "contract_signatures",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            "contract_id",
            sa.Uuid(),
            sa.ForeignKey("contracts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("party_id", sa.String(length=64), nullable=False),
        sa.Column("party_role", sa.String(length=16), nullable=False),
        sa.Column("signature_hash", sa.String(length=128), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        _ts("signed_at", nullable=False),
        sa.UniqueConstraint("contract_id", "party_id", name="uq_contract_signatures_party"),
    )
    op.create_index("ix_contract_signatures_contract", "contract_signatures", ["contract_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("reference", sa.String(length=40), nullable=False, unique=True),
        sa.Column(
            "contract_id",
            sa.Uuid(),
            sa.ForeignKey("contracts.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("payer_id", sa.String(length=64), nullable=False),
        sa.Column("beneficiary_id", sa.String(length=64), nullable=False),
        sa.Column("rent_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("deposit_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("commission_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("method", sa.String(length=16), nullable=False),
        sa.Column("external_transaction_id", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        _ts("escrow_started_at"),
        _ts("escrow_expires_at"),
        _ts("escrow_released_at"),
        _ts("refunded_at"),
        _ts("date_validation"),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("updated_at", nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("total_amount >= 0", name="ck_payments_total_non_negative"),
    )
    op.create_index("ix_payments_status_escrow_expires", "payments", ["status", "escrow_expires_at"])
    op.create_index("ix_payments_contract", "payments", ["contract_id"])
    op.create_index(
        "uq_payments_contract_live",
        "payments",
        ["contract_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'FAILED'"),
        sqlite_where=sa.text("status <> 'FAILED'"),
    )

    op.create_table(
        "notification_outbox",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("event_type", sa.String(length=48), nullable=False),
        sa.Column("payload_json", JSON, nullable=False),
        sa.Column("recipients_json", JSON, nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("delivered_at"),
        _ts("claimed_until"),
    )
    op.create_index("ix_notification_outbox_status_created", "notification_outbox", ["status", "created_at"])


def downgrade():
    op.drop_index("ix_notification_outbox_status_created", table_name="notification_outbox")
    op.drop_table("notification_outbox")
    op.drop_index("uq_payments_contract_live", table_name="payments")
    op.drop_index("ix_payments_contract", table_name="payments")
    op.drop_index("ix_payments_status_escrow_expires", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_contract_signatures_contract", table_name="contract_signatures")
    op.drop_table("contract_signatures")
    op.drop_index("ix_contracts_tenant", table_name="contracts")
    op.drop_index("ix_contracts_owner", table_name="contracts")
    op.drop_index("ix_contracts_status_planned_end", table_name="contracts")
    op.drop_index("ix_contracts_status_signature_complete", table_name="contracts")
    op.drop_table("contracts")

"""bookings, khalti payments and payment events

Revision ID: a3c91f0d2b17
Revises:
Create Date: 2026-10-18 10:02:11.204519

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a3c91f0d2b17'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade():
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("item_type", sa.String(length=50)),
        sa.Column("item_id", sa.Integer()),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payment_status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("status in ('pending','confirmed','cancelled')",
                           name="ck_bookings_status"),
        sa.CheckConstraint(
            "payment_status in ('unpaid','pending','paid','partially_refunded','refunded','failed')",
            name="ck_bookings_payment_status"),
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(),
                  sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("pidx", sa.String(length=255), nullable=False),
        sa.Column("purchase_order_id", sa.String(length=255), nullable=False),
        sa.Column("purchase_order_name", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=10), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("transaction_id", sa.String(length=255)),
        sa.Column("fee", sa.Integer(), nullable=False),
        sa.Column("refunded_amount", sa.Integer(), nullable=False),
        sa.Column("payment_url", sa.Text()),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("customer_name", sa.String(length=255)),
        sa.Column("customer_email", sa.String(length=255)),
        sa.Column("customer_phone", sa.String(length=50)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_payments_amount_gt_0"),
        sa.UniqueConstraint("pidx", name="uq_payments_pidx"),
        sa.UniqueConstraint("purchase_order_id", name="uq_payments_purchase_order_id"),
    )
    op.create_index("idx_payments_booking", "payments", ["booking_id"])
    op.create_index("idx_payments_status", "payments", ["status"])

    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("pidx", sa.String(length=255)),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("digest", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=50)),
        sa.Column("raw", sa.Text(), nullable=False),
        sa.Column("signature_ok", sa.Integer(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("source", "digest", name="uq_paymentevents_source_digest"),
        sa.CheckConstraint("signature_ok IN (0,1)", name="ck_paymentevents_signature_ok"),
    )


def downgrade():
    op.drop_table("payment_events")
    op.drop_index("idx_payments_status", table_name="payments")
    op.drop_index("idx_payments_booking", table_name="payments")
    op.drop_table("payments")
    op.drop_table("bookings")

# models/schema.py
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import (
    String, Text, Integer, Numeric, DateTime, ForeignKey, CheckConstraint,
    UniqueConstraint, Index
)
from models.base import Base


# --- BOOKINGS (owned by the booking CRUD side; payments only touch status columns)

class Booking(Base):
    __tablename__ = "bookings"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    item_type: Mapped[str | None] = mapped_column(
        String(50))                     # 'artist' | 'venue' | 'sound' | 'event' ...
    item_id: Mapped[int | None] = mapped_column(Integer)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0"))   # NPR
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending")
    payment_status: Mapped[str] = mapped_column(
        String, nullable=False, default="unpaid")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    __table_args__ = (
        CheckConstraint(
            "status in ('pending','confirmed','cancelled')", name="ck_bookings_status"),
        CheckConstraint(
            "payment_status in ('unpaid','pending','paid','partially_refunded','refunded','failed')",
            name="ck_bookings_payment_status"),
    )


# --- PAYMENTS (one row per Khalti attempt; pidx is the correlation key)

class Payment(Base):
    __tablename__ = "payments"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(Integer, ForeignKey(
        "bookings.id", ondelete="CASCADE"), nullable=False)
    pidx: Mapped[str] = mapped_column(String(255), nullable=False)
    purchase_order_id: Mapped[str] = mapped_column(String(255), nullable=False)
    purchase_order_name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)     # paisa
    currency: Mapped[str] = mapped_column(
        String(10), nullable=False, default="NPR")
    # Khalti's own vocabulary: 'Initiated','Pending','Completed',...
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default="Initiated")
    transaction_id: Mapped[str | None] = mapped_column(String(255))
    fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refunded_amount: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0)
    payment_url: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    customer_name: Mapped[str | None] = mapped_column(String(255))
    customer_email: Mapped[str | None] = mapped_column(String(255))
    customer_phone: Mapped[str | None] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_gt_0"),
        UniqueConstraint("pidx", name="uq_payments_pidx"),
        UniqueConstraint("purchase_order_id", name="uq_payments_purchase_order_id"),
    )


Index("idx_payments_booking", Payment.booking_id)
Index("idx_payments_status", Payment.status)


class PaymentEvent(Base):
    __tablename__ = "payment_events"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    pidx: Mapped[str | None] = mapped_column(String(255))
    source: Mapped[str] = mapped_column(
        String(20), nullable=False)          # 'webhook' | 'callback' | 'verify'
    digest: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str | None] = mapped_column(String(50))
    raw: Mapped[str] = mapped_column(Text, nullable=False)
    signature_ok: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    __table_args__ = (
        UniqueConstraint("source", "digest",
                         name="uq_paymentevents_source_digest"),
        CheckConstraint("signature_ok IN (0,1)",
                        name="ck_paymentevents_signature_ok"),
    )

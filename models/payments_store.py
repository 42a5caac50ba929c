# models/payments_store.py (SQLAlchemy)
"""
Booking side of the payment flow: remembers each Khalti attempt by pidx and
folds fresh status snapshots (lookup results) into booking state.

Snapshots can arrive out of order (callback + webhook + manual verify racing
for the same pidx), so a terminal state is never walked back except along
the refund path Completed -> Partially Refunded -> Refunded.
"""
from __future__ import annotations
import hashlib
import json
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from models.base import session_scope
from models.schema import Booking, Payment, PaymentEvent
from services.datetimex import now_utc, parse_iso_to_utc, to_iso_z
from services.metrics import BOOKINGS_RECONCILED
from services.payments.base import PaymentRequest, PaymentResponse, PaymentState, PaymentStatus

log = logging.getLogger(__name__)

_PAYMENT_COLS = ("id", "booking_id", "pidx", "purchase_order_id", "purchase_order_name",
                 "amount", "currency", "status", "transaction_id", "fee", "refunded_amount",
                 "payment_url", "expires_at", "customer_name", "customer_email",
                 "customer_phone", "created_at", "updated_at")

_ALLOWED_FROM_TERMINAL = {
    PaymentState.COMPLETED.value: {PaymentState.PARTIALLY_REFUNDED.value, PaymentState.REFUNDED.value},
    PaymentState.PARTIALLY_REFUNDED.value: {PaymentState.REFUNDED.value},
}

_SETTLED = ("paid", "partially_refunded", "refunded")


def _payment_dict(p: Payment) -> dict:
    out = {c: getattr(p, c) for c in _PAYMENT_COLS}
    for k in ("expires_at", "created_at", "updated_at"):
        out[k] = to_iso_z(out[k])
    return out


# ----- bookings -----------------------------------------------------------

def create_booking(total_amount: Decimal | float | str, item_type: Optional[str] = None,
                   item_id: Optional[int] = None) -> int:
    now = now_utc()
    with session_scope() as s:
        b = Booking(item_type=item_type, item_id=item_id,
                    total_amount=Decimal(str(total_amount)),
                    status="pending", payment_status="unpaid",
                    created_at=now, updated_at=now)
        s.add(b)
        s.flush()
        return b.id


def load_booking(booking_id: int) -> Optional[dict]:
    with session_scope() as s:
        b = s.get(Booking, booking_id)
        if not b:
            return None
        return {
            "id": b.id, "item_type": b.item_type, "item_id": b.item_id,
            "total_amount": float(b.total_amount), "status": b.status,
            "payment_status": b.payment_status,
        }


# ----- payment attempts ---------------------------------------------------

def create_payment_attempt(booking_id: int, request: PaymentRequest,
                           response: PaymentResponse) -> int:
    now = now_utc()
    cust = request.customer_info
    with session_scope() as s:
        b = s.get(Booking, booking_id, with_for_update=True)
        if not b:
            raise ValueError("Booking not found")
        p = Payment(
            booking_id=booking_id, pidx=response.pidx,
            purchase_order_id=request.purchase_order_id,
            purchase_order_name=request.purchase_order_name,
            amount=request.amount, currency="NPR",
            status=PaymentState.INITIATED.value,
            payment_url=response.payment_url,
            expires_at=parse_iso_to_utc(response.expires_at),
            customer_name=cust.name if cust else None,
            customer_email=cust.email if cust else None,
            customer_phone=cust.phone if cust else None,
            created_at=now, updated_at=now,
        )
        s.add(p)
        if b.payment_status not in _SETTLED:
            b.payment_status = "pending"
            b.updated_at = now
        s.flush()
        return p.id


def get_payment(payment_id: int) -> Optional[dict]:
    with session_scope() as s:
        p = s.get(Payment, payment_id)
        return _payment_dict(p) if p else None


def get_payment_by_pidx(pidx: str) -> Optional[dict]:
    if not pidx:
        return None
    with session_scope() as s:
        p = s.execute(select(Payment).where(Payment.pidx == pidx)).scalars().first()
        return _payment_dict(p) if p else None


def get_latest_payment_for_booking(booking_id: int) -> Optional[dict]:
    with session_scope() as s:
        p = s.execute(select(Payment).where(Payment.booking_id == booking_id).order_by(
            Payment.id.desc()).limit(1)).scalars().first()
        return _payment_dict(p) if p else None


# ----- inbound events -----------------------------------------------------

def record_payment_event(source: str, raw: bytes | str | dict, signature_ok: bool,
                         pidx: Optional[str] = None, status: Optional[str] = None,
                         store_body: bool = True) -> int:
    """
    Store what came in (even when unverified). Idempotent per (source, body digest).
    With store_body=False only the digest is kept.
    """
    if isinstance(raw, dict):
        raw = json.dumps(raw, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
    raw_bytes = raw.encode("utf-8") if isinstance(raw, str) else bytes(raw)
    digest = hashlib.sha256(raw_bytes).hexdigest()
    raw_text = raw_bytes.decode("utf-8", errors="replace") if store_body else ""

    with session_scope() as s:
        try:
            e = PaymentEvent(pidx=pidx, source=source, digest=digest, status=status,
                             raw=raw_text, signature_ok=1 if signature_ok else 0,
                             received_at=now_utc())
            s.add(e)
            s.flush()
            return e.id
        except IntegrityError:
            s.rollback()
            row = s.execute(
                select(PaymentEvent.id).where(
                    (PaymentEvent.source == source) & (PaymentEvent.digest == digest))
            ).first()
            return int(row[0]) if row else 0


# ----- reconciliation -----------------------------------------------------

def _transition_allowed(current: str, new: str) -> bool:
    if current == new:
        return True
    try:
        if not PaymentState(current).is_terminal:
            return True
    except ValueError:
        return True
    return new in _ALLOWED_FROM_TERMINAL.get(current, set())


def _apply_to_booking(b: Booking, state: PaymentState) -> None:
    if state is PaymentState.COMPLETED:
        b.status = "confirmed"
        b.payment_status = "paid"
    elif state is PaymentState.PARTIALLY_REFUNDED:
        b.payment_status = "partially_refunded"
    elif state is PaymentState.REFUNDED:
        b.status = "cancelled"
        b.payment_status = "refunded"
    elif b.payment_status in _SETTLED:
        # a stale/abandoned attempt must not un-pay a booking settled by another one
        return
    elif state in (PaymentState.EXPIRED, PaymentState.USER_CANCELED):
        b.payment_status = "failed"
    else:
        b.payment_status = "pending"
    b.updated_at = now_utc()


def apply_status_snapshot(snapshot: PaymentStatus) -> bool:
    """
    Fold one lookup result into the payment row and its booking.
    Returns False when the snapshot was ignored (unknown pidx, amount or
    purchase order mismatch, or a stale regression).
    """
    new = snapshot.status.value
    with session_scope() as s:
        # Lock the payment row (Postgres honors this)
        p = s.execute(
            select(Payment).where(Payment.pidx == snapshot.pidx).with_for_update()
        ).scalars().first()
        if not p:
            log.warning("status snapshot for unknown pidx=%s", snapshot.pidx)
            BOOKINGS_RECONCILED.labels(status=new, applied="unknown").inc()
            return False

        if snapshot.status is PaymentState.COMPLETED:
            if int(snapshot.total_amount) != int(p.amount):
                log.warning("pidx=%s completed with %s paisa, expected %s; not confirming",
                            p.pidx, snapshot.total_amount, p.amount)
                BOOKINGS_RECONCILED.labels(status=new, applied="mismatch").inc()
                return False
            if snapshot.purchase_order_id and snapshot.purchase_order_id != p.purchase_order_id:
                log.warning("pidx=%s purchase_order_id %s != %s; not confirming",
                            p.pidx, snapshot.purchase_order_id, p.purchase_order_id)
                BOOKINGS_RECONCILED.labels(status=new, applied="mismatch").inc()
                return False

        if not _transition_allowed(p.status, new):
            log.info("pidx=%s ignoring stale %s (already %s)", p.pidx, new, p.status)
            BOOKINGS_RECONCILED.labels(status=new, applied="stale").inc()
            return False

        p.status = new
        if snapshot.transaction_id:
            p.transaction_id = snapshot.transaction_id
        p.fee = int(snapshot.fee)
        p.refunded_amount = int(snapshot.refunded_amount)
        p.updated_at = now_utc()

        b = s.get(Booking, p.booking_id, with_for_update=True)
        if b:
            _apply_to_booking(b, snapshot.status)

    BOOKINGS_RECONCILED.labels(status=new, applied="yes").inc()
    return True

# controllers/payments.py
from __future__ import annotations
from flask import Blueprint, request, redirect, jsonify, current_app

from services.metrics import WEBHOOK_EVENTS
from services.payments.base import (
    CustomerInfo,
    PaymentInitiationError,
    PaymentLookupError,
    PaymentState,
    ProductDetail,
)
from services.payments.currency import to_minor_units
from services.payments.registry import get_client
from models.payments_store import (
    load_booking,
    create_payment_attempt,
    get_payment,
    get_payment_by_pidx,
    record_payment_event,
    apply_status_snapshot,
)

payments_bp = Blueprint("payments", __name__)

SIGNATURE_HEADER = "X-Khalti-Signature"
# payments.amount is a 32-bit integer column
MAX_AMOUNT_PAISA = 2**31 - 1


def _lookup_and_reconcile(pidx: str, source: str):
    """Ask Khalti, keep a copy of the answer, fold it into the booking."""
    client = get_client()
    snapshot = client.lookup_payment(pidx)
    record_payment_event(source, snapshot.to_dict(), True,
                         pidx=pidx, status=snapshot.status.value)
    applied = apply_status_snapshot(snapshot)
    return snapshot, applied


# ----- customer starts a payment for a booking -----

@payments_bp.post("/api/payment/initiate")
def initiate():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify(message="JSON object body required"), 400
    booking_id = data.get("bookingId")
    amount = data.get("amount")
    product_name = data.get("productName")
    customer = data.get("customerInfo")

    if not booking_id or not amount or not product_name or not isinstance(customer, dict):
        return jsonify(message="Booking ID, amount, product name, and customer info are required"), 400
    if not isinstance(product_name, str) or not product_name.strip():
        return jsonify(message="productName must be a non-empty string"), 400
    if not customer.get("name") or not customer.get("email"):
        return jsonify(message="Customer name and email are required"), 400
    if not all(isinstance(customer.get(k) or "", str) for k in ("name", "email", "phone")):
        return jsonify(message="Customer name, email and phone must be strings"), 400

    try:
        booking_id = int(booking_id)
        amount_paisa = to_minor_units(amount)
    except (TypeError, ValueError):
        return jsonify(message="bookingId and amount must be numeric"), 400
    if amount_paisa <= 0:
        return jsonify(message="amount must be greater than zero"), 400
    if amount_paisa > MAX_AMOUNT_PAISA:
        return jsonify(message="amount is too large"), 400

    booking = load_booking(booking_id)
    if not booking:
        return jsonify(message="Booking not found"), 404

    client = get_client()
    try:
        payment_request = client.build_request(
            amount=amount_paisa,
            purchase_order_id=client.generate_payment_reference(),
            purchase_order_name=product_name.strip(),
            customer_info=CustomerInfo(
                name=customer["name"], email=customer["email"], phone=customer.get("phone") or ""),
            product_details=[ProductDetail(
                identity=str(booking_id), name=product_name.strip(),
                total_price=amount_paisa, quantity=1, unit_price=amount_paisa)],
        )
    except ValueError as e:
        return jsonify(message="Invalid payment request", detail=str(e)), 400

    try:
        resp = client.initiate_payment(payment_request)
    except PaymentInitiationError as e:
        current_app.logger.warning("initiate failed for booking %s: %s", booking_id, e.detail)
        return jsonify(message="Payment initiation failed", detail=e.detail), 502

    payment_id = create_payment_attempt(booking_id, payment_request, resp)
    current_app.logger.info("booking %s -> payment %s pidx=%s", booking_id, payment_id, resp.pidx)

    return jsonify(
        paymentId=payment_id,
        paymentUrl=resp.payment_url,
        pidx=resp.pidx,
        expiresAt=resp.expires_at,
        amount=client.format_amount(amount_paisa, in_minor_units=True),
        amountInPaisa=amount_paisa,
    )


# ----- Khalti redirects the customer back here (return_url) -----

@payments_bp.get("/payment/callback")
def callback():
    pidx = request.args.get("pidx")
    if not pidx:
        return redirect("/?payment=failed&error=missing_pidx")

    payment = get_payment_by_pidx(pidx)
    if not payment:
        return redirect("/?payment=failed&error=payment_not_found")

    # query-string status is attacker-controlled; only the lookup counts
    try:
        snapshot, _applied = _lookup_and_reconcile(pidx, "callback")
    except PaymentLookupError as e:
        current_app.logger.warning("callback lookup failed pidx=%s: %s", pidx, e.detail)
        return redirect("/?payment=failed&error=callback_failed")

    booking_id = payment["booking_id"]
    if snapshot.status is PaymentState.COMPLETED:
        booking = load_booking(booking_id)
        if booking and booking["payment_status"] == "paid":
            return redirect(f"/?payment=success&booking={booking_id}")
        return redirect("/?payment=failed&error=amount_mismatch")
    if snapshot.status in (PaymentState.EXPIRED, PaymentState.USER_CANCELED):
        return redirect("/?payment=cancelled")
    if snapshot.status in (PaymentState.REFUNDED, PaymentState.PARTIALLY_REFUNDED):
        return redirect(f"/?payment=refunded&booking={booking_id}")
    return redirect("/?payment=pending")


# ----- explicit re-check (polling from the front end) -----

@payments_bp.post("/api/payment/verify")
def verify():
    data = request.get_json(silent=True)
    pidx = data.get("pidx") if isinstance(data, dict) else None
    if not isinstance(pidx, str) or not pidx.strip():
        return jsonify(message="pidx is required"), 400

    pidx = pidx.strip()
    payment = get_payment_by_pidx(pidx)
    if not payment:
        return jsonify(message="Payment not found"), 404

    try:
        snapshot, applied = _lookup_and_reconcile(pidx, "verify")
    except PaymentLookupError as e:
        return jsonify(message="Payment lookup failed", detail=e.detail), 502

    return jsonify(
        payment=snapshot.to_dict(),
        terminal=snapshot.is_terminal,
        applied=applied,
        booking=load_booking(payment["booking_id"]),
    )


@payments_bp.get("/api/payment/status/<identifier>")
def status(identifier: str):
    if identifier.isdecimal() and identifier.isascii() and len(identifier) <= 18:
        payment = get_payment(int(identifier))
    else:
        payment = get_payment_by_pidx(identifier)
    if not payment:
        return jsonify(message="Payment not found"), 404
    return jsonify(payment)


# ----- processor webhook (no auth, signature-verified) -----

@payments_bp.post("/api/payment/webhook")
def webhook():
    """
    The body is kept as raw bytes: the HMAC is over exactly what was sent.
    A verified webhook only tells us *which* pidx changed; the state itself
    is re-read with a lookup.
    """
    client = get_client()
    raw = request.get_data(cache=False)
    evt = client.parse_webhook(raw, request.headers.get(SIGNATURE_HEADER))

    if not evt.signature_ok:
        # unauthenticated body: keep the digest only
        record_payment_event("webhook", raw, False, store_body=False)
        WEBHOOK_EVENTS.labels(outcome="bad_signature").inc()
        current_app.logger.warning("webhook rejected: bad signature")
        return jsonify(message="invalid signature"), 400

    try:
        pidx = evt.pidx
    except ValueError:
        pidx = None
    record_payment_event("webhook", raw, True, pidx=pidx)
    if not pidx:
        return jsonify(message="pidx missing"), 400

    if not get_payment_by_pidx(pidx):
        WEBHOOK_EVENTS.labels(outcome="unknown_payment").inc()
        return jsonify(message="Payment not found"), 404

    try:
        snapshot, applied = _lookup_and_reconcile(pidx, "webhook")
    except PaymentLookupError as e:
        # non-2xx makes Khalti retry the delivery later
        WEBHOOK_EVENTS.labels(outcome="lookup_failed").inc()
        current_app.logger.warning("webhook lookup failed pidx=%s: %s", pidx, e.detail)
        return jsonify(message="lookup failed"), 502

    WEBHOOK_EVENTS.labels(outcome="ok").inc()
    return jsonify(ok=True, status=snapshot.status.value, applied=applied), 200

import json

from models.payments_store import create_booking, create_payment_attempt, load_booking
from services.payments.base import PaymentResponse
from tests.utils import initiated, looked_up, sign

BODY = json.dumps({"pidx": "pidx_w", "status": "Completed", "total_amount": 1000}).encode("utf-8")


def _flip(data: bytes, bit: int) -> bytes:
    b = bytearray(data)
    b[bit // 8] ^= 1 << (bit % 8)
    return bytes(b)


def test_valid_signature_verifies(khalti):
    assert khalti.verify_webhook(BODY, sign(BODY)) is True
    assert khalti.verify_webhook(BODY.decode("utf-8"), sign(BODY)) is True


def test_any_single_bit_change_in_payload_fails(khalti):
    sig = sign(BODY)
    for bit in range(len(BODY) * 8):
        assert khalti.verify_webhook(_flip(BODY, bit), sig) is False


def test_any_single_bit_change_in_signature_fails(khalti):
    sig = sign(BODY)
    for i, ch in enumerate(sig):
        for bit in range(7):
            mutated = sig[:i] + chr(ord(ch) ^ (1 << bit)) + sig[i + 1:]
            assert khalti.verify_webhook(BODY, mutated) is False


def test_signature_under_another_secret_fails(khalti):
    assert khalti.verify_webhook(BODY, sign(BODY, secret="someone-else")) is False


def test_malformed_input_returns_false_instead_of_raising(khalti):
    junk = b"\xff\xfe\x00garbage"
    assert khalti.verify_webhook(junk, sign(junk)) is False
    assert khalti.verify_webhook(BODY, "") is False
    assert khalti.verify_webhook(BODY, None) is False
    assert khalti.verify_webhook(None, sign(BODY)) is False
    assert khalti.verify_webhook("\ud800", "abc") is False
    assert khalti.verify_webhook(BODY, "ü" * 64) is False


# ----- route -----

def _seed_payment(pidx="pidx_w", amount=1000):
    bid = create_booking("10.00", item_type="event", item_id=1)
    from services.payments.base import PaymentRequest
    req = PaymentRequest(return_url="http://testserver/payment/callback",
                         website_url="http://testserver", amount=amount,
                         purchase_order_id=f"REART-{pidx}", purchase_order_name="Event ticket")
    resp = PaymentResponse.from_payload(initiated(pidx).json())
    create_payment_attempt(bid, req, resp)
    return bid


def test_webhook_with_bad_signature_is_rejected_and_changes_nothing(client, fake_khalti):
    bid = _seed_payment()
    r = client.post("/api/payment/webhook", data=BODY,
                    headers={"X-Khalti-Signature": "0" * 64, "Content-Type": "application/json"})
    assert r.status_code == 400
    assert fake_khalti.calls == []
    assert load_booking(bid)["payment_status"] == "pending"


def test_webhook_does_not_trust_claimed_status(client, fake_khalti):
    bid = _seed_payment()
    # payload says Completed, Khalti says still Pending
    fake_khalti.queue("lookup", looked_up("pidx_w", "Pending"))
    r = client.post("/api/payment/webhook", data=BODY,
                    headers={"X-Khalti-Signature": sign(BODY), "Content-Type": "application/json"})
    assert r.status_code == 200
    assert r.get_json()["status"] == "Pending"
    assert len(fake_khalti.calls_to("lookup")) == 1
    b = load_booking(bid)
    assert b["status"] == "pending"
    assert b["payment_status"] == "pending"


def test_verified_webhook_confirms_booking_after_lookup(client, fake_khalti):
    bid = _seed_payment()
    fake_khalti.queue("lookup", looked_up("pidx_w", "Completed", total_amount=1000,
                                          purchase_order_id="REART-pidx_w"))
    r = client.post("/api/payment/webhook", data=BODY,
                    headers={"X-Khalti-Signature": sign(BODY), "Content-Type": "application/json"})
    assert r.status_code == 200
    assert r.get_json()["applied"] is True
    b = load_booking(bid)
    assert b["status"] == "confirmed"
    assert b["payment_status"] == "paid"


def test_webhook_for_unknown_pidx(client, fake_khalti):
    body = json.dumps({"pidx": "nope"}).encode("utf-8")
    r = client.post("/api/payment/webhook", data=body,
                    headers={"X-Khalti-Signature": sign(body)})
    assert r.status_code == 404
    assert fake_khalti.calls == []


def test_webhook_lookup_failure_asks_for_redelivery(client, fake_khalti):
    import requests
    _seed_payment()
    fake_khalti.queue("lookup", requests.ConnectionError("down"))
    r = client.post("/api/payment/webhook", data=BODY,
                    headers={"X-Khalti-Signature": sign(BODY)})
    assert r.status_code == 502


def test_unsigned_webhook_body_is_not_stored(client, fake_khalti):
    from models.base import session_scope
    from models.schema import PaymentEvent

    r = client.post("/api/payment/webhook", data=b'{"pidx":"junk"}' + b" " * 1000,
                    headers={"X-Khalti-Signature": "0" * 64})
    assert r.status_code == 400
    with session_scope() as s:
        events = s.query(PaymentEvent).all()
        assert [(e.signature_ok, e.raw) for e in events] == [(0, "")]


def test_oversized_webhook_is_refused_before_storage(client, app, fake_khalti):
    from models.base import session_scope
    from models.schema import PaymentEvent

    body = b"x" * (app.config["MAX_CONTENT_LENGTH"] + 1)
    r = client.post("/api/payment/webhook", data=body, headers={"X-Khalti-Signature": sign(body)})
    assert r.status_code == 413
    with session_scope() as s:
        assert s.query(PaymentEvent).count() == 0

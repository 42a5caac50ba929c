# tests/utils.py
import hashlib
import hmac
import json

TEST_SECRET = "test_secret_key_for_suite_0123456789"


def sign(body: bytes, secret: str = TEST_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class FakeResponse:
    def __init__(self, status_code=200, json_body=None, text=None):
        self.status_code = status_code
        self._json = json_body
        if text is None:
            text = json.dumps(json_body) if json_body is not None else ""
        self.text = text
        self.reason = "OK" if self.ok else "Bad Request"

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("No JSON object could be decoded")
        return self._json


class FakeKhalti:
    def __init__(self):
        self.calls = []
        self.queued = {"initiate": [], "lookup": []}

    def queue(self, endpoint, *items):
        self.queued[endpoint].extend(items)
        return self

    def calls_to(self, endpoint):
        return [c for c in self.calls if c["endpoint"] == endpoint]

    def __call__(self, url, json=None, headers=None, timeout=None, **kw):
        endpoint = url.rstrip("/").rsplit("/", 1)[-1]
        self.calls.append({"endpoint": endpoint, "url": url, "json": json,
                           "headers": headers or {}, "timeout": timeout})
        if not self.queued.get(endpoint):
            raise AssertionError(f"unexpected call to {url}")
        item = self.queued[endpoint].pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def initiated(pidx="bZQLD9wRVWo4CdESSfuSsB", expires_in=1800):
    return FakeResponse(200, {
        "pidx": pidx,
        "payment_url": f"https://test-pay.khalti.com/?pidx={pidx}",
        "expires_at": "2023-05-25T16:26:16.471649+05:45",
        "expires_in": expires_in,
    })


def looked_up(pidx, status, total_amount=1000, purchase_order_id=None,
              transaction_id="GFq9PFS7b2iYvL8Lir9oXe", fee=0, refunded_amount=0):
    return FakeResponse(200, {
        "pidx": pidx,
        "total_amount": total_amount,
        "status": status,
        "transaction_id": transaction_id if status != "Pending" else None,
        "fee": fee,
        "refunded": refunded_amount > 0,
        "refunded_amount": refunded_amount,
        "purchase_order_id": purchase_order_id,
        "purchase_order_name": "Test booking",
    })

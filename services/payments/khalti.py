# services/payments/khalti.py
"""
Khalti epayment (KPG-2) client.

  POST {gateway}/initiate/   PaymentRequest  -> PaymentResponse (pidx + hosted URL)
  POST {gateway}/lookup/     {"pidx": ...}   -> PaymentStatus

Each call is one independent HTTP round trip with a bounded timeout. Nothing
is cached or retried here: initiation is not idempotent on Khalti's side, so
a retry must come from the caller with a fresh purchase_order_id.
"""

from __future__ import annotations
import hashlib
import hmac
import logging
import secrets
import string
import time
from typing import Any, Dict, Iterable, Optional, Union

import requests

from services.metrics import PAYMENT_INITIATIONS, PAYMENT_LOOKUPS
from services.payments.base import (
    AmountBreakdownItem,
    CustomerInfo,
    PaymentInitiationError,
    PaymentLookupError,
    PaymentRequest,
    PaymentResponse,
    PaymentStatus,
    ProductDetail,
    WebhookEvent,
)
from services.payments.config import KhaltiConfig, validate_credentials
from services.payments.currency import format_amount, to_major_units, to_minor_units

log = logging.getLogger(__name__)

API_VERSION = "v2"
USER_AGENT = "ReArt-Events/1.0"
REFERENCE_PREFIX = "REART"
_REF_ALPHABET = string.digits + string.ascii_lowercase


def _error_detail(resp: requests.Response) -> tuple[str, Optional[Dict[str, Any]]]:
    """
    Khalti error bodies look like
      {"detail": "Invalid token.", "status_code": 401}
      {"amount": ["Amount should be greater than Rs. 10, that is 1000 paisa."],
       "error_key": "validation_error"}
    """
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        if body.get("detail"):
            return str(body["detail"]), body
        parts = []
        for k, v in body.items():
            if k in ("error_key", "status_code"):
                continue
            msg = "; ".join(map(str, v)) if isinstance(v, list) else str(v)
            parts.append(f"{k}: {msg}")
        if parts:
            return " | ".join(parts), body
    text = (resp.text or "").strip()
    return (text[:200] or f"HTTP {resp.status_code} {resp.reason or ''}".strip()), body


class KhaltiClient:
    name = "khalti"

    def __init__(self, config: KhaltiConfig) -> None:
        # Strict mode is re-checked here so a hand-built config cannot bypass it.
        validate_credentials(config.public_key, config.secret_key, config.production)
        self.config = config
        self._secret = config.secret_key.encode("utf-8")

    # ----- http ------------------------------------------------------------

    def _headers(self, *, with_agent: bool = False) -> Dict[str, str]:
        h = {
            "Authorization": f"Key {self.config.secret_key}",
            "Content-Type": "application/json",
            "X-Khalti-Environment": self.config.environment,
            "X-Khalti-Version": API_VERSION,
        }
        if with_agent:
            h["User-Agent"] = USER_AGENT
        return h

    def _url(self, resource: str) -> str:
        return f"{self.config.gateway_url}/{resource.strip('/')}/"

    # ----- public ----------------------------------------------------------

    def initiate_payment(self, request: PaymentRequest) -> PaymentResponse:
        mismatch = request.breakdown_mismatch()
        if mismatch:
            # forwarded as-is; Khalti's validation error is the answer
            log.warning("purchase_order_id=%s: line totals %s != amount %s",
                        request.purchase_order_id, mismatch, request.amount)

        try:
            r = requests.post(self._url("initiate"), json=request.to_payload(),
                              headers=self._headers(with_agent=True),
                              timeout=self.config.timeout)
        except requests.RequestException as e:
            PAYMENT_INITIATIONS.labels(outcome="transport_error").inc()
            log.error("Khalti initiate failed for %s: %s", request.purchase_order_id, e)
            raise PaymentInitiationError(f"Payment initiation failed: {e}") from e

        if not r.ok:
            detail, body = _error_detail(r)
            PAYMENT_INITIATIONS.labels(outcome="rejected").inc()
            log.error("Khalti initiate rejected for %s (%s): %s",
                      request.purchase_order_id, r.status_code, detail)
            raise PaymentInitiationError(f"Payment initiation failed: {detail}",
                                         status_code=r.status_code, response=body)

        try:
            resp = PaymentResponse.from_payload(r.json())
        except (ValueError, KeyError, TypeError) as e:
            PAYMENT_INITIATIONS.labels(outcome="malformed").inc()
            raise PaymentInitiationError(f"Payment initiation failed: malformed response ({e})",
                                         status_code=r.status_code) from e

        PAYMENT_INITIATIONS.labels(outcome="ok").inc()
        log.info("Khalti payment initiated: purchase_order_id=%s pidx=%s",
                 request.purchase_order_id, resp.pidx)
        return resp

    def lookup_payment(self, pidx: str) -> PaymentStatus:
        if not isinstance(pidx, str) or not pidx.strip():
            raise ValueError("pidx is required")

        try:
            r = requests.post(self._url("lookup"), json={"pidx": pidx},
                              headers=self._headers(), timeout=self.config.timeout)
        except requests.RequestException as e:
            PAYMENT_LOOKUPS.labels(outcome="transport_error").inc()
            log.error("Khalti lookup failed for pidx=%s: %s", pidx, e)
            raise PaymentLookupError(f"Payment lookup failed: {e}") from e

        if not r.ok:
            detail, body = _error_detail(r)
            PAYMENT_LOOKUPS.labels(outcome="rejected").inc()
            log.error("Khalti lookup rejected for pidx=%s (%s): %s", pidx, r.status_code, detail)
            raise PaymentLookupError(f"Payment lookup failed: {detail}",
                                     status_code=r.status_code, response=body)

        try:
            status = PaymentStatus.from_payload(r.json())
        except (ValueError, KeyError, TypeError) as e:
            PAYMENT_LOOKUPS.labels(outcome="malformed").inc()
            raise PaymentLookupError(f"Payment lookup failed: malformed response ({e})",
                                     status_code=r.status_code) from e

        PAYMENT_LOOKUPS.labels(outcome=status.status.value).inc()
        return status

    def verify_webhook(self, payload: Union[str, bytes], signature: str) -> bool:
        """
        True only if `signature` is the hex HMAC-SHA256 of the raw payload
        under the secret key. Never raises; every odd input is a plain False.
        """
        if not signature or not isinstance(signature, str):
            return False
        if isinstance(payload, str):
            try:
                body = payload.encode("utf-8")
            except UnicodeEncodeError:
                return False
        elif isinstance(payload, (bytes, bytearray)):
            body = bytes(payload)
            try:
                body.decode("utf-8")
            except UnicodeDecodeError:
                return False
        else:
            return False

        try:
            expected = hmac.new(self._secret, body, hashlib.sha256).hexdigest()
            return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
        except (TypeError, ValueError, UnicodeError):
            return False

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:
        ok = self.verify_webhook(payload, signature or "")
        return WebhookEvent(payload=payload, signature=signature or "", signature_ok=ok)

    def generate_payment_reference(self) -> str:
        """
        REART-<epoch ms>-<9 base36 chars>. A correlation id for humans and
        logs, not a secret.
        """
        suffix = "".join(secrets.choice(_REF_ALPHABET) for _ in range(9))
        return f"{REFERENCE_PREFIX}-{int(time.time() * 1000)}-{suffix}"

    def build_request(self, *, amount: int, purchase_order_id: str, purchase_order_name: str,
                      customer_info: Optional[CustomerInfo] = None,
                      amount_breakdown: Iterable[AmountBreakdownItem] = (),
                      product_details: Iterable[ProductDetail] = (),
                      return_url: Optional[str] = None) -> PaymentRequest:
        return PaymentRequest(
            return_url=return_url or self.config.return_url,
            website_url=self.config.website_url,
            amount=amount,
            purchase_order_id=purchase_order_id,
            purchase_order_name=purchase_order_name,
            customer_info=customer_info,
            amount_breakdown=tuple(amount_breakdown),
            product_details=tuple(product_details),
        )

    # conversion helpers, exposed on the client for callers holding only a client
    to_minor_units = staticmethod(to_minor_units)
    to_major_units = staticmethod(to_major_units)
    format_amount = staticmethod(format_amount)

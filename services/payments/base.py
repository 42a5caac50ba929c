# services/payments/base.py
"""
Typed wire structures + error taxonomy for the Khalti epayment gateway.

All amounts on these structures are integers in paisa (1 NPR = 100 paisa).
Request/response bodies are validated here, at the serialization boundary,
so callers never deal with half-filled dicts.
"""

from __future__ import annotations
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, Tuple


# ----- errors -------------------------------------------------------------

class PaymentError(Exception):
    """Base for gateway failures. `detail` is the processor's message when it sent one."""

    def __init__(self, detail: str, *, status_code: Optional[int] = None,
                 response: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.response = response


class PaymentInitiationError(PaymentError):
    pass


class PaymentLookupError(PaymentError):
    pass


class PaymentConfigurationError(RuntimeError):
    """Missing/invalid credentials. Raised at startup, never at call time."""


# ----- helpers ------------------------------------------------------------

def _require_str(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value


def _require_amount(value: Any, name: str, *, positive: bool = True) -> int:
    # bool is an int subclass; True must not sneak in as 1 paisa
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer amount in paisa")
    if positive and value <= 0:
        raise ValueError(f"{name} must be > 0")
    if value < 0:
        raise ValueError(f"{name} must be >= 0")
    return value


def _payload_int(data: Dict[str, Any], key: str, default: Optional[int] = None) -> int:
    v = data.get(key, default)
    if v is None:
        if default is None:
            raise KeyError(key)
        return default
    if isinstance(v, bool):
        raise ValueError(f"{key}: expected a number")
    if isinstance(v, float):
        if not v.is_integer():
            raise ValueError(f"{key}: expected whole paisa, got {v}")
        return int(v)
    return int(v)


# ----- request ------------------------------------------------------------

@dataclass(frozen=True)
class CustomerInfo:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def to_payload(self) -> Dict[str, str]:
        return {k: v for k, v in (("name", self.name), ("email", self.email),
                                  ("phone", self.phone)) if v is not None}


@dataclass(frozen=True)
class AmountBreakdownItem:
    label: str
    amount: int

    def __post_init__(self):
        _require_str(self.label, "amount_breakdown.label")
        _require_amount(self.amount, "amount_breakdown.amount", positive=False)


@dataclass(frozen=True)
class ProductDetail:
    identity: str
    name: str
    total_price: int
    quantity: int
    unit_price: int

    def __post_init__(self):
        _require_str(self.identity, "product_details.identity")
        _require_str(self.name, "product_details.name")
        _require_amount(self.total_price, "product_details.total_price", positive=False)
        _require_amount(self.quantity, "product_details.quantity")
        _require_amount(self.unit_price, "product_details.unit_price", positive=False)


@dataclass(frozen=True)
class PaymentRequest:
    return_url: str
    website_url: str
    amount: int                   # paisa
    purchase_order_id: str        # unique per attempt; mint a new one to retry
    purchase_order_name: str
    customer_info: Optional[CustomerInfo] = None
    amount_breakdown: Tuple[AmountBreakdownItem, ...] = ()
    product_details: Tuple[ProductDetail, ...] = ()

    def __post_init__(self):
        _require_str(self.return_url, "return_url")
        _require_str(self.website_url, "website_url")
        _require_amount(self.amount, "amount")
        _require_str(self.purchase_order_id, "purchase_order_id")
        _require_str(self.purchase_order_name, "purchase_order_name")
        # accept lists from callers but keep the dataclass hashable/immutable
        object.__setattr__(self, "amount_breakdown", tuple(self.amount_breakdown or ()))
        object.__setattr__(self, "product_details", tuple(self.product_details or ()))

    def breakdown_mismatch(self) -> Dict[str, int]:
        """
        Sums that disagree with `amount`, e.g. {"product_details": 900}.
        Empty when consistent. Nothing is corrected here; Khalti decides.
        """
        out: Dict[str, int] = {}
        if self.amount_breakdown:
            s = sum(i.amount for i in self.amount_breakdown)
            if s != self.amount:
                out["amount_breakdown"] = s
        if self.product_details:
            s = sum(p.total_price for p in self.product_details)
            if s != self.amount:
                out["product_details"] = s
        return out

    def to_payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "return_url": self.return_url,
            "website_url": self.website_url,
            "amount": self.amount,
            "purchase_order_id": self.purchase_order_id,
            "purchase_order_name": self.purchase_order_name,
        }
        if self.customer_info is not None:
            body["customer_info"] = self.customer_info.to_payload()
        if self.amount_breakdown:
            body["amount_breakdown"] = [
                {"label": i.label, "amount": i.amount} for i in self.amount_breakdown]
        if self.product_details:
            body["product_details"] = [
                {
                    "identity": p.identity,
                    "name": p.name,
                    "total_price": p.total_price,
                    "quantity": p.quantity,
                    "unit_price": p.unit_price,
                }
                for p in self.product_details
            ]
        return body


# ----- responses ----------------------------------------------------------

@dataclass(frozen=True)
class PaymentResponse:
    pidx: str
    payment_url: str
    expires_at: str
    expires_in: int               # seconds

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "PaymentResponse":
        if not isinstance(data, dict):
            raise ValueError("initiate response is not an object")
        missing = [k for k in ("pidx", "payment_url", "expires_at", "expires_in")
                   if data.get(k) in (None, "")]
        if missing:
            raise ValueError(f"initiate response missing {', '.join(missing)}")
        return cls(
            pidx=str(data["pidx"]),
            payment_url=str(data["payment_url"]),
            expires_at=str(data["expires_at"]),
            expires_in=_payload_int(data, "expires_in"),
        )


class PaymentState(str, Enum):
    COMPLETED = "Completed"
    PENDING = "Pending"
    INITIATED = "Initiated"
    REFUNDED = "Refunded"
    PARTIALLY_REFUNDED = "Partially Refunded"
    EXPIRED = "Expired"
    USER_CANCELED = "User canceled"

    @property
    def is_terminal(self) -> bool:
        return self not in (PaymentState.PENDING, PaymentState.INITIATED)


@dataclass(frozen=True)
class PaymentStatus:
    pidx: str
    total_amount: int
    status: PaymentState
    transaction_id: Optional[str]
    fee: int
    refunded_amount: int
    purchase_order_id: Optional[str] = None
    purchase_order_name: Optional[str] = None
    extra_merchant_params: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "PaymentStatus":
        if not isinstance(data, dict):
            raise ValueError("lookup response is not an object")
        for k in ("pidx", "total_amount", "status"):
            if data.get(k) in (None, ""):
                raise ValueError(f"lookup response missing {k}")
        try:
            state = PaymentState(data["status"])
        except ValueError:
            raise ValueError(f"unknown payment status {data['status']!r}") from None
        extra = data.get("extra_merchant_params") or {}
        return cls(
            pidx=str(data["pidx"]),
            total_amount=_payload_int(data, "total_amount"),
            status=state,
            transaction_id=data.get("transaction_id") or None,
            fee=_payload_int(data, "fee", 0),
            refunded_amount=_payload_int(data, "refunded_amount", 0),
            purchase_order_id=data.get("purchase_order_id"),
            purchase_order_name=data.get("purchase_order_name"),
            extra_merchant_params=extra if isinstance(extra, dict) else {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pidx": self.pidx,
            "total_amount": self.total_amount,
            "status": self.status.value,
            "transaction_id": self.transaction_id,
            "fee": self.fee,
            "refunded_amount": self.refunded_amount,
            "purchase_order_id": self.purchase_order_id,
            "purchase_order_name": self.purchase_order_name,
        }


@dataclass(frozen=True)
class WebhookEvent:
    payload: bytes                # raw body, exactly as received
    signature: str
    signature_ok: bool

    def data(self) -> Dict[str, Any]:
        """Decoded JSON body. Only meaningful once signature_ok is True."""
        if not self.signature_ok:
            raise PermissionError("webhook signature not verified")
        obj = json.loads(self.payload.decode("utf-8"))
        if not isinstance(obj, dict):
            raise ValueError("webhook payload is not an object")
        return obj

    @property
    def pidx(self) -> Optional[str]:
        v = self.data().get("pidx")
        return str(v) if v else None

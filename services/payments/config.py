# services/payments/config.py
"""
Khalti credentials/URLs, resolved once at process start.

Environment:
  KHALTI_PUBLIC_KEY     public key
  KHALTI_SECRET_KEY     secret key (Authorization header + webhook HMAC)
  KHALTI_RETURN_URL     default: {BASE_URL}/payment/callback
  BASE_URL              merchant site, default http://localhost:5000
  APP_ENV               "production" turns on strict mode (NODE_ENV accepted too)
  KHALTI_GATEWAY_URL    epayment base; live in production, sandbox otherwise
  KHALTI_TIMEOUT        seconds (default 30)

In production a missing key is fatal. Everywhere else the placeholder
test keys below are used and a warning is logged.
"""

from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from services.payments.base import PaymentConfigurationError

log = logging.getLogger(__name__)

LIVE_GATEWAY_URL = "https://khalti.com/api/v2/epayment"
SANDBOX_GATEWAY_URL = "https://dev.khalti.com/api/v2/epayment"
DEFAULT_BASE_URL = "http://localhost:5000"
DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class KhaltiConfig:
    public_key: str
    secret_key: str
    return_url: str
    website_url: str
    production: bool = False
    gateway_url: str = SANDBOX_GATEWAY_URL
    timeout: float = DEFAULT_TIMEOUT

    @property
    def environment(self) -> str:
        return "production" if self.production else "sandbox"

    def __repr__(self) -> str:
        # keep the secret out of logs/tracebacks
        return (f"KhaltiConfig(public_key={self.public_key!r}, secret_key='***', "
                f"return_url={self.return_url!r}, website_url={self.website_url!r}, "
                f"production={self.production}, gateway_url={self.gateway_url!r})")


def _development_placeholder_keys() -> tuple[str, str]:
    """Local-dev only. Never reachable when production=True."""
    return (
        "test_public_key_dc74e0fd57cb46cd93832aee0a390234",
        "test_secret_key_f59e8b7c6a8f4b5c9d6e7f8g9h0i1j2k",
    )


def is_placeholder_key(key: Optional[str]) -> bool:
    return bool(key) and key in _development_placeholder_keys()


def is_production(environ: Mapping[str, str]) -> bool:
    """Production if either mode variable says so."""
    return any((environ.get(name) or "").strip().lower() == "production"
               for name in ("APP_ENV", "NODE_ENV"))


def validate_credentials(public_key: Optional[str], secret_key: Optional[str],
                         production: bool) -> None:
    if not production:
        return
    missing = [name for name, v in (("KHALTI_PUBLIC_KEY", public_key),
                                    ("KHALTI_SECRET_KEY", secret_key)) if not v]
    if missing:
        raise PaymentConfigurationError(
            f"Khalti API keys are required in production. Please set {' and '.join(missing)}.")
    if is_placeholder_key(public_key) or is_placeholder_key(secret_key):
        raise PaymentConfigurationError(
            "Khalti placeholder test keys cannot be used in production.")


def load_khalti_config(environ: Optional[Mapping[str, str]] = None) -> KhaltiConfig:
    env = os.environ if environ is None else environ
    production = is_production(env)

    public_key = (env.get("KHALTI_PUBLIC_KEY") or "").strip()
    secret_key = (env.get("KHALTI_SECRET_KEY") or "").strip()
    validate_credentials(public_key, secret_key, production)

    if not (public_key and secret_key):
        dev_public, dev_secret = _development_placeholder_keys()
        public_key = public_key or dev_public
        secret_key = secret_key or dev_secret
        log.warning("Khalti keys not set; using placeholder test credentials (non-production)")

    base_url = (env.get("BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
    return_url = env.get("KHALTI_RETURN_URL") or f"{base_url}/payment/callback"
    gateway = env.get("KHALTI_GATEWAY_URL") or (
        LIVE_GATEWAY_URL if production else SANDBOX_GATEWAY_URL)

    try:
        timeout = float(env.get("KHALTI_TIMEOUT") or DEFAULT_TIMEOUT)
    except ValueError:
        raise PaymentConfigurationError("KHALTI_TIMEOUT must be a number of seconds") from None

    return KhaltiConfig(
        public_key=public_key,
        secret_key=secret_key,
        return_url=return_url,
        website_url=base_url,
        production=production,
        gateway_url=gateway.rstrip("/"),
        timeout=timeout,
    )

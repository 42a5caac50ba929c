# services/payments/registry.py
from __future__ import annotations
from typing import Optional

from flask import current_app

from services.payments.config import KhaltiConfig, load_khalti_config
from services.payments.khalti import KhaltiClient

EXTENSION_KEY = "khalti"


def init_app(app, config: Optional[KhaltiConfig] = None) -> KhaltiClient:
    """
    Build the client once at startup and hang it on the app.
    Raises PaymentConfigurationError (production, keys missing) so the
    app factory fails before serving anything.
    """
    client = KhaltiClient(config or load_khalti_config())
    app.extensions[EXTENSION_KEY] = client
    app.logger.info("Khalti client ready (environment=%s, gateway=%s)",
                    client.config.environment, client.config.gateway_url)
    return client


def get_client() -> KhaltiClient:
    client = current_app.extensions.get(EXTENSION_KEY)
    if client is None:
        raise RuntimeError("Khalti client not initialised; call registry.init_app(app)")
    return client

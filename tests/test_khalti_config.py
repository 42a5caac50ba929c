import pytest
from services.payments.base import PaymentConfigurationError
from services.payments.config import (
    KhaltiConfig, load_khalti_config, is_placeholder_key, is_production,
    LIVE_GATEWAY_URL, SANDBOX_GATEWAY_URL,
)
from services.payments.khalti import KhaltiClient


def test_production_without_secret_key_is_fatal(fake_khalti):
    env = {"APP_ENV": "production", "KHALTI_PUBLIC_KEY": "live_public_key_x"}
    with pytest.raises(PaymentConfigurationError) as ei:
        load_khalti_config(env)
    assert "KHALTI_SECRET_KEY" in str(ei.value)
    assert fake_khalti.calls == []


def test_production_without_any_key_names_both():
    with pytest.raises(PaymentConfigurationError) as ei:
        load_khalti_config({"APP_ENV": "production"})
    msg = str(ei.value)
    assert "KHALTI_PUBLIC_KEY" in msg and "KHALTI_SECRET_KEY" in msg


def test_node_env_is_accepted_as_mode_flag():
    with pytest.raises(PaymentConfigurationError):
        load_khalti_config({"NODE_ENV": "production"})


def test_production_rejects_placeholder_keys():
    dev = load_khalti_config({})
    env = {"APP_ENV": "production", "KHALTI_PUBLIC_KEY": dev.public_key,
           "KHALTI_SECRET_KEY": dev.secret_key}
    with pytest.raises(PaymentConfigurationError):
        load_khalti_config(env)


def test_development_falls_back_to_placeholder_keys():
    cfg = load_khalti_config({"APP_ENV": "development"})
    assert cfg.production is False
    assert is_placeholder_key(cfg.public_key)
    assert is_placeholder_key(cfg.secret_key)
    assert cfg.gateway_url == SANDBOX_GATEWAY_URL
    assert cfg.website_url == "http://localhost:5000"
    assert cfg.return_url == "http://localhost:5000/payment/callback"
    assert cfg.timeout == 30
    # usable
    KhaltiClient(cfg)


def test_production_with_keys_uses_live_gateway():
    cfg = load_khalti_config({
        "APP_ENV": "production",
        "KHALTI_PUBLIC_KEY": "live_public_key_abc",
        "KHALTI_SECRET_KEY": "live_secret_key_abc",
        "BASE_URL": "https://reart.example/",
    })
    assert cfg.production is True
    assert cfg.environment == "production"
    assert cfg.gateway_url == LIVE_GATEWAY_URL
    assert cfg.website_url == "https://reart.example"
    assert cfg.return_url == "https://reart.example/payment/callback"


def test_explicit_return_url_and_timeout():
    cfg = load_khalti_config({"KHALTI_RETURN_URL": "https://x.example/back",
                              "KHALTI_TIMEOUT": "12.5"})
    assert cfg.return_url == "https://x.example/back"
    assert cfg.timeout == 12.5


def test_bad_timeout_is_a_configuration_error():
    with pytest.raises(PaymentConfigurationError):
        load_khalti_config({"KHALTI_TIMEOUT": "soon"})


def test_client_rechecks_hand_built_production_config():
    cfg = KhaltiConfig(public_key="pk", secret_key="", return_url="https://a/cb",
                       website_url="https://a", production=True)
    with pytest.raises(PaymentConfigurationError):
        KhaltiClient(cfg)


def test_secret_not_in_repr():
    cfg = KhaltiConfig(public_key="pk", secret_key="very-secret", return_url="r", website_url="w")
    assert "very-secret" not in repr(cfg)


def test_create_app_in_production_without_keys_aborts_startup(monkeypatch, fake_khalti):
    from app import create_app
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.delenv("KHALTI_SECRET_KEY", raising=False)
    monkeypatch.delenv("KHALTI_PUBLIC_KEY", raising=False)
    with pytest.raises(PaymentConfigurationError):
        create_app({"TESTING": True})
    assert fake_khalti.calls == []


@pytest.mark.parametrize("env", [
    {"APP_ENV": "development", "NODE_ENV": "production"},
    {"APP_ENV": "production", "NODE_ENV": "development"},
    {"APP_ENV": " Production "},
])
def test_either_mode_variable_enables_production(env):
    assert is_production(env) is True
    with pytest.raises(PaymentConfigurationError):
        load_khalti_config(env)


def test_development_needs_both_variables_to_agree():
    assert is_production({"APP_ENV": "development", "NODE_ENV": "test"}) is False
    assert is_production({}) is False

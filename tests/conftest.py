# tests/conftest.py
import os
import pytest
from app import create_app
from models.base import Base, init_engine_and_session
from services.payments.config import KhaltiConfig
from services.payments.khalti import KhaltiClient
from tests.utils import FakeKhalti, TEST_SECRET


@pytest.fixture(scope="session", autouse=True)
def _set_env(tmp_path_factory):
    db_file = tmp_path_factory.mktemp("db") / "payments.sqlite3"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_file}"
    os.environ["APP_ENV"] = "test"
    os.environ.setdefault("METRICS_ENABLED", "0")
    os.environ.setdefault("AUTO_CREATE_SCHEMA", "1")
    os.environ["BASE_URL"] = "http://testserver"
    os.environ["KHALTI_SECRET_KEY"] = TEST_SECRET
    os.environ["KHALTI_PUBLIC_KEY"] = "test_public_key_for_suite"
    for k in ("NODE_ENV", "KHALTI_RETURN_URL", "KHALTI_GATEWAY_URL", "KHALTI_TIMEOUT"):
        os.environ.pop(k, None)
    yield


@pytest.fixture(scope="session")
def app(_set_env):
    return create_app({"TESTING": True})


@pytest.fixture(scope="session")
def db_engine(app):
    engine, _Session = init_engine_and_session()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(autouse=True)
def _db_clean(db_engine):
    with db_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture
def khalti_config():
    return KhaltiConfig(
        public_key="test_public_key_for_suite",
        secret_key=TEST_SECRET,
        return_url="http://testserver/payment/callback",
        website_url="http://testserver",
        gateway_url="https://gateway.test/api/v2/epayment",
    )


@pytest.fixture
def khalti(khalti_config):
    return KhaltiClient(khalti_config)


@pytest.fixture
def fake_khalti(monkeypatch):
    """Stands in for requests.post; queue answers per endpoint."""
    fk = FakeKhalti()
    monkeypatch.setattr("services.payments.khalti.requests.post", fk)
    return fk

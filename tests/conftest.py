import random

import pytest

from app import create_app


TEST_TLDS = ["com", "de", "net", "org", "si", "uk", "xn--p1ai"]
ADMIN_TOKEN = "admin-secret"


@pytest.fixture
def app_factory(tmp_path):
    def _create(**overrides):
        config = {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "RATELIMIT_ENABLED": False,
            "TLDS": TEST_TLDS,
            "ADMIN_TOKEN": ADMIN_TOKEN,
            "LEDGER_MODE": "email",
            "LEDGER_STORAGE": "sql",
            "CLAIM_BACKEND": "memory",
            "CLAIMS_LOG_PATH": str(tmp_path / "emails.txt"),
            "LEDGER_JSON_PATH": str(tmp_path / "spin_state.json"),
            "WHEEL_TIMEZONE": "Europe/Berlin",
            "SPIN_RNG": random.Random(1234),
        }
        config.update(overrides)
        return create_app(config)

    return _create


@pytest.fixture
def app(app_factory):
    return app_factory()


@pytest.fixture
def client(app):
    return app.test_client()

import base64

import pytest
from fastapi.testclient import TestClient

from config import Config
from main import create_app
from simulator.codes import CodeGenerator
from simulator.issuer import TokenIssuer
from simulator.keys import SigningKey
from simulator.service import SimulatorService
from simulator.stores import IdentityStore

ISSUER = "http://localhost:5000/o"
TEST_EMAIL = "test-email@hmcts.net"


def basic_auth(username: str, password: str = "password") -> dict:
    encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {encoded}"}


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def build_service(store, key, access_ttl=3600, code_ttl=600, pin_ttl=1800) -> SimulatorService:
    codes = CodeGenerator(store, code_ttl=code_ttl, pin_ttl=pin_ttl)
    issuer = TokenIssuer(store, key, ISSUER, access_ttl=access_ttl, refresh_ttl=7200)
    return SimulatorService(store, codes, issuer)


@pytest.fixture(scope="session")
def signing_key():
    # RSA generation is slow; one key serves the whole run
    return SigningKey.generate()


@pytest.fixture
def store():
    return IdentityStore()


@pytest.fixture
def service(store, signing_key):
    return build_service(store, signing_key)


@pytest.fixture
def codes(service):
    return service.codes


@pytest.fixture
def issuer(service):
    return service.issuer


@pytest.fixture
def john(service):
    """Seeded account mirroring the simulator's standard test user."""
    service.create_account({
        "id": "oneUserId",
        "email": TEST_EMAIL,
        "forename": "John",
        "surname": "Smith",
        "roles": ["role1", "role2"],
    })
    return service.store.get_by_email(TEST_EMAIL)


@pytest.fixture
def app(service):
    return create_app(Config({"issuer": ISSUER}), service)


@pytest.fixture
def client(app):
    return TestClient(app)

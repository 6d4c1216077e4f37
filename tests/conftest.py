import os

# Must be set before security.py builds its CryptContext.
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SECRET_KEY", "test-secret")

import uuid

import mongomock
import pytest
from fastapi.testclient import TestClient

from main import create_app
from notifications import NotificationHub
from security import TokenIssuer
from services import AccountService, DirectoryService
from settings import Settings
from stores import BusinessStore, UserStore

PASSWORD = "Password!1"


@pytest.fixture(scope="function")
def db():
    """A fresh in-memory database; mongomock clients share state, so names must be unique."""
    return mongomock.MongoClient(tz_aware=True)[f"directory_{uuid.uuid4().hex}"]


@pytest.fixture
def config():
    return Settings(SECRET_KEY="test-secret", LOG_FORMAT="console", FRONTEND_URL="*")


@pytest.fixture
def users(db):
    return UserStore(db)


@pytest.fixture
def businesses(db, users):
    return BusinessStore(db, users)


@pytest.fixture
def hub():
    return NotificationHub()


@pytest.fixture
def tokens(config):
    return TokenIssuer.from_settings(config)


@pytest.fixture
def directory(users, businesses, hub):
    return DirectoryService(users, businesses, hub)


@pytest.fixture
def accounts(users, businesses, tokens):
    return AccountService(users, businesses, tokens)


@pytest.fixture
def make_user(users):
    def _make(name, plan="Standard", role="user"):
        return users.create(name, f"{name.lower()}@example.com", PASSWORD, plan=plan, role=role)

    return _make


@pytest.fixture
def make_business(businesses):
    def _make(owner, name="Corner Bakery", description="Fresh bread daily", category="Food"):
        return businesses.create(owner["id"], name, description, category)

    return _make


@pytest.fixture
def app(db, config):
    return create_app(db=db, config=config)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def signup(client):
    """Sign a user up through the API and return (token, user)."""

    def _signup(name, plan="Standard"):
        resp = client.post(
            "/api/auth/signup",
            json={"name": name, "email": f"{name.lower()}@example.com", "password": PASSWORD, "plan": plan},
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()["data"]
        return data["token"], data["user"]

    return _signup


def auth(token):
    return {"Authorization": f"Bearer {token}"}

# dreamstate/conftest.py
import os

import pytest

os.environ.setdefault("ENV", "test")
os.environ.setdefault("QUEUE_MODE", "inline")

from dreamstate.core.auth import VerifiedIdentity, get_token_verifier  # noqa: E402
from dreamstate.core.documents import InMemoryDocumentStore, get_store, reset_store  # noqa: E402
from dreamstate.core.errors import AuthError  # noqa: E402
from dreamstate.core.metrics import METRICS  # noqa: E402


class FakeVerifier:
    """Accepts tokens of the form `token-<uid>`."""

    def __init__(self):
        self.calls = []

    def verify_token(self, token: str) -> VerifiedIdentity:
        self.calls.append(token)
        if not token.startswith("token-") or len(token) <= len("token-"):
            raise AuthError("Invalid token")
        uid = token[len("token-"):]
        return VerifiedIdentity(uid=uid, claims={"sub": uid})


def bearer(uid: str) -> dict:
    return {"Authorization": f"Bearer token-{uid}"}


@pytest.fixture
def auth_headers():
    """Build Authorization headers the fake verifier accepts."""
    return bearer


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    """Each test starts with empty metric series."""
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def app(store, verifier):
    """Application wired to the in-memory store and the fake verifier."""
    from dreamstate.main import app as fastapi_app

    fastapi_app.dependency_overrides[get_store] = lambda: store
    fastapi_app.dependency_overrides[get_token_verifier] = lambda: verifier
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()
    reset_store()


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)

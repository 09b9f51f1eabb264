"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from app.auth.service import Identity, TokenVerifier
from app.chat.session import ChatService, set_chat_service
from app.chat.store import InMemoryMessageStore
from app.main import app

TEST_SECRET = "test-secret-key"


@pytest.fixture
def verifier():
    return TokenVerifier(TEST_SECRET)


@pytest.fixture
def store():
    return InMemoryMessageStore()


@pytest.fixture
def chat_service(store, verifier):
    """A ChatService on an in-memory store, installed as the app's service."""
    service = ChatService(store, verifier)
    set_chat_service(service)
    yield service
    set_chat_service(None)


@pytest.fixture
def token_for(verifier):
    """Build a signed token: token_for("u1", "Alice")."""
    def _token_for(user_id: str, name: str = "") -> str:
        return verifier.issue_token(Identity(user_id=user_id, name=name or user_id.upper()))
    return _token_for


@pytest.fixture
def api_client(chat_service):
    """Provide a TestClient for the main FastAPI app.

    Entered as a context manager so every WebSocket in a test shares one
    event loop, the way connections share one loop in production.
    """
    with TestClient(app) as client:
        yield client

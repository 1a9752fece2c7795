"""
Shared test fixtures: in-memory database, HTTP client, bearer tokens and
fakes for the OpenAI client, vector search and blob storage.
"""

import os
import uuid
from datetime import datetime, timedelta
from typing import AsyncGenerator

import httpx
import jwt
import openai
import pytest
from httpx import ASGITransport, AsyncClient

# Configure test environment BEFORE importing app
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-the-suite-0123456789"
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["ORCHESTRATOR_FILE_DELAY_SECONDS"] = "0"
os.environ["DOWNSTREAM_FUNCTIONS_URL"] = ""
os.environ["DEBUG"] = "false"

from app.core.config import settings
from app.db.database import Base, SessionLocal, engine
from app.db import models  # noqa: F401  registers the mappers
from app.main import app
from app.services.openai_service import openai_service
from app.services.s3_service import s3_service
from app.services.vector_search_service import vector_search_service

EMBEDDING = [0.01] * 1536


# =============================================================================
# Core Fixtures
# =============================================================================

@pytest.fixture(scope="function", autouse=True)
def setup_test_database():
    """Create database tables before each test and drop them after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


def make_token(subject, expires_in: int = 3600, audience: str = "authenticated", secret: str = None) -> str:
    payload = {
        "sub": str(subject),
        "aud": audience,
        "exp": datetime.utcnow() + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, secret or settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
def auth_headers(user_id):
    return {"Authorization": f"Bearer {make_token(user_id)}"}


# =============================================================================
# OpenAI fake
# =============================================================================

def connection_error() -> openai.APIConnectionError:
    return openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))


class FakeLlm:
    """
    Stands in for the blocking SDK calls on ``openai_service``.

    Replies are registered against a marker string; the first marker found in
    the request's messages wins. Requests with no matching marker fail with a
    connection error, which the service treats like an outage.
    """

    def __init__(self):
        self.handlers = []
        self.calls = []
        self.embed_calls = []
        self.failing_models = set()
        self.failing_embed_markers = []

    def on(self, marker: str, reply) -> None:
        self.handlers.append((marker, reply))

    def calls_matching(self, marker: str):
        return [c for c in self.calls if marker in c["prompt"]]

    def complete(self, model, messages, max_tokens, temperature, json_mode):
        prompt = "\n".join(m["content"] for m in messages)
        self.calls.append({
            "model": model,
            "messages": messages,
            "prompt": prompt,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "json_mode": json_mode,
        })
        if model in self.failing_models:
            raise connection_error()
        for marker, reply in self.handlers:
            if marker in prompt:
                if isinstance(reply, Exception):
                    raise reply
                return reply(model, messages) if callable(reply) else reply
        raise connection_error()

    def embed(self, model, text):
        self.embed_calls.append({"model": model, "text": text})
        if any(marker in text for marker in self.failing_embed_markers):
            raise connection_error()
        return list(EMBEDDING)


@pytest.fixture
def fake_llm(monkeypatch) -> FakeLlm:
    fake = FakeLlm()
    monkeypatch.setattr(openai_service, "_complete", fake.complete)
    monkeypatch.setattr(openai_service, "_embed", fake.embed)
    return fake


# =============================================================================
# Vector search & storage fakes
# =============================================================================

class FakeVectorSearch:
    def __init__(self):
        self.legal_rows = []
        self.user_rows = []
        self.calls = []

    def match_legal_chunks(self, db, embedding, threshold, count, jurisdiction=None):
        self.calls.append(("legal", threshold, count, jurisdiction))
        return list(self.legal_rows)

    def match_user_chunks(self, db, embedding, threshold, count, user_id):
        self.calls.append(("user", threshold, count, user_id))
        return list(self.user_rows)


@pytest.fixture
def fake_vector_search(monkeypatch) -> FakeVectorSearch:
    fake = FakeVectorSearch()
    monkeypatch.setattr(vector_search_service, "match_legal_chunks", fake.match_legal_chunks)
    monkeypatch.setattr(vector_search_service, "match_user_chunks", fake.match_user_chunks)
    return fake


class FakeStorage:
    def __init__(self):
        self.objects = {}

    def upload_bytes(self, s3_key, data, content_type="application/octet-stream", bucket=None):
        self.objects[s3_key] = data
        return s3_key

    def download_bytes(self, s3_key, bucket=None):
        return self.objects[s3_key]

    def list_files(self, prefix="", bucket=None, limit=100):
        return [
            {"file_path": key, "size": len(data), "last_modified": None}
            for key, data in sorted(self.objects.items())
            if key.startswith(prefix)
        ][:limit]

    def generate_download_urls(self, s3_keys, bucket=None, expires_in=3600):
        return {key: f"https://signed.example/{key}" for key in s3_keys}


@pytest.fixture
def fake_storage(monkeypatch) -> FakeStorage:
    fake = FakeStorage()
    for name in ("upload_bytes", "download_bytes", "list_files", "generate_download_urls"):
        monkeypatch.setattr(s3_service, name, getattr(fake, name))
    return fake


@pytest.fixture
def token_for():
    """Token factory for tests that need other users or broken tokens."""
    return make_token

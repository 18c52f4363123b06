"""Shared test fixtures and configuration"""
import os
import itertools
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Settings read at import time
os.environ.pop("REDIS_URL", None)
os.environ.pop("RUNTIME_CONFIG", None)
os.environ.pop("RUNTIME_CONFIG_PATH", None)
os.environ["NODE_ENV"] = "test"
os.environ["GOOGLE_CLOUD_PROJECT"] = "test-project"
os.environ["API_TOKEN_SECRET"] = "test-token-secret-0123456789abcdef"

import pytest
from fastapi.testclient import TestClient
from google.api_core.exceptions import NotFound
from google.cloud import firestore

from app.api import auth as auth_module
from app.api import gateway
from app.core.config import config, Environment, QUOTA_ENFORCE_DEFAULTS
from app.core.rate_limit import InMemoryQuotaCounter
from app.database import db


# =============================================================================
# IN-MEMORY FIRESTORE
# =============================================================================

_auto_ids = itertools.count(1)


def _resolve_sentinels(data: Dict[str, Any]) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    return {k: (now if v is firestore.SERVER_TIMESTAMP else v) for k, v in data.items()}


class FakeSnapshot:
    def __init__(self, doc_id: str, data: Optional[Dict[str, Any]]):
        self.id = doc_id
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self):
        return dict(self._data) if self._data is not None else None


class FakeDocument:
    def __init__(self, store: "FakeFirestore", path: str, doc_id: str):
        self._store = store
        self._path = path
        self.id = doc_id

    @property
    def _docs(self) -> Dict[str, Dict[str, Any]]:
        return self._store.data.setdefault(self._path, {})

    def get(self) -> FakeSnapshot:
        return FakeSnapshot(self.id, self._docs.get(self.id))

    def set(self, data: Dict[str, Any], merge: bool = False) -> None:
        data = _resolve_sentinels(data)
        if merge and self.id in self._docs:
            self._docs[self.id].update(data)
        else:
            self._docs[self.id] = dict(data)

    def update(self, updates: Dict[str, Any]) -> None:
        if self.id not in self._docs:
            raise NotFound(f"No document to update: {self._path}/{self.id}")
        self._docs[self.id].update(_resolve_sentinels(updates))

    def collection(self, name: str) -> "FakeCollection":
        return FakeCollection(self._store, f"{self._path}/{self.id}/{name}")


class FakeQuery:
    def __init__(self, collection: "FakeCollection", filters=None, limit: Optional[int] = None):
        self._collection = collection
        self._filters = list(filters or [])
        self._limit = limit

    def where(self, filter=None):
        return FakeQuery(self._collection, self._filters + [filter], self._limit)

    def limit(self, count: int):
        return FakeQuery(self._collection, self._filters, count)

    def _matches(self, data: Dict[str, Any]) -> bool:
        for f in self._filters:
            value = data.get(f.field_path)
            if f.op_string == "==" and value != f.value:
                return False
            if f.op_string == ">=" and (value is None or value < f.value):
                return False
        return True

    def stream(self):
        results = [
            FakeSnapshot(doc_id, data)
            for doc_id, data in self._collection._docs.items()
            if self._matches(data)
        ]
        return iter(results[: self._limit] if self._limit else results)


class FakeCollection(FakeQuery):
    def __init__(self, store: "FakeFirestore", path: str):
        self._store = store
        self._path = path
        super().__init__(self)

    @property
    def _docs(self) -> Dict[str, Dict[str, Any]]:
        return self._store.data.setdefault(self._path, {})

    def document(self, doc_id: str) -> FakeDocument:
        return FakeDocument(self._store, self._path, doc_id)

    def add(self, data: Dict[str, Any]):
        doc_id = f"auto-{next(_auto_ids)}"
        self.document(doc_id).set(data)
        return None, self.document(doc_id)


class FakeFirestore:
    """Just enough of firestore.Client for the repository layer."""

    def __init__(self):
        self.data: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def collection(self, name: str) -> FakeCollection:
        return FakeCollection(self, name)

    # helpers for assertions
    def doc(self, path: str) -> Optional[Dict[str, Any]]:
        collection, doc_id = path.rsplit("/", 1)
        return self.data.get(collection, {}).get(doc_id)

    def docs(self, collection: str) -> List[Dict[str, Any]]:
        return list(self.data.get(collection, {}).values())

    def put(self, path: str, data: Dict[str, Any]) -> None:
        collection, doc_id = path.rsplit("/", 1)
        self.data.setdefault(collection, {})[doc_id] = dict(data)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def fake_db():
    """Route the repository layer to an in-memory Firestore."""
    fake = FakeFirestore()
    db.use_client(fake)
    yield fake
    db.use_client(None)


@pytest.fixture(autouse=True)
def fresh_quota_counter():
    gateway.quota_tracker.counter = InMemoryQuotaCounter()
    yield gateway.quota_tracker.counter


@pytest.fixture(autouse=True)
def test_environment(monkeypatch):
    """Each test starts from the test environment with no runtime config."""
    monkeypatch.setattr(config, "env", Environment.TEST)
    monkeypatch.setattr(config, "runtime", {})
    monkeypatch.setattr(config, "google_cloud_project", "test-project")
    monkeypatch.setattr(config, "vertex_location", "us-central1")
    monkeypatch.setattr(config, "quota_enforcement", dict(QUOTA_ENFORCE_DEFAULTS))
    for name in (
        "OPENAI_API_KEY",
        "OPENAI_ALTERNATIVE_KEY",
        "DEEPSEEK_API_KEY",
        "GOOGLE_VISION_API_KEY",
        "MISTRAL_API_KEY",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_MONTHLY_PRICE_ID",
        "STRIPE_YEARLY_PRICE_ID",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def provider_keys(monkeypatch):
    """Configure every vendor key."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-openai")
    monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test-deepseek")
    monkeypatch.setenv("GOOGLE_VISION_API_KEY", "vision-test-key")
    monkeypatch.setenv("MISTRAL_API_KEY", "mistral-test-key")


class StaticTokenProvider:
    async def get_token(self) -> str:
        return "ya29.test-access-token"


@pytest.fixture(autouse=True)
def google_token(monkeypatch):
    monkeypatch.setattr(gateway.vendor_client, "token_provider", StaticTokenProvider())


@pytest.fixture
def caller_claims():
    return {"uid": "user-1", "email": "user@example.com"}


@pytest.fixture
def signed_in(monkeypatch, caller_claims):
    """Accept the ID token "valid-token"; return matching request headers."""
    def verify(token, app=None):
        if token != "valid-token":
            raise auth_module.firebase_auth.InvalidIdTokenError("bad token")
        return dict(caller_claims)

    monkeypatch.setattr(auth_module, "get_firebase_app", lambda: None)
    monkeypatch.setattr(auth_module.firebase_auth, "verify_id_token", verify)
    return {"Authorization": "Bearer valid-token"}


@pytest.fixture
def app_client():
    """Test client with the application lifespan running."""
    from main import app

    with TestClient(app) as client:
        yield client

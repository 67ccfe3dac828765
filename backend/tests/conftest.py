import os
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path

# The app reads its settings at import time, so point it at a throwaway
# SQLite file before anything from `medtrainer` is imported.
_DB_DIR = Path(tempfile.mkdtemp(prefix="medtrainer-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR / 'test.db'}"
os.environ["ENV"] = "dev"
os.environ["RATE_LIMIT_MAX"] = "100000"

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from medtrainer import services
from medtrainer.database import engine
from medtrainer.main import app
from medtrainer.models import Role

PASSWORD = "Str0ngPass1"


@dataclass
class Account:
    id: int
    email: str
    token: str

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}


def unique_email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


def login(client: TestClient, email: str, password: str = PASSWORD) -> Account:
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    token = r.json()["access_token"]
    me = client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200, me.text
    return Account(id=me.json()["id"], email=email, token=token)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def make_user(client):
    """Register and log in a fresh `user` account."""
    def _make(**overrides) -> Account:
        payload = {
            "email": unique_email(),
            "password": PASSWORD,
            "name": "Test Doctor",
            "specialization": "Cardiology",
            "experience_years": 5,
        }
        payload.update(overrides)
        r = client.post("/auth/register", json=payload)
        assert r.status_code == 201, r.text
        return login(client, payload["email"], payload["password"])
    return _make


@pytest.fixture
def user(make_user) -> Account:
    return make_user()


@pytest.fixture
def make_admin(client):
    def _make() -> Account:
        email = unique_email("admin")
        with Session(engine) as session:
            services.AuthService(session).register(email, PASSWORD, "Admin", "Administration", role=Role.admin)
        return login(client, email)
    return _make


@pytest.fixture
def admin(make_admin) -> Account:
    return make_admin()


@pytest.fixture
def category(client, admin) -> dict:
    r = client.post(
        "/categories/create",
        json={"name": f"Trauma {uuid.uuid4().hex[:6]}", "description": "Injuries and their treatment"},
        headers=admin.headers,
    )
    assert r.status_code == 201, r.text
    return r.json()


@pytest.fixture
def make_task(client, admin, category):
    """Create a task through the API as `admin`; the correct answer is "Y"."""
    def _make(**overrides) -> dict:
        payload = {
            "title": f"Task {uuid.uuid4().hex[:6]}",
            "description": "First-line treatment for anaphylaxis?",
            "category_id": category["id"],
            "difficulty": "easy",
            "options": ["X", "Y", "Z"],
            "correct_answer": "Y",
            "explanation": "Intramuscular adrenaline is first line.",
        }
        payload.update(overrides)
        r = client.post("/tasks/create", json=payload, headers=admin.headers)
        assert r.status_code == 201, r.text
        return r.json()
    return _make


@pytest.fixture
def task(make_task) -> dict:
    return make_task()

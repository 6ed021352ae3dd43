import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-secret")

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from database import ensure_indexes


@pytest.fixture
def mock_db(monkeypatch):
    database = mongomock.MongoClient()["stackit_test"]
    ensure_indexes(database)
    monkeypatch.setattr(main, "db", database)
    return database


@pytest.fixture
def client(mock_db):
    return TestClient(main.app)


@pytest.fixture
def make_user(client, mock_db):
    """Register a user through the API, optionally promoting it in the db."""

    def _make(username, role="user", reputation=None, password="secret123"):
        res = client.post(
            "/api/auth/register",
            json={"username": username, "email": f"{username}@example.com", "password": password},
        )
        assert res.status_code == 201, res.text
        data = res.json()
        user_id = data["user"]["id"]
        fields = {}
        if role != "user":
            fields["role"] = role
        if reputation is not None:
            fields["reputation"] = reputation
        if fields:
            mock_db["user"].update_one({"_id": ObjectId(user_id)}, {"$set": fields})
        return {
            "id": user_id,
            "username": username,
            "token": data["access_token"],
            "headers": {"Authorization": f"Bearer {data['access_token']}"},
        }

    return _make


@pytest.fixture
def ask(client):
    """Post a question as ``user`` and return the response body."""

    def _ask(user, title="How do I reverse a list in Python?", content="I have a list and want it reversed in place.", tags=("python",)):
        res = client.post(
            "/api/questions",
            json={"title": title, "content": content, "tags": list(tags)},
            headers=user["headers"],
        )
        assert res.status_code == 201, res.text
        return res.json()

    return _ask

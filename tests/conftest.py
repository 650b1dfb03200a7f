import itertools

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from security import hash_password

_counter = itertools.count()

SHIPPING_ADDRESS = {
    "full_name": "Sita Sharma",
    "phone": "9800000000",
    "street": "Ward 4, Baneshwor",
    "city": "Kathmandu",
    "state": "Bagmati",
    "zip_code": "44600",
}


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["studyreuse_test"]
    monkeypatch.setattr(database, "db", mock_db)
    return mock_db


@pytest.fixture
def client(db):
    with TestClient(main.app) as c:
        yield c


def auth(user):
    return {"Authorization": f"Bearer {user['token']}"}


@pytest.fixture
def make_user(client):
    def _make(name=None):
        n = next(_counter)
        name = name or f"Student {n}"
        res = client.post(
            "/api/users/register",
            json={"name": name, "email": f"student{n}@studyreuse.edu", "password": "secret123"},
        )
        assert res.status_code == 200, res.text
        body = res.json()
        return {"id": body["user"]["id"], "name": name, "email": body["user"]["email"], "token": body["token"]}

    return _make


@pytest.fixture
def admin(client, db):
    n = next(_counter)
    email = f"admin{n}@studyreuse.edu"
    db["user"].insert_one(
        {"name": "Admin", "email": email, "password_hash": hash_password("admin123"), "role": "admin", "is_blocked": False}
    )
    res = client.post("/api/admin/login", json={"email": email, "password": "admin123"})
    assert res.status_code == 200, res.text
    body = res.json()
    return {"id": body["user"]["id"], "name": "Admin", "email": email, "token": body["token"]}


@pytest.fixture
def make_item(client, db):
    def _make(owner, approved=True, **fields):
        payload = {"title": "Physics Vol. 1", "price": 100, "category": "Books"}
        payload.update(fields)
        res = client.post("/api/items", json=payload, headers=auth(owner))
        assert res.status_code == 201, res.text
        item = res.json()
        if approved:
            db["item"].update_one({"_id": database.to_object_id(item["id"])}, {"$set": {"is_approved": True}})
            item["is_approved"] = True
        return item

    return _make

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes, get_db
from main import app


@pytest.fixture
def mongo_db():
    database = mongomock.MongoClient(tz_aware=True)["ecocropshare_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(mongo_db):
    app.dependency_overrides[get_db] = lambda: mongo_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def register(client):
    def _register(name, password="secret123", location="Bandung"):
        resp = client.post("/auth/register", json={
            "name": name,
            "email": f"{name.lower()}@example.com",
            "password": password,
            "location": location,
            "favoritePlants": ["tomato"],
        })
        assert resp.status_code == 201, resp.text
        body = resp.json()
        return {
            "id": body["user"]["id"],
            "user": body["user"],
            "headers": {"Authorization": f"Bearer {body['token']}"},
        }

    return _register


@pytest.fixture
def alice(register):
    return register("Alice")


@pytest.fixture
def bob(register):
    return register("Bob")


@pytest.fixture
def carol(register):
    return register("Carol")


@pytest.fixture
def make_post(client):
    def _make_post(owner, title="Tomato seeds"):
        resp = client.post("/posts", json={
            "title": title,
            "type": "seed",
            "exchangeType": "free",
            "quantity": 10,
            "location": "Bandung",
            "description": "Heirloom tomato seeds",
        }, headers=owner["headers"])
        assert resp.status_code == 201, resp.text
        return resp.json()["post"]

    return _make_post


@pytest.fixture
def make_request(client):
    def _make_request(owner, plant="Chili"):
        resp = client.post("/requests", json={
            "plantName": plant,
            "location": "Bogor",
            "reason": "Starting a balcony garden",
        }, headers=owner["headers"])
        assert resp.status_code == 201, resp.text
        return resp.json()["request"]

    return _make_request

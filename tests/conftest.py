import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import auth
import books
from broker import ChatBroker
from database import ensure_indexes, get_db
from main import app
from schemas import BookIn, SessionUser

ADMIN_EMAIL = "admin@example.com"


@pytest.fixture
def mongo():
    database = mongomock.MongoClient()["bookswap_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def broker():
    return ChatBroker()


@pytest.fixture
def client(mongo, broker, monkeypatch):
    monkeypatch.setattr(auth, "ADMIN_EMAIL", ADMIN_EMAIL)
    app.dependency_overrides[get_db] = lambda: mongo
    app.state.broker = broker
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def signup(client):
    """Register a user over HTTP and return {"id", "headers"}; the session cookie is dropped."""
    def _signup(name, email, password="secret123", phone="+10000000000"):
        r = client.post("/api/auth/signup", json={"name": name, "email": email, "phone": phone, "password": password})
        assert r.status_code == 200, r.text
        client.cookies.clear()
        body = r.json()
        return {"id": body["user"]["id"], "headers": {"Authorization": f"Bearer {body['token']}"},
                "user": body["user"]}
    return _signup


@pytest.fixture
def people(signup):
    return {
        "seller": signup("Sam Seller", "seller@example.com"),
        "buyer": signup("Bea Buyer", "buyer@example.com"),
        "stranger": signup("Stan Stranger", "stranger@example.com"),
        "admin": signup("Ada Admin", ADMIN_EMAIL),
    }


@pytest.fixture
def actors():
    """Session identities for tests that call the service functions directly."""
    return {
        name: SessionUser(id=str(ObjectId()), email=f"{name}@example.com", name=name.title(),
                          is_admin=(name == "admin"))
        for name in ("seller", "buyer", "stranger", "admin")
    }


@pytest.fixture
def make_book(mongo):
    def _make_book(seller, seller_price=200, title="Dune"):
        payload = BookIn(title=title, author="Frank Herbert", condition="GOOD",
                         description="Paperback, some shelf wear", seller_price=seller_price)
        return books.create_book(mongo, seller, payload)
    return _make_book

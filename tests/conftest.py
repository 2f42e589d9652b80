import mongomock
import pytest
from fastapi.testclient import TestClient

import accounts
import catalog
from database import ensure_indexes, get_db
from main import app


@pytest.fixture
def db():
    # Fresh in-memory database per test
    database = mongomock.MongoClient().library_test
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(name, limit=None):
        user = accounts.register_user(db, name, f"{name.lower()}@example.com", "secret")
        if limit is not None:
            accounts.set_borrowing_limit(db, user["_id"], limit)
        return db["libraryuser"].find_one({"email": user["email"]})
    return _make


@pytest.fixture
def make_book(db):
    def _make(name="Dune", total=1, price=9.99):
        book = catalog.create_book(db, name, "Frank Herbert", price, total)
        return book["_id"]
    return _make
import pytest

from security import make_token


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, name):
    r = client.post("/users/register", json={"name": name, "email": f"{name.lower()}@example.com", "password": "pw"})
    assert r.status_code == 201
    return r.json()


@pytest.fixture
def admin(client):
    # the first account in an empty store is the admin
    return register(client, "Admin")


@pytest.fixture
def member(client, admin):
    return register(client, "Member")


def create_book(client, admin, total=1):
    r = client.post("/books/admin", headers=auth(admin["token"]),
                    json={"name": "Dune", "author": "Frank Herbert", "price": 9.99, "totalCopies": total})
    assert r.status_code == 201
    return r.json()["book"]


def test_root(client):
    r = client.get("/")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_register_and_login(client, admin):
    assert admin["role"] == "admin"
    assert admin["borrowingLimit"] == 2
    assert "password_hash" not in admin

    r = client.post("/users/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json()["_id"] == admin["_id"]

    r = client.post("/users/login", json={"email": "admin@example.com", "password": "wrong"})
    assert r.status_code == 401


def test_duplicate_email_rejected(client, admin):
    r = client.post("/users/register", json={"name": "Other", "email": "admin@example.com", "password": "pw"})
    assert r.status_code == 400
    assert r.json()["detail"] == "User already exists"


def test_missing_or_bad_token(client, admin):
    assert client.get("/books").status_code == 401
    assert client.get("/books", headers=auth("garbage")).status_code == 401
    forged = "0" + make_token(admin["_id"])
    assert client.get("/books", headers=auth(forged)).status_code == 401


def test_admin_routes_forbidden_for_members(client, member):
    assert member["role"] == "user"
    assert client.get("/users", headers=auth(member["token"])).status_code == 403
    r = client.post("/books/admin", headers=auth(member["token"]),
                    json={"name": "X", "author": "Y", "price": 1})
    assert r.status_code == 403


def test_borrow_and_return_flow(client, admin, member):
    book = create_book(client, admin, total=1)

    r = client.post("/books/borrow", headers=auth(member["token"]), json={"bookId": book["_id"]})
    assert r.status_code == 200
    assert r.json()["book"]["availableCopies"] == 0

    r = client.post("/books/borrow", headers=auth(admin["token"]), json={"bookId": book["_id"]})
    assert r.status_code == 400
    assert r.json()["detail"] == "No copies of this book are available"

    r = client.get("/books/borrowed", headers=auth(member["token"]))
    assert [b["_id"] for b in r.json()] == [book["_id"]]

    r = client.get("/users/borrowing-info", headers=auth(member["token"]))
    assert r.json()["booksBorrowed"] == 1
    assert r.json()["booksRemaining"] == 1

    r = client.post("/books/return", headers=auth(member["token"]), json={"bookId": book["_id"]})
    assert r.status_code == 200
    assert r.json()["book"]["availableCopies"] == 1

    r = client.post("/books/return", headers=auth(member["token"]), json={"bookId": book["_id"]})
    assert r.status_code == 400


def test_borrow_unknown_book_is_404(client, member):
    r = client.post("/books/borrow", headers=auth(member["token"]), json={"bookId": "5f2b6c1e9d3a4b0012345678"})
    assert r.status_code == 404


def test_books_listing_shows_availability(client, admin):
    create_book(client, admin, total=2)
    r = client.get("/books", headers=auth(admin["token"]))
    assert r.status_code == 200
    assert r.json()[0]["availabilityText"] == "2 of 2 available"


def test_update_and_delete_book(client, admin, member):
    book = create_book(client, admin, total=1)

    r = client.put(f"/books/admin/{book['_id']}", headers=auth(admin["token"]), json={"totalCopies": 3})
    assert r.status_code == 200
    assert r.json()["book"]["availableCopies"] == 3

    client.post("/books/borrow", headers=auth(member["token"]), json={"bookId": book["_id"]})
    r = client.delete(f"/books/admin/{book['_id']}", headers=auth(admin["token"]))
    assert r.status_code == 400

    client.post("/books/return", headers=auth(member["token"]), json={"bookId": book["_id"]})
    r = client.delete(f"/books/admin/{book['_id']}", headers=auth(admin["token"]))
    assert r.status_code == 200

    r = client.put(f"/books/admin/{book['_id']}", headers=auth(admin["token"]), json={"name": "Gone"})
    assert r.status_code == 404


def test_invalid_book_payload_is_400(client, admin):
    r = client.post("/books/admin", headers=auth(admin["token"]),
                    json={"name": "Dune", "author": "Frank Herbert", "price": -1})
    assert r.status_code == 400


def test_borrowing_limit_admin(client, admin, member):
    url = f"/users/{member['_id']}/borrowing-limit"

    r = client.put(url, headers=auth(admin["token"]), json={"borrowingLimit": 11})
    assert r.status_code == 400
    assert r.json()["detail"] == "Borrowing limit must be between 1 and 10"

    r = client.put(url, headers=auth(admin["token"]), json={"borrowingLimit": 5})
    assert r.status_code == 200
    assert r.json()["user"]["borrowingLimit"] == 5

    r = client.put("/users/5f2b6c1e9d3a4b0012345678/borrowing-limit", headers=auth(admin["token"]), json={"borrowingLimit": 3})
    assert r.status_code == 404


def test_delete_user_with_loans_refused(client, admin, member):
    book = create_book(client, admin)
    client.post("/books/borrow", headers=auth(member["token"]), json={"bookId": book["_id"]})

    r = client.delete(f"/users/{member['_id']}", headers=auth(admin["token"]))
    assert r.status_code == 400

    client.post("/books/return", headers=auth(member["token"]), json={"bookId": book["_id"]})
    r = client.delete(f"/users/{member['_id']}", headers=auth(admin["token"]))
    assert r.status_code == 200
    assert client.get(f"/users/{member['_id']}", headers=auth(admin["token"])).status_code == 404


def test_user_listing_shows_borrowed_books(client, admin, member):
    book = create_book(client, admin)
    client.post("/books/borrow", headers=auth(member["token"]), json={"bookId": book["_id"]})

    r = client.get("/users", headers=auth(admin["token"]))
    by_id = {u["_id"]: u for u in r.json()}
    assert by_id[member["_id"]]["borrowedBooks"] == [book["_id"]]
    assert by_id[admin["_id"]]["borrowedBooks"] == []


def test_analytics_endpoints(client, admin, member):
    book = create_book(client, admin, total=2)
    client.post("/books/borrow", headers=auth(member["token"]), json={"bookId": book["_id"]})

    r = client.get("/analytics/top-users", headers=auth(member["token"]))
    assert r.status_code == 200
    assert r.json()[0]["_id"] == member["_id"]
    assert r.json()[0]["borrowedBooksCount"] == 1

    r = client.get("/analytics/daily-borrows", headers=auth(member["token"]))
    assert r.status_code == 200
    assert len(r.json()) == 7
    assert r.json()[-1]["count"] == 1


def test_admin_activity_feed(client, admin, member):
    create_book(client, admin)
    r = client.get("/admin/activity", headers=auth(admin["token"]))
    assert r.status_code == 200
    assert "create_book" in {a["type"] for a in r.json()["items"]}

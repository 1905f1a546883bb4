import importlib

import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def client(tmp_path, request, monkeypatch):
    # Reload the api module so its global Library() uses a per-test database
    db_file = str(tmp_path / f"api_test_{request.node.name}.db")
    monkeypatch.setenv("LENDING_DB_FILE", db_file)

    import lending.api as api_module
    importlib.reload(api_module)

    return TestClient(api_module.app)


def _add_book(client, **overrides):
    payload = {"title": "Dune", "author": "Frank Herbert", "isbn": "978-0441013593"}
    payload.update(overrides)
    response = client.post("/books", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def _add_user(client, email="ada@example.com", **overrides):
    payload = {"name": "Ada Lovelace", "email": email, "type": "teacher"}
    payload.update(overrides)
    response = client.post("/users", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["total_books"] == 0


def test_book_crud(client):
    book = _add_book(client, category="Science Fiction")
    assert book["isbn"] == "9780441013593"
    assert book["is_available"] is True

    assert client.get(f"/books/{book['id']}").json()["title"] == "Dune"

    response = client.put(f"/books/{book['id']}", json={"location": "Shelf A3"})
    assert response.status_code == 200
    assert response.json()["location"] == "Shelf A3"

    assert client.delete(f"/books/{book['id']}").status_code == 200
    assert client.get(f"/books/{book['id']}").status_code == 404


def test_book_validation_errors(client):
    response = client.post("/books", json={"title": "Dune", "author": "Frank Herbert", "isbn": "123"})
    assert response.status_code == 422
    assert "ISBN" in response.json()["detail"]

    _add_book(client)
    assert client.post("/books", json={"title": "Again", "author": "X", "isbn": "9780441013593"}).status_code == 409


def test_list_books_pagination_headers(client):
    for i in range(3):
        _add_book(client, title=f"Book {i}", isbn=None)

    response = client.get("/books", params={"limit": 2, "offset": 0})
    assert response.status_code == 200
    assert [b["title"] for b in response.json()] == ["Book 0", "Book 1"]
    assert 'rel="next"' in response.headers["Link"]
    assert response.headers["X-Total-Count"] == "3"

    assert client.get("/books", params={"sort_by": "color"}).status_code == 422


def test_loan_lifecycle_over_http(client):
    book = _add_book(client)
    first_user = _add_user(client)
    second_user = _add_user(client, email="grace@example.com", name="Grace Hopper")

    response = client.post("/loans", json={"book_id": book["id"], "user_id": first_user["id"]})
    assert response.status_code == 201, response.text
    loan = response.json()
    assert loan["status"] == "active"
    assert loan["book"]["title"] == "Dune"
    assert loan["user"]["email"] == "ada@example.com"
    assert loan["is_overdue"] is False
    assert client.get(f"/books/{book['id']}").json()["is_available"] is False

    response = client.post("/loans", json={"book_id": book["id"], "user_id": second_user["id"]})
    assert response.status_code == 409
    assert response.json()["detail"] == "Book is already on loan"

    assert client.delete(f"/books/{book['id']}").status_code == 409
    assert client.delete(f"/users/{first_user['id']}").status_code == 409

    response = client.put(f"/loans/{loan['id']}/return", json={"notes": "on time"})
    assert response.status_code == 200
    assert response.json()["returned"] is True
    assert response.json()["notes"] == "on time"
    assert client.get(f"/books/{book['id']}").json()["is_available"] is True

    assert client.put(f"/loans/{loan['id']}/return").status_code == 409


def test_loan_errors(client):
    book = _add_book(client)
    user = _add_user(client)
    assert client.post("/loans", json={"book_id": "book_missing", "user_id": user["id"]}).status_code == 404
    response = client.post("/loans", json={
        "book_id": book["id"],
        "user_id": user["id"],
        "loan_date": "2030-01-10T00:00:00Z",
        "due_date": "2030-01-01T00:00:00Z",
    })
    assert response.status_code == 422
    assert client.get("/loans/loan_missing").status_code == 404
    assert client.put("/loans/loan_missing/return").status_code == 404


def test_overdue_listing_and_filters(client):
    book = _add_book(client)
    other_book = _add_book(client, title="Emma", author="Jane Austen", isbn=None)
    user = _add_user(client)
    late = client.post("/loans", json={
        "book_id": book["id"],
        "user_id": user["id"],
        "loan_date": "2020-01-01T00:00:00Z",
        "due_date": "2020-01-15T00:00:00Z",
    }).json()
    client.post("/loans", json={"book_id": other_book["id"], "user_id": user["id"]})

    overdue = client.get("/loans/overdue").json()
    assert [l["id"] for l in overdue] == [late["id"]]
    assert overdue[0]["is_overdue"] is True
    assert len(client.get("/loans", params={"overdue": True}).json()) == 1
    assert len(client.get("/loans", params={"status": "active"}).json()) == 2
    assert len(client.get(f"/users/{user['id']}/loans").json()) == 2

    stats = client.get("/stats").json()
    assert stats["loans"]["overdue"] == 1
    assert stats["books"]["on_loan"] == 2


def test_update_and_delete_loan(client):
    book = _add_book(client)
    user = _add_user(client)
    loan = client.post("/loans", json={"book_id": book["id"], "user_id": user["id"]}).json()

    response = client.put(f"/loans/{loan['id']}", json={"notes": "renewed", "due_date": "2099-01-01T00:00:00Z"})
    assert response.status_code == 200
    assert response.json()["due_date"].startswith("2099-01-01")

    assert client.delete(f"/loans/{loan['id']}").status_code == 200
    assert client.get(f"/books/{book['id']}").json()["is_available"] is True
    assert client.delete(f"/loans/{loan['id']}").status_code == 404


def test_users_listing_and_overview(client):
    for i in range(3):
        _add_user(client, email=f"s{i}@example.com", name=f"Student {i}", type="student")
    _add_user(client, email="staff@example.com", name="Staff", type="staff", is_active=False)

    page = client.get("/users", params={"limit": 2, "page": 1, "type": "student"}).json()
    assert page["total"] == 3
    assert page["total_pages"] == 2
    assert len(page["users"]) == 2
    assert "password_hash" not in page["users"][0]

    overview = client.get("/users/stats/overview").json()
    assert overview["total_users"] == 4
    assert overview["inactive_users"] == 1


def test_duplicate_user_and_bad_email(client):
    _add_user(client)
    assert client.post("/users", json={"name": "Ada", "email": "ADA@example.com"}).status_code == 409
    assert client.post("/users", json={"name": "Bob", "email": "bob"}).status_code == 422


def test_popular_books_and_reconcile(client):
    book = _add_book(client)
    user = _add_user(client)
    loan = client.post("/loans", json={"book_id": book["id"], "user_id": user["id"]}).json()
    client.put(f"/loans/{loan['id']}/return")

    popular = client.get("/books/popular").json()
    assert popular == [{"id": book["id"], "title": "Dune", "author": "Frank Herbert", "loan_count": 1}]

    report = client.post("/admin/reconcile").json()
    assert report["changed"] == 0


def test_export_loans_csv(client):
    book = _add_book(client)
    user = _add_user(client)
    loan = client.post("/loans", json={"book_id": book["id"], "user_id": user["id"]}).json()

    response = client.get("/export/loans.csv")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.strip().splitlines()
    assert lines[0].startswith("id,book_id,user_id")
    assert lines[1].startswith(loan["id"])


def test_user_update_rejects_null_required_fields(client):
    user = _add_user(client)

    response = client.put(f"/users/{user['id']}", json={"is_active": None})
    assert response.status_code == 422
    assert "is_active" in response.json()["detail"]

    response = client.put(f"/users/{user['id']}", json={"type": None})
    assert response.status_code == 422
    assert "email" not in response.json()["detail"]

    current = client.get(f"/users/{user['id']}").json()
    assert current["is_active"] is True
    assert current["type"] == "teacher"


def test_user_update_to_taken_email_is_conflict(client):
    _add_user(client)
    other = _add_user(client, email="grace@example.com", name="Grace Hopper")

    response = client.put(f"/users/{other['id']}", json={"email": "ada@example.com"})
    assert response.status_code == 409
    assert response.json()["detail"] == "User with this email already exists"

    response = client.put(f"/users/{other['id']}", json={"department": None})
    assert response.status_code == 200

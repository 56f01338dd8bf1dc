import pytest

import books
from errors import Conflict, Forbidden, NotFound
from schemas import AVAILABLE, SOLD


@pytest.mark.parametrize("seller_price,expected", [(200, 220), (10, 11), (1, 2), (15, 17), (999, 1099)])
def test_platform_price_rounds_up(seller_price, expected):
    assert books.platform_price_for(seller_price) == expected


def test_create_book(mongo, actors, make_book):
    book = make_book(actors["seller"], seller_price=200)
    assert book["platform_price"] == 220
    assert book["status"] == AVAILABLE
    assert book["seller_id"] == actors["seller"].id
    assert "_id" not in book


def test_listing_filters(mongo, actors, make_book):
    make_book(actors["seller"], title="Dune")
    make_book(actors["seller"], title="Children of Dune")
    sold = make_book(actors["stranger"], title="Hyperion")
    books.claim_book(mongo, books.get_book(mongo, sold["id"]))

    assert [b["title"] for b in books.list_books(mongo)] == ["Children of Dune", "Dune"]
    assert [b["title"] for b in books.list_books(mongo, search="children")] == ["Children of Dune"]
    assert [b["title"] for b in books.list_books(mongo, status=SOLD)] == ["Hyperion"]
    assert books.list_books(mongo, seller_id=actors["stranger"].id) == []
    # regex metacharacters are matched literally
    assert books.list_books(mongo, search="Dune.*") == []


def test_only_the_seller_deletes_an_unsold_book(mongo, actors, make_book):
    book = make_book(actors["seller"])
    with pytest.raises(Forbidden):
        books.delete_book(mongo, actors["buyer"], book["id"])

    books.delete_book(mongo, actors["seller"], book["id"])
    with pytest.raises(NotFound):
        books.get_book(mongo, book["id"])


def test_sold_book_cannot_be_deleted(mongo, actors, make_book):
    book = make_book(actors["seller"])
    books.claim_book(mongo, books.get_book(mongo, book["id"]))
    with pytest.raises(Conflict):
        books.delete_book(mongo, actors["seller"], book["id"])


def test_claim_is_single_winner(mongo, actors, make_book):
    book = books.get_book(mongo, make_book(actors["seller"])["id"])
    assert books.claim_book(mongo, book)["status"] == SOLD
    with pytest.raises(Conflict):
        books.claim_book(mongo, book)

    books.release_book(mongo, book["_id"])
    assert books.get_book(mongo, str(book["_id"]))["status"] == AVAILABLE


def test_books_over_http(client, people):
    r = client.post("/api/books", headers=people["seller"]["headers"], json={
        "title": "Piranesi", "author": "Susanna Clarke", "condition": "NEW",
        "description": "Unread", "seller_price": 300,
    })
    assert r.status_code == 200
    book = r.json()["book"]
    assert book["platform_price"] == 330

    assert [b["id"] for b in client.get("/api/books?search=piran").json()["books"]] == [book["id"]]

    r = client.post("/api/books", headers=people["seller"]["headers"], json={
        "title": "Piranesi", "author": "Susanna Clarke", "condition": "MINT",
        "description": "Unread", "seller_price": 300,
    })
    assert r.status_code == 422
    assert r.json()["detail"]["code"] == "validation_error"

    r = client.delete(f"/api/books/{book['id']}", headers=people["buyer"]["headers"])
    assert r.status_code == 403
    r = client.delete(f"/api/books/{book['id']}", headers=people["seller"]["headers"])
    assert r.json() == {"success": True}
    assert client.get(f"/api/books/{book['id']}").status_code == 404

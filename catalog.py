"""
Book catalog: create, update and delete titles, and render them for the API.

Copy counters follow one rule: ``available_copies`` plus the number of active
loans equals ``total_copies``. Writes that depend on the counters are made
conditional on the values that were read, so a borrow landing in between
turns the write into a Conflict instead of corrupting the counts.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, iso, now_utc, object_id
from errors import Conflict, NotFound
from schemas import Activity, Book

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "author", "price")


def get_book_document(db: Database, book_id) -> dict:
    book = db["book"].find_one({"_id": object_id(book_id, "Book")})
    if not book:
        raise NotFound("Book not found")
    return book


def _loans_by_book(db: Database, book_ids: List) -> Dict:
    grouped = defaultdict(list)
    cursor = db["loan"].find({"book_id": {"$in": book_ids}}).sort("borrowed_at", 1)
    for loan in cursor:
        grouped[loan["book_id"]].append(loan)
    return grouped


def public_book(book: dict, loans: Optional[List[dict]] = None) -> dict:
    loans = loans or []
    return {
        "_id": str(book["_id"]),
        "name": book["name"],
        "author": book["author"],
        "price": book["price"],
        "totalCopies": book["total_copies"],
        "availableCopies": book["available_copies"],
        "borrowedCopies": [
            {"user": str(loan["user_id"]), "borrowedDate": iso(loan["borrowed_at"])}
            for loan in loans
        ],
        "createdAt": iso(book.get("created_at")),
        "updatedAt": iso(book.get("updated_at")),
    }


def render_books(db: Database, books: List[dict]) -> List[dict]:
    loans = _loans_by_book(db, [b["_id"] for b in books])
    return [public_book(b, loans.get(b["_id"])) for b in books]


def render_book(db: Database, book: dict) -> dict:
    return render_books(db, [book])[0]


def availability_text(book: dict) -> str:
    if book["available_copies"] > 0:
        return f"{book['available_copies']} of {book['total_copies']} available"
    return "Not available"


def list_books_with_availability(db: Database) -> List[dict]:
    books = list(db["book"].find({}).sort("created_at", 1))
    items = []
    for raw, rendered in zip(books, render_books(db, books)):
        rendered["isAvailable"] = raw["available_copies"] > 0
        rendered["availabilityText"] = availability_text(raw)
        items.append(rendered)
    return items


def borrowed_books(db: Database, user_id) -> List[dict]:
    """Books the user currently holds, in the order they were borrowed."""
    book_ids = [loan["book_id"] for loan in db["loan"].find({"user_id": user_id}).sort("borrowed_at", 1)]
    if not book_ids:
        return []
    by_id = {b["_id"]: b for b in db["book"].find({"_id": {"$in": book_ids}})}
    return render_books(db, [by_id[bid] for bid in book_ids if bid in by_id])


def create_book(db: Database, name: str, author: str, price: float, total_copies: int = 1, actor_id: Optional[str] = None) -> dict:
    book = Book(name=name, author=author, price=price, total_copies=total_copies, available_copies=total_copies)
    book_id = create_document(db, "book", book)
    create_document(db, "activity", Activity(type="create_book", user_id=actor_id, meta={"book_id": str(book_id)}))
    logger.info("Book %s created with %d copies", book_id, total_copies)
    return render_book(db, db["book"].find_one({"_id": book_id}))


def update_book(db: Database, book_id, fields: dict, actor_id: Optional[str] = None) -> dict:
    """Apply a partial update.

    A new ``total_copies`` keeps the loans currently out and recomputes
    ``available_copies`` from them, clamped at zero when the new total is
    smaller than what is out. The loans are counted rather than inferred from
    the counters, which stop adding up once an earlier shrink was clamped.
    """
    book = get_book_document(db, book_id)
    update = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS and v is not None}
    guard = {"_id": book["_id"]}

    total = fields.get("total_copies")
    if total is not None:
        on_loan = db["loan"].count_documents({"book_id": book["_id"]})
        update["total_copies"] = total
        update["available_copies"] = max(0, total - on_loan)
        guard["total_copies"] = book["total_copies"]
        guard["available_copies"] = book["available_copies"]

    update["updated_at"] = now_utc()
    updated = db["book"].find_one_and_update(guard, {"$set": update}, return_document=ReturnDocument.AFTER)
    if updated is None:
        if db["book"].count_documents({"_id": book["_id"]}) == 0:
            raise NotFound("Book not found")
        logger.warning("Copy counts of book %s changed during update", book["_id"])
        raise Conflict("Book was modified by another request, please retry")

    create_document(db, "activity", Activity(type="update_book", user_id=actor_id, meta={"book_id": str(book["_id"])}))
    logger.info("Book %s updated: %s", book["_id"], sorted(k for k in update if k != "updated_at"))
    return render_book(db, updated)


def delete_book(db: Database, book_id, actor_id: Optional[str] = None) -> None:
    book = get_book_document(db, book_id)
    if book["available_copies"] < book["total_copies"]:
        raise Conflict("Cannot delete book that is currently borrowed")

    res = db["book"].delete_one({"_id": book["_id"], "available_copies": book["total_copies"], "total_copies": book["total_copies"]})
    if res.deleted_count == 0:
        if db["book"].count_documents({"_id": book["_id"]}) == 0:
            raise NotFound("Book not found")
        raise Conflict("Cannot delete book that is currently borrowed")

    create_document(db, "activity", Activity(type="delete_book", user_id=actor_id, meta={"book_id": str(book["_id"])}))
    logger.info("Book %s deleted", book["_id"])

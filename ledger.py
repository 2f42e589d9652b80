"""
Borrow and return transitions between a user and a book.

An active loan is a single document in the ``loan`` collection, unique per
(user_id, book_id). Two counters sit beside it and are only moved with
guarded atomic updates:

* ``book.available_copies`` is decremented only while it is above zero, so
  the last copy cannot be handed out twice;
* ``libraryuser.active_loans`` is incremented only while it is below the
  user's ``borrowing_limit``.

A borrow takes the user slot, then the copy, then writes the loan. If a later
step fails, the earlier ones are released before the Conflict is raised. A
return removes the loan first, so only one of two racing returns gets to give
the copy back.
"""
import logging
from datetime import datetime
from typing import Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from accounts import get_user_document
from catalog import get_book_document, render_book
from database import create_document, now_utc
from errors import Conflict
from schemas import Activity, Loan

logger = logging.getLogger(__name__)

NO_COPIES = "No copies of this book are available"
ALREADY_BORROWED = "User has already borrowed this book"
NOT_BORROWED = "User has not borrowed this book"


def _limit_message(limit: int) -> str:
    return f"User cannot borrow more than {limit} books"


def _take_user_slot(db: Database, user: dict, now: datetime) -> bool:
    limit = user["borrowing_limit"]
    taken = db["libraryuser"].find_one_and_update(
        {"_id": user["_id"], "borrowing_limit": limit, "active_loans": {"$lt": limit}},
        {"$inc": {"active_loans": 1}, "$set": {"updated_at": now}},
    )
    return taken is not None


def _release_user_slot(db: Database, user_id, now: datetime) -> None:
    db["libraryuser"].update_one(
        {"_id": user_id, "active_loans": {"$gt": 0}},
        {"$inc": {"active_loans": -1}, "$set": {"updated_at": now}},
    )


def _take_copy(db: Database, book_id, now: datetime) -> Optional[dict]:
    return db["book"].find_one_and_update(
        {"_id": book_id, "available_copies": {"$gt": 0}},
        {"$inc": {"available_copies": -1}, "$set": {"updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )


def _release_copy(db: Database, book_id, now: datetime) -> None:
    # Never push available past total minus the loans still out; an admin may
    # have shrunk total_copies below the number on loan.
    book = db["book"].find_one({"_id": book_id})
    if book is None:
        return
    remaining = db["loan"].count_documents({"book_id": book_id})
    db["book"].update_one(
        {"_id": book_id, "available_copies": {"$lt": book["total_copies"] - remaining}},
        {"$inc": {"available_copies": 1}, "$set": {"updated_at": now}},
    )


def borrow_book(db: Database, user_id, book_id, now: Optional[datetime] = None) -> dict:
    """Lend one copy of a book to a user and return the updated book.

    Checks run in a fixed order and the first failure wins: user exists, book
    exists, a copy is available, the user is under their limit, the user does
    not already hold this title.
    """
    now = now or now_utc()
    user = get_user_document(db, user_id)
    book = get_book_document(db, book_id)

    if book["available_copies"] <= 0:
        raise Conflict(NO_COPIES)
    limit = user["borrowing_limit"]
    if db["loan"].count_documents({"user_id": user["_id"]}) >= limit:
        raise Conflict(_limit_message(limit))
    if db["loan"].count_documents({"user_id": user["_id"], "book_id": book["_id"]}) > 0:
        raise Conflict(ALREADY_BORROWED)

    if not _take_user_slot(db, user, now):
        current = db["libraryuser"].find_one({"_id": user["_id"]}) or user
        logger.warning(
            "No borrowing slot for user %s: counter %s, loans %d, limit %s",
            user["_id"], current.get("active_loans"),
            db["loan"].count_documents({"user_id": user["_id"]}), current.get("borrowing_limit"),
        )
        raise Conflict(_limit_message(limit))

    if _take_copy(db, book["_id"], now) is None:
        _release_user_slot(db, user["_id"], now)
        logger.warning("Book %s ran out of copies while user %s was borrowing", book["_id"], user["_id"])
        raise Conflict(NO_COPIES)

    try:
        create_document(db, "loan", Loan(user_id=user["_id"], book_id=book["_id"], borrowed_at=now))
    except DuplicateKeyError:
        _release_copy(db, book["_id"], now)
        _release_user_slot(db, user["_id"], now)
        raise Conflict(ALREADY_BORROWED)

    create_document(db, "activity", Activity(type="borrow", user_id=str(user["_id"]), meta={"book_id": str(book["_id"])}))
    logger.info("User %s borrowed book %s", user["_id"], book["_id"])
    return render_book(db, db["book"].find_one({"_id": book["_id"]}))


def return_book(db: Database, user_id, book_id, now: Optional[datetime] = None) -> dict:
    """Give back the user's copy of a book and return the updated book."""
    now = now or now_utc()
    user = get_user_document(db, user_id)
    book = get_book_document(db, book_id)

    loan = db["loan"].find_one_and_delete({"user_id": user["_id"], "book_id": book["_id"]})
    if loan is None:
        raise Conflict(NOT_BORROWED)

    _release_user_slot(db, user["_id"], now)
    _release_copy(db, book["_id"], now)

    create_document(db, "activity", Activity(type="return", user_id=str(user["_id"]), meta={"book_id": str(book["_id"])}))
    logger.info("User %s returned book %s", user["_id"], book["_id"])
    return render_book(db, db["book"].find_one({"_id": book["_id"]}))

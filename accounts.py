"""
User accounts: registration, login and the admin operations on users.

The admin role is fixed when the account is created. The first account in an
empty store, or the account registered with ``settings.admin_email``, becomes
an admin; everyone else is a regular user.
"""
import logging
from collections import defaultdict
from typing import Dict, List

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalog import borrowed_books
from config import settings
from database import create_document, iso, now_utc, object_id
from errors import Conflict, NotFound, Unauthorized, ValidationFailed
from schemas import MAX_BORROWING_LIMIT, MIN_BORROWING_LIMIT, Activity, LibraryUser
from security import hash_password, make_token, verify_password

logger = logging.getLogger(__name__)


def get_user_document(db: Database, user_id) -> dict:
    user = db["libraryuser"].find_one({"_id": object_id(user_id, "User")})
    if not user:
        raise NotFound("User not found")
    return user


def _borrowed_book_ids(db: Database, user_ids: List) -> Dict:
    grouped = defaultdict(list)
    for loan in db["loan"].find({"user_id": {"$in": user_ids}}).sort("borrowed_at", 1):
        grouped[loan["user_id"]].append(str(loan["book_id"]))
    return grouped


def public_user(user: dict, borrowed: List[str]) -> dict:
    return {
        "_id": str(user["_id"]),
        "name": user["name"],
        "email": user["email"],
        "role": user.get("role", "user"),
        "borrowingLimit": user["borrowing_limit"],
        "borrowedBooks": borrowed,
        "createdAt": iso(user.get("created_at")),
        "updatedAt": iso(user.get("updated_at")),
    }


def render_user(db: Database, user: dict) -> dict:
    return public_user(user, _borrowed_book_ids(db, [user["_id"]]).get(user["_id"], []))


def _with_token(db: Database, user: dict) -> dict:
    data = render_user(db, user)
    data["token"] = make_token(str(user["_id"]))
    return data


def normalize_email(email: str) -> str:
    return email.strip().lower()


def register_user(db: Database, name: str, email: str, password: str) -> dict:
    email = normalize_email(email)
    if db["libraryuser"].find_one({"email": email}):
        raise Conflict("User already exists")
    if db["libraryuser"].find_one({"name": name}):
        raise Conflict("Name already taken")

    first_user = db["libraryuser"].count_documents({}) == 0
    role = "admin" if first_user or email == normalize_email(settings.admin_email) else "user"
    user = LibraryUser(
        name=name,
        email=email,
        password_hash=hash_password(password),
        role=role,
        borrowing_limit=settings.default_borrowing_limit,
    )
    try:
        uid = create_document(db, "libraryuser", user)
    except DuplicateKeyError:
        raise Conflict("User already exists")

    create_document(db, "activity", Activity(type="register", user_id=str(uid), meta={"email": email}))
    logger.info("Registered user %s with role %s", uid, role)
    return _with_token(db, db["libraryuser"].find_one({"_id": uid}))


def login_user(db: Database, email: str, password: str) -> dict:
    user = db["libraryuser"].find_one({"email": normalize_email(email)})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise Unauthorized("Invalid email or password")
    create_document(db, "activity", Activity(type="login", user_id=str(user["_id"])))
    return _with_token(db, user)


def list_users(db: Database) -> List[dict]:
    users = list(db["libraryuser"].find({}).sort("created_at", 1))
    borrowed = _borrowed_book_ids(db, [u["_id"] for u in users])
    return [public_user(u, borrowed.get(u["_id"], [])) for u in users]


def get_user(db: Database, user_id) -> dict:
    return render_user(db, get_user_document(db, user_id))


def set_borrowing_limit(db: Database, user_id, borrowing_limit: int, actor_id=None) -> dict:
    if not MIN_BORROWING_LIMIT <= borrowing_limit <= MAX_BORROWING_LIMIT:
        raise ValidationFailed(f"Borrowing limit must be between {MIN_BORROWING_LIMIT} and {MAX_BORROWING_LIMIT}")
    user = get_user_document(db, user_id)

    # a limit below the loans already held would break |borrowed| <= limit
    updated = db["libraryuser"].find_one_and_update(
        {"_id": user["_id"], "active_loans": {"$lte": borrowing_limit}},
        {"$set": {"borrowing_limit": borrowing_limit, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        current = get_user_document(db, user["_id"])
        raise ValidationFailed(f"User currently has {current['active_loans']} borrowed books")

    create_document(db, "activity", Activity(type="update_limit", user_id=actor_id, meta={"user_id": str(user["_id"]), "borrowing_limit": borrowing_limit}))
    logger.info("Borrowing limit of user %s set to %d", user["_id"], borrowing_limit)
    return render_user(db, updated)


def delete_user(db: Database, user_id, actor_id=None) -> None:
    user = get_user_document(db, user_id)
    if user["active_loans"] > 0 or db["loan"].count_documents({"user_id": user["_id"]}) > 0:
        raise Conflict("Cannot delete user with borrowed books")

    removed = db["libraryuser"].find_one_and_delete({"_id": user["_id"], "active_loans": 0})
    if removed is None:
        get_user_document(db, user["_id"])
        raise Conflict("Cannot delete user with borrowed books")

    create_document(db, "activity", Activity(type="delete_user", user_id=actor_id, meta={"user_id": str(user["_id"])}))
    logger.info("User %s deleted", user["_id"])


def borrowing_info(db: Database, user: dict) -> dict:
    books = borrowed_books(db, user["_id"])
    return {
        "borrowedBooks": books,
        "borrowingLimit": user["borrowing_limit"],
        "booksBorrowed": len(books),
        "booksRemaining": user["borrowing_limit"] - len(books),
    }

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, ConfigDict, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

import accounts
import analytics
import catalog
import ledger
from config import settings
from database import ensure_indexes, get_db, object_id
from errors import Forbidden, LibraryError, Unauthorized
from security import parse_token

logging.basicConfig(level=settings.log_level,
                    format="%(asctime)s %(levelname)s %(name)s - %(message)s")
logger = logging.getLogger("library")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(get_db())
    except PyMongoError as e:
        logger.error("Could not create indexes: %s", e)
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/users/login")


# Error translation
@app.exception_handler(LibraryError)
def library_error_handler(request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
def validation_error_handler(request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        messages.append(f"{field}: {err.get('msg')}" if field else err.get("msg"))
    return JSONResponse(status_code=400, content={"detail": "; ".join(messages) or "Invalid request"})


@app.exception_handler(PyMongoError)
def store_error_handler(request, exc: PyMongoError):
    logger.exception("Database failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Database error"})


# Auth
def get_current_user(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> dict:
    uid = parse_token(token)
    if not uid:
        raise Unauthorized("Not authorized, token failed")
    user = db["libraryuser"].find_one({"_id": object_id(uid, "User")})
    if not user:
        raise Unauthorized("Not authorized, user not found")
    return user


def require_admin(current: dict = Depends(get_current_user)) -> dict:
    if current.get("role") != "admin":
        raise Forbidden("Not authorized as admin")
    return current


# Payloads
class RegisterPayload(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)


class LoginPayload(BaseModel):
    email: str
    password: str


class BorrowingLimitPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    borrowing_limit: int = Field(..., alias="borrowingLimit")


class CreateBookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    total_copies: int = Field(1, ge=1, alias="totalCopies")


class UpdateBookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(None, min_length=1)
    author: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    total_copies: Optional[int] = Field(None, ge=1, alias="totalCopies")


class BookRefPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    book_id: str = Field(..., alias="bookId")


# Health
@app.get("/")
def root():
    return {"name": settings.app_name, "status": "ok"}


@app.get("/health")
def health(db: Database = Depends(get_db)):
    response = {"backend": "running", "database": "unavailable"}
    try:
        response["collections"] = db.list_collection_names()
        response["database"] = "connected"
    except PyMongoError as e:
        response["database"] = f"error: {str(e)[:80]}"
    return response


# Users
@app.post("/users/register", status_code=201)
def register(payload: RegisterPayload, db: Database = Depends(get_db)):
    return accounts.register_user(db, payload.name, payload.email, payload.password)


@app.post("/users/login")
def login(payload: LoginPayload, db: Database = Depends(get_db)):
    return accounts.login_user(db, payload.email, payload.password)


@app.get("/users/borrowing-info")
def borrowing_info(current=Depends(get_current_user), db: Database = Depends(get_db)):
    return accounts.borrowing_info(db, current)


@app.get("/users")
def list_users(admin=Depends(require_admin), db: Database = Depends(get_db)):
    return accounts.list_users(db)


@app.get("/users/{user_id}")
def get_user(user_id: str, admin=Depends(require_admin), db: Database = Depends(get_db)):
    return accounts.get_user(db, user_id)


@app.put("/users/{user_id}/borrowing-limit")
def update_borrowing_limit(user_id: str, payload: BorrowingLimitPayload, admin=Depends(require_admin), db: Database = Depends(get_db)):
    user = accounts.set_borrowing_limit(db, user_id, payload.borrowing_limit, actor_id=str(admin["_id"]))
    return {"message": "User borrowing limit updated successfully", "user": user}


@app.delete("/users/{user_id}")
def delete_user(user_id: str, admin=Depends(require_admin), db: Database = Depends(get_db)):
    accounts.delete_user(db, user_id, actor_id=str(admin["_id"]))
    return {"message": "User deleted successfully"}


# Books
@app.get("/books")
def list_books(current=Depends(get_current_user), db: Database = Depends(get_db)):
    return catalog.list_books_with_availability(db)


@app.get("/books/borrowed")
def my_borrowed_books(current=Depends(get_current_user), db: Database = Depends(get_db)):
    return catalog.borrowed_books(db, current["_id"])


@app.post("/books/admin", status_code=201)
def create_book(payload: CreateBookPayload, admin=Depends(require_admin), db: Database = Depends(get_db)):
    book = catalog.create_book(db, payload.name, payload.author, payload.price, payload.total_copies, actor_id=str(admin["_id"]))
    return {"message": "Book created successfully", "book": book}


@app.put("/books/admin/{book_id}")
def update_book(book_id: str, payload: UpdateBookPayload, admin=Depends(require_admin), db: Database = Depends(get_db)):
    fields = payload.model_dump(exclude_unset=True)
    book = catalog.update_book(db, book_id, fields, actor_id=str(admin["_id"]))
    return {"message": "Book updated successfully", "book": book}


@app.delete("/books/admin/{book_id}")
def delete_book(book_id: str, admin=Depends(require_admin), db: Database = Depends(get_db)):
    catalog.delete_book(db, book_id, actor_id=str(admin["_id"]))
    return {"message": "Book deleted successfully"}


@app.post("/books/borrow")
def borrow_book(payload: BookRefPayload, current=Depends(get_current_user), db: Database = Depends(get_db)):
    book = ledger.borrow_book(db, current["_id"], payload.book_id)
    return {"message": "Book borrowed successfully", "book": book}


@app.post("/books/return")
def return_book(payload: BookRefPayload, current=Depends(get_current_user), db: Database = Depends(get_db)):
    book = ledger.return_book(db, current["_id"], payload.book_id)
    return {"message": "Book returned successfully", "book": book}


# Analytics
@app.get("/analytics/top-users")
def top_users(current=Depends(get_current_user), db: Database = Depends(get_db)):
    return analytics.top_borrowers(db)


@app.get("/analytics/daily-borrows")
def daily_borrows(current=Depends(get_current_user), db: Database = Depends(get_db)):
    return analytics.daily_borrow_counts(db)


# Simple activity feed for admin
@app.get("/admin/activity")
def admin_activity(admin=Depends(require_admin), db: Database = Depends(get_db)):
    items = list(db["activity"].find({}).sort("created_at", -1).limit(100))
    for a in items:
        a["_id"] = str(a["_id"])
    return {"items": items}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)

"""
Database Schemas for the Library Lending API

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercase of the class name (e.g., Book -> "book").

Active loans are stored once, in the "loan" collection. A user's borrowed books
and a book's borrowed copies are both read back from there.
"""
from datetime import datetime
from typing import Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field

MIN_BORROWING_LIMIT = 1
MAX_BORROWING_LIMIT = 10


class LibraryUser(BaseModel):
    name: str = Field(..., description="Unique display name")
    email: str = Field(..., description="Unique email address")
    password_hash: str = Field(..., description="Hashed password")
    role: str = Field("user", description="Role: user or admin")
    borrowing_limit: int = Field(2, ge=MIN_BORROWING_LIMIT, le=MAX_BORROWING_LIMIT)
    active_loans: int = Field(0, ge=0, description="Counter of loans currently held")


class Book(BaseModel):
    name: str
    author: str
    price: float = Field(..., ge=0)
    total_copies: int = Field(1, ge=1)
    available_copies: int = Field(1, ge=0)


class Loan(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    user_id: ObjectId
    book_id: ObjectId
    borrowed_at: datetime


class Activity(BaseModel):
    user_id: Optional[str] = None
    type: str = Field(..., description="register, login, borrow, return, create_book, update_book, delete_book, update_limit, delete_user")
    meta: dict = Field(default_factory=dict)

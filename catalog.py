"""
Catalog Store: book records keyed by identifier.

The borrowed flag is written only through set_borrowed_flag, which the
ledger engine calls inside its transaction.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

import database
from database import BOOKS, LEDGER, Session, TransactionBoundary
from errors import FailureReason, NotFound, PreconditionFailed
from schemas import Book, BookMetadata

logger = logging.getLogger("library.catalog")

MIN_RATING = 1.0
MAX_RATING = 5.0
BY_TITLE = [("title", 1)]


def to_book(doc: Optional[Dict[str, Any]]) -> Optional[Book]:
    if not doc:
        return None
    data = dict(doc)
    data["identifier"] = data.pop("_id")
    return Book(**data)


def _to_document(book: Book) -> Dict[str, Any]:
    data = book.model_dump(mode="json")
    data["_id"] = data.pop("identifier")
    return data


def _contains(term: str) -> Dict[str, str]:
    return {"$regex": re.escape(term), "$options": "i"}


def _exactly(term: str) -> Dict[str, str]:
    return {"$regex": f"^{re.escape(term)}$", "$options": "i"}


class CatalogStore:
    def __init__(self, boundary: TransactionBoundary):
        self.boundary = boundary
        self.db = boundary.db

    def _books(self, query: Optional[dict] = None) -> List[Book]:
        with self.boundary.reader():
            docs = database.get_documents(self.db, BOOKS, query, sort=BY_TITLE)
        return [to_book(d) for d in docs]

    # Lookups

    def find_by_identifier(self, identifier: str, session: Optional[Session] = None) -> Optional[Book]:
        if session is not None:
            return to_book(session.find_one(BOOKS, {"_id": identifier}))
        with self.boundary.reader() as reader:
            return to_book(reader.find_one(BOOKS, {"_id": identifier}))

    def get(self, identifier: str, session: Optional[Session] = None) -> Book:
        book = self.find_by_identifier(identifier, session)
        if book is None:
            raise NotFound(f"Book not found: {identifier}", FailureReason.BOOK_NOT_FOUND)
        return book

    def list_books(self) -> List[Book]:
        return self._books()

    def search(self, term: str, genre: Optional[str] = None) -> List[Book]:
        """Case-insensitive match on title, author or identifier, optionally within one genre."""
        if not term:
            return self.find_by_genre(genre) if genre else self.list_books()
        query = {"$or": [
            {"title": _contains(term)},
            {"author": _contains(term)},
            {"_id": _contains(term)},
        ]}
        if genre:
            query["genre"] = _exactly(genre)
        return self._books(query)

    def find_by_genre(self, genre: str) -> List[Book]:
        return self._books({"genre": _exactly(genre)})

    def list_genres(self) -> List[str]:
        with self.boundary.reader():
            genres = self.db[BOOKS].distinct("genre")
        return sorted(g for g in genres if isinstance(g, str) and g.strip())

    def available_books(self) -> List[Book]:
        return self._books({"borrowed": False})

    def count_by_status(self, borrowed: bool) -> int:
        with self.boundary.reader() as reader:
            return reader.count(BOOKS, {"borrowed": borrowed})

    # Mutations

    def create(self, book: Book) -> Book:
        logger.info("create book | identifier=%s title=%s", book.identifier, book.title)
        # A new entry is never on loan.
        book = book.model_copy(update={"borrowed": False})
        try:
            with self.boundary.reader():
                database.create_document(self.db, BOOKS, _to_document(book))
        except DuplicateKeyError:
            raise PreconditionFailed(f"Book already exists: {book.identifier}", FailureReason.DUPLICATE_BOOK)
        return self.get(book.identifier)

    def update(self, identifier: str, changes: Dict[str, Any]) -> Book:
        changes = {k: v for k, v in changes.items() if k not in ("identifier", "borrowed", "_id")}
        with self.boundary.transaction() as session:
            current = self.get(identifier, session)
            merged = current.model_copy(update=changes)
            # Re-validate through the model so constraints still hold.
            merged = Book(**merged.model_dump())
            update = {k: v for k, v in _to_document(merged).items() if k in changes}
            if update:
                update["updated_at"] = datetime.now(timezone.utc)
                session.update(BOOKS, {"_id": identifier}, update)
                logger.info("update book | identifier=%s fields=%s", identifier, sorted(changes))
        return self.get(identifier)

    def delete(self, identifier: str) -> None:
        with self.boundary.transaction() as session:
            book = self.get(identifier, session)
            if book.borrowed or session.count(LEDGER, {"book_id": identifier, "is_returned": False}):
                raise PreconditionFailed(f"Book is on loan: {identifier}", FailureReason.BOOK_ON_LOAN)
            session.delete(BOOKS, {"_id": identifier})
        logger.info("delete book | identifier=%s", identifier)

    def set_borrowed_flag(self, identifier: str, borrowed: bool, session: Optional[Session] = None) -> bool:
        """Compare-and-set: succeeds only if the flag currently holds the opposite value."""
        query = {"_id": identifier, "borrowed": not borrowed}
        changes = {"borrowed": borrowed, "updated_at": datetime.now(timezone.utc)}
        if session is not None:
            return session.update(BOOKS, query, changes)
        with self.boundary.reader() as reader:
            return reader.update(BOOKS, query, changes)

    def add_rating(self, identifier: str, rating: float) -> Book:
        if not MIN_RATING <= rating <= MAX_RATING:
            raise PreconditionFailed(
                f"Rating must be between {MIN_RATING} and {MAX_RATING}", FailureReason.INVALID_RATING
            )
        with self.boundary.transaction() as session:
            book = self.get(identifier, session)
            count = book.rating_count + 1
            mean = (book.rating * book.rating_count + rating) / count
            session.update(
                BOOKS,
                {"_id": identifier},
                {"rating": mean, "rating_count": count, "updated_at": datetime.now(timezone.utc)},
            )
        return self.get(identifier)

    def apply_metadata(self, identifier: str, metadata: BookMetadata) -> Book:
        """Fill fields that are still blank from fetched metadata; existing values win."""
        book = self.get(identifier)
        changes = {
            field: value
            for field, value in metadata.model_dump().items()
            if value not in (None, "") and getattr(book, field) in (None, "")
        }
        if not changes:
            return book
        return self.update(identifier, changes)

"""
Shared fixtures: an in-process MongoDB (mongomock), a controllable clock and a
seeded library with twelve books and three members.
"""

from datetime import date, datetime, timedelta

import mongomock
import pytest

from library import Library
from schemas import Book, Member, MemberCategory

T0 = datetime(2025, 1, 1, 9, 0, 0)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def book_id(n: int) -> str:
    return f"978-0-00-{n:06d}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mongo_client():
    return mongomock.MongoClient()


@pytest.fixture
def library(mongo_client, clock):
    """Fresh library: books 1-12, limited member S1, staff member T1, inactive S2."""
    lib = Library.from_client(mongo_client, "library_test", use_transactions=False, clock=clock)
    genres = ["Fiction", "History", "Science"]
    for n in range(1, 13):
        lib.catalog.create(Book(
            identifier=book_id(n),
            title=f"Volume {n:02d}",
            author=f"Author {n % 4}",
            genre=genres[n % 3],
            language="en",
        ))
    lib.members.create(Member(
        identifier="S1", name="Lan Nguyen", category=MemberCategory.LIMITED,
        affiliation="Physics", since=date(2023, 9, 1),
    ))
    lib.members.create(Member(
        identifier="T1", name="Minh Tran", category=MemberCategory.STAFF,
        affiliation="Archives", since=date(2018, 3, 15),
    ))
    lib.members.create(Member(
        identifier="S2", name="Hoa Le", category=MemberCategory.LIMITED,
        affiliation="History", is_active=False,
    ))
    return lib


@pytest.fixture
def check_flags():
    """Assert that every book's borrowed flag matches the open ledger records."""
    def _check(lib: Library) -> None:
        open_books = [r.book_id for r in lib.ledger.active_records()]
        assert len(open_books) == len(set(open_books)), "a book has more than one open record"
        for book in lib.catalog.list_books():
            assert book.borrowed == (book.identifier in open_books), book.identifier
    return _check

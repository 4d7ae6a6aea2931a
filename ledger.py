"""
Ledger Engine: the lending lifecycle of a book.

A ledger record is created OPEN by borrow() and moves to RETURNED through
return_book(); records are never reopened or deleted. The book's borrowed
flag mirrors "an OPEN record exists for this book" and is flipped in the
same transaction as the record write.

Fine rules:
    (1) Loans are due loan_days (default 14) after borrowing
    (2) Each whole day past the due time costs fine_per_day
    (3) A partial day past due costs nothing
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from bson.decimal128 import Decimal128
from pymongo.errors import DuplicateKeyError

from catalog import CatalogStore
from database import LEDGER, TransactionBoundary
from errors import FailureReason, LedgerError, NotFound, PreconditionFailed, StorageError
from members import MemberDirectory
from schemas import LedgerRecord, LedgerStatistics

logger = logging.getLogger("library.ledger")

DEFAULT_LOAN_DAYS = 14
DEFAULT_FINE_PER_DAY = Decimal("5000")
ONE_DAY = timedelta(days=1)
ZERO = Decimal("0")

NEWEST_FIRST = [("borrow_at", -1), ("_id", -1)]
OLDEST_DUE_FIRST = [("due_at", 1), ("_id", 1)]


def utc_now() -> datetime:
    """The canonical clock: naive UTC, whole seconds."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


# Pure fine computation

def whole_days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end, truncated toward zero."""
    delta = end - start
    days = abs(delta) // ONE_DAY
    return days if delta >= timedelta(0) else -days


def comparison_instant(record: LedgerRecord, as_of: datetime) -> datetime:
    if record.is_returned and record.returned_at is not None:
        return record.returned_at
    return as_of


def is_overdue(record: LedgerRecord, as_of: datetime) -> bool:
    return comparison_instant(record, as_of) > record.due_at


def calculate_fine(record: LedgerRecord, as_of: datetime, fine_per_day: Decimal = DEFAULT_FINE_PER_DAY) -> Decimal:
    """
    Fine owed by a record as of a given instant.

    Returned records are judged by their return time, open ones by as_of.
    Only whole overdue days are charged.
    """
    if not is_overdue(record, as_of):
        return ZERO
    overdue_days = whole_days_between(record.due_at, comparison_instant(record, as_of))
    return max(ZERO, Decimal(overdue_days) * Decimal(fine_per_day))


def days_until_due(record: LedgerRecord, as_of: datetime) -> int:
    """Negative once the record is overdue."""
    return whole_days_between(as_of, record.due_at)


# Persistence mapping

def _decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal128):
        return value.to_decimal()
    return Decimal(str(value))


def to_record(doc: Dict[str, Any]) -> LedgerRecord:
    return LedgerRecord(
        record_id=doc["_id"],
        member_id=doc["member_id"],
        book_id=doc["book_id"],
        borrow_at=doc["borrow_at"],
        due_at=doc["due_at"],
        returned_at=doc.get("returned_at"),
        is_returned=doc.get("is_returned", False),
        fine_amount=_decimal(doc.get("fine_amount")),
        notes=doc.get("notes"),
    )


def _to_document(record: LedgerRecord) -> Dict[str, Any]:
    return {
        "_id": record.record_id,
        "member_id": record.member_id,
        "book_id": record.book_id,
        "borrow_at": record.borrow_at,
        "due_at": record.due_at,
        "returned_at": record.returned_at,
        "is_returned": record.is_returned,
        "fine_amount": Decimal128(record.fine_amount),
        "notes": record.notes,
    }


class LedgerEngine:
    """
    Owns the ledger record lifecycle.

    Books and members are referenced by identifier only and read through
    the catalog and member directory inside the same transaction.
    """

    def __init__(
        self,
        boundary: TransactionBoundary,
        catalog: CatalogStore,
        members: MemberDirectory,
        loan_days: int = DEFAULT_LOAN_DAYS,
        fine_per_day: Decimal = DEFAULT_FINE_PER_DAY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if loan_days < 1:
            raise ValueError("loan_days must be positive")
        self.boundary = boundary
        self.catalog = catalog
        self.members = members
        self.loan_days = loan_days
        self.fine_per_day = Decimal(fine_per_day)
        self.clock = clock

    def _now(self) -> datetime:
        return self.clock().replace(microsecond=0)

    @staticmethod
    def _refuse(error: LedgerError) -> LedgerError:
        logger.warning("refused | reason=%s | %s", error.reason.value, error)
        return error

    # Lifecycle

    def borrow(self, member_id: str, book_id: str, notes: Optional[str] = None) -> LedgerRecord:
        """
        Open a loan of book_id for member_id.

        Raises:
            NotFound: unknown member or book
            PreconditionFailed: member inactive, book unavailable, duplicate
                loan or borrow limit reached
            StorageError: the writes could not be committed
        """
        logger.info("borrow called | member_id=%s book_id=%s", member_id, book_id)

        with self.boundary.transaction() as session:
            member = self.members.find_by_identifier(member_id, session)
            if member is None:
                raise self._refuse(NotFound(f"Member not found: {member_id}", FailureReason.MEMBER_NOT_FOUND))
            if not member.is_active:
                raise self._refuse(PreconditionFailed(f"Member {member_id} is inactive", FailureReason.MEMBER_INACTIVE))

            book = self.catalog.find_by_identifier(book_id, session)
            if book is None:
                raise self._refuse(NotFound(f"Book not found: {book_id}", FailureReason.BOOK_NOT_FOUND))

            holder = session.find_one(LEDGER, {"book_id": book_id, "is_returned": False})
            if book.borrowed or holder is not None:
                if holder is not None and holder["member_id"] == member_id:
                    raise self._refuse(PreconditionFailed(
                        f"Member {member_id} already has {book_id} on loan", FailureReason.DUPLICATE_LOAN
                    ))
                raise self._refuse(PreconditionFailed(f"Book already borrowed: {book_id}", FailureReason.ALREADY_BORROWED))

            open_count = session.count(LEDGER, {"member_id": member_id, "is_returned": False})
            if open_count >= member.borrow_limit:
                raise self._refuse(PreconditionFailed(
                    f"Member {member_id} already has {open_count} books (limit {member.borrow_limit})",
                    FailureReason.LIMIT_REACHED,
                ))

            now = self._now()
            record = LedgerRecord(
                record_id=session.next_sequence(LEDGER),
                member_id=member_id,
                book_id=book_id,
                borrow_at=now,
                due_at=now + timedelta(days=self.loan_days),
                notes=notes,
            )
            try:
                session.insert(LEDGER, _to_document(record))
            except DuplicateKeyError:
                # Another writer opened a record for this book first.
                raise self._refuse(PreconditionFailed(f"Book already borrowed: {book_id}", FailureReason.ALREADY_BORROWED))
            if not self.catalog.set_borrowed_flag(book_id, True, session):
                raise self._refuse(PreconditionFailed(f"Book already borrowed: {book_id}", FailureReason.ALREADY_BORROWED))

        logger.info("Book borrowed | record_id=%s member_id=%s book_id=%s due_at=%s",
                    record.record_id, member_id, book_id, record.due_at.isoformat())
        return record

    def return_book(self, member_id: str, book_id: str) -> LedgerRecord:
        """
        Close the open loan of book_id held by member_id and settle its fine.

        Raises:
            PreconditionFailed: no active loan for the pair
            StorageError: the writes could not be committed, or the book
                flag no longer matched the ledger
        """
        logger.info("return_book called | member_id=%s book_id=%s", member_id, book_id)

        with self.boundary.transaction() as session:
            doc = session.find_one(LEDGER, {"member_id": member_id, "book_id": book_id, "is_returned": False})
            if doc is None:
                raise self._refuse(PreconditionFailed(
                    f"No active loan of {book_id} for member {member_id}", FailureReason.NO_ACTIVE_LOAN
                ))
            record = to_record(doc)
            now = self._now()
            fine = calculate_fine(record, now, self.fine_per_day)
            record = record.model_copy(update={"returned_at": now, "is_returned": True, "fine_amount": fine})

            session.update(
                LEDGER,
                {"_id": record.record_id, "is_returned": False},
                {"returned_at": now, "is_returned": True, "fine_amount": Decimal128(fine)},
            )
            if not self.catalog.set_borrowed_flag(book_id, False, session):
                logger.error("Book flag out of sync with ledger | book_id=%s record_id=%s", book_id, record.record_id)
                raise StorageError(f"Book {book_id} was not flagged borrowed; return rolled back")

        logger.info("Book returned | record_id=%s member_id=%s book_id=%s fine=%s",
                    record.record_id, member_id, book_id, fine)
        return record

    def extend_due_date(self, record_id: int, additional_days: int) -> LedgerRecord:
        logger.info("extend_due_date called | record_id=%s additional_days=%s", record_id, additional_days)
        if additional_days <= 0:
            raise self._refuse(PreconditionFailed(
                f"Extension must be a positive number of days, got {additional_days}", FailureReason.INVALID_EXTENSION
            ))

        with self.boundary.transaction() as session:
            doc = session.find_one(LEDGER, {"_id": record_id})
            if doc is None:
                raise self._refuse(NotFound(f"Ledger record not found: {record_id}", FailureReason.RECORD_NOT_FOUND))
            record = to_record(doc)
            if record.is_returned:
                raise self._refuse(PreconditionFailed(
                    f"Ledger record {record_id} is already returned", FailureReason.ALREADY_RETURNED
                ))
            try:
                due_at = record.due_at + timedelta(days=additional_days)
            except OverflowError:
                raise self._refuse(PreconditionFailed(
                    f"Extension of {additional_days} days is out of range", FailureReason.INVALID_EXTENSION
                ))
            session.update(LEDGER, {"_id": record_id, "is_returned": False}, {"due_at": due_at})

        logger.info("Due date extended | record_id=%s due_at=%s", record_id, due_at.isoformat())
        return record.model_copy(update={"due_at": due_at})

    # Queries

    def _records(self, filter_dict: dict, sort) -> List[LedgerRecord]:
        with self.boundary.reader() as reader:
            docs = reader.find(LEDGER, filter_dict, sort=sort)
        return [to_record(d) for d in docs]

    def _require_member(self, member_id: str) -> None:
        if self.members.find_by_identifier(member_id) is None:
            raise NotFound(f"Member not found: {member_id}", FailureReason.MEMBER_NOT_FOUND)

    def get_record(self, record_id: int) -> LedgerRecord:
        with self.boundary.reader() as reader:
            doc = reader.find_one(LEDGER, {"_id": record_id})
        if doc is None:
            raise NotFound(f"Ledger record not found: {record_id}", FailureReason.RECORD_NOT_FOUND)
        return to_record(doc)

    def current_borrows(self, member_id: str) -> List[LedgerRecord]:
        self._require_member(member_id)
        return self._records({"member_id": member_id, "is_returned": False}, NEWEST_FIRST)

    def borrow_history(self, member_id: str) -> List[LedgerRecord]:
        self._require_member(member_id)
        return self._records({"member_id": member_id}, NEWEST_FIRST)

    def active_records(self) -> List[LedgerRecord]:
        return self._records({"is_returned": False}, NEWEST_FIRST)

    def all_records(self) -> List[LedgerRecord]:
        return self._records({}, NEWEST_FIRST)

    def overdue_records(self, as_of: Optional[datetime] = None) -> List[LedgerRecord]:
        """Open records due before as_of, longest overdue first."""
        as_of = as_of or self._now()
        return self._records({"is_returned": False, "due_at": {"$lt": as_of}}, OLDEST_DUE_FIRST)

    def total_fine(self, member_id: str) -> Decimal:
        self._require_member(member_id)
        fines = (r.fine_amount for r in self._records({"member_id": member_id}, None))
        return sum((f for f in fines if f > 0), ZERO)

    def outstanding_fine(self, record_id: int, as_of: Optional[datetime] = None) -> Decimal:
        record = self.get_record(record_id)
        if record.is_returned:
            return record.fine_amount
        return calculate_fine(record, as_of or self._now(), self.fine_per_day)

    def remaining_capacity(self, member_id: str) -> int:
        with self.boundary.reader() as reader:
            member = self.members.find_by_identifier(member_id, reader)
            if member is None:
                raise NotFound(f"Member not found: {member_id}", FailureReason.MEMBER_NOT_FOUND)
            open_count = reader.count(LEDGER, {"member_id": member_id, "is_returned": False})
        return max(0, member.borrow_limit - open_count)

    def statistics(self, as_of: Optional[datetime] = None) -> LedgerStatistics:
        as_of = as_of or self._now()
        with self.boundary.reader() as reader:
            open_records = reader.count(LEDGER, {"is_returned": False})
            overdue = reader.count(LEDGER, {"is_returned": False, "due_at": {"$lt": as_of}})
            docs = reader.find(LEDGER, {})
        fines = (to_record(d).fine_amount for d in docs)
        return LedgerStatistics(
            open_records=open_records,
            overdue_records=overdue,
            total_fines=sum((f for f in fines if f > 0), ZERO),
        )

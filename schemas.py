"""
Database Schemas for the Library Lending Ledger

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase class name, except the ledger which
lives in "ledger".

Collections:
- Book
- Member
- LedgerRecord ("ledger")
- counters (integer id sequences, no model)
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field


class MemberCategory(str, Enum):
    LIMITED = "limited"
    STAFF = "staff"


BORROW_LIMITS = {
    MemberCategory.LIMITED: 5,
    MemberCategory.STAFF: 10,
}


def borrow_limit_for(category: MemberCategory) -> int:
    """Maximum number of open loans a member of this category may hold."""
    return BORROW_LIMITS[MemberCategory(category)]


class LoanStatus(str, Enum):
    OPEN = "open"
    RETURNED = "returned"


class Book(BaseModel):
    """
    Books collection schema
    Collection name: "book"
    The identifier is stored as the document _id.
    """
    identifier: str = Field(..., min_length=1, description="Unique catalog identifier (ISBN)")
    title: str = Field(..., min_length=1, description="Book title")
    author: str = Field(..., min_length=1, description="Primary author")
    publisher: Optional[str] = Field(None, description="Publisher")
    publish_date: Optional[date] = Field(None, description="Publication date")
    page_count: Optional[int] = Field(None, ge=0, description="Number of pages")
    genre: Optional[str] = Field(None, description="Category/Genre")
    language: Optional[str] = Field(None, description="Language")
    rating: float = Field(0.0, ge=0.0, le=5.0, description="Running mean of ratings")
    rating_count: int = Field(0, ge=0, description="Number of ratings received")
    description: Optional[str] = Field(None, description="Short description")
    borrowed: bool = Field(False, description="True while an open ledger record exists")


class Member(BaseModel):
    """
    Members collection schema
    Collection name: "member"
    The identifier is stored as the document _id.
    """
    identifier: str = Field(..., min_length=1, description="Unique member identifier")
    name: str = Field(..., min_length=1, description="Display name")
    category: MemberCategory = Field(..., description="limited | staff")
    affiliation: Optional[str] = Field(None, description="Major (limited) or department (staff)")
    since: Optional[date] = Field(None, description="Enrollment or hire date")
    is_active: bool = Field(True, description="Whether membership is active")

    @computed_field
    @property
    def borrow_limit(self) -> int:
        return borrow_limit_for(self.category)


class LedgerRecord(BaseModel):
    """
    Ledger collection schema
    Collection name: "ledger"
    The record_id is stored as the document _id and never reused.
    """
    record_id: int = Field(..., description="Assigned from the ledger sequence on insert")
    member_id: str = Field(..., description="Borrowing member identifier")
    book_id: str = Field(..., description="Borrowed book identifier")
    borrow_at: datetime = Field(..., description="Borrow time (UTC)")
    due_at: datetime = Field(..., description="Due date/time (UTC)")
    returned_at: Optional[datetime] = Field(None, description="Return date/time (UTC)")
    is_returned: bool = Field(False)
    fine_amount: Decimal = Field(Decimal("0"), ge=0, description="Fine settled on return")
    notes: Optional[str] = Field(None)

    @computed_field
    @property
    def status(self) -> LoanStatus:
        return LoanStatus.RETURNED if self.is_returned else LoanStatus.OPEN


class LedgerStatistics(BaseModel):
    open_records: int = 0
    overdue_records: int = 0
    total_fines: Decimal = Decimal("0")


class BookMetadata(BaseModel):
    """Descriptive fields fetched from a remote catalog."""
    title: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    publish_date: Optional[date] = None
    page_count: Optional[int] = None
    genre: Optional[str] = None
    language: Optional[str] = None
    description: Optional[str] = None

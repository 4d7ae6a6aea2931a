from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import Settings, configure_logging
from errors import LedgerError, NotFound, PreconditionFailed, StorageError
from library import Library
from schemas import Book, LedgerRecord, Member, MemberCategory

settings = Settings.from_env()
logger = configure_logging(settings.log_level)

_library: Optional[Library] = None


def get_library() -> Library:
    global _library
    if _library is None:
        try:
            _library = Library.from_settings(settings)
        except RuntimeError as e:
            raise HTTPException(503, str(e))
    return _library


# Request Models
class UpdateBook(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    publish_date: Optional[date] = None
    page_count: Optional[int] = Field(None, ge=0)
    genre: Optional[str] = None
    language: Optional[str] = None
    description: Optional[str] = None


class UpdateMember(BaseModel):
    name: Optional[str] = None
    category: Optional[MemberCategory] = None
    affiliation: Optional[str] = None
    since: Optional[date] = None


class ActiveRequest(BaseModel):
    is_active: bool


class RatingRequest(BaseModel):
    rating: float


class BorrowRequest(BaseModel):
    member_id: str
    book_id: str
    notes: Optional[str] = None


class ReturnRequest(BaseModel):
    member_id: str
    book_id: str


class ExtendRequest(BaseModel):
    days: int


app = FastAPI(title="Library Lending Ledger API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if isinstance(exc, NotFound):
        status = 404
    elif isinstance(exc, PreconditionFailed):
        status = 409
    elif isinstance(exc, StorageError):
        status = 503
    else:
        status = 500
    return JSONResponse(status_code=status, content={"detail": str(exc), "reason": exc.reason.value})


def _changes(payload: BaseModel) -> Dict[str, Any]:
    update = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if not update:
        raise HTTPException(400, "No fields to update")
    return update


@app.get("/")
def read_root():
    return {"message": "Library Lending Ledger API is running"}


# Books Endpoints
@app.get("/api/books")
def list_books(
    q: Optional[str] = None,
    genre: Optional[str] = None,
    available: Optional[bool] = None,
    library: Library = Depends(get_library),
):
    if q:
        books = library.catalog.search(q, genre=genre)
    elif genre:
        books = library.catalog.find_by_genre(genre)
    else:
        books = library.catalog.list_books()
    if available is not None:
        books = [b for b in books if b.borrowed is not available]
    return books


@app.get("/api/books/genres")
def list_genres(library: Library = Depends(get_library)) -> List[str]:
    return library.catalog.list_genres()


@app.get("/api/books/{book_id}")
def get_book(book_id: str, library: Library = Depends(get_library)) -> Book:
    return library.catalog.get(book_id)


@app.post("/api/books", status_code=201)
def create_book(payload: Book, library: Library = Depends(get_library)) -> Book:
    return library.catalog.create(payload)


@app.put("/api/books/{book_id}")
def update_book(book_id: str, payload: UpdateBook, library: Library = Depends(get_library)) -> Book:
    return library.catalog.update(book_id, _changes(payload))


@app.delete("/api/books/{book_id}", status_code=204)
def delete_book(book_id: str, library: Library = Depends(get_library)):
    library.catalog.delete(book_id)
    return Response(status_code=204)


@app.post("/api/books/{book_id}/rating")
def rate_book(book_id: str, payload: RatingRequest, library: Library = Depends(get_library)) -> Book:
    return library.catalog.add_rating(book_id, payload.rating)


@app.post("/api/books/{book_id}/metadata")
async def enrich_book(book_id: str, library: Library = Depends(get_library)) -> Book:
    # catalog calls block on pymongo, keep them off the event loop
    await run_in_threadpool(library.catalog.get, book_id)
    metadata = await library.metadata.fetch(book_id)
    if metadata is None:
        raise HTTPException(404, "No metadata found")
    return await run_in_threadpool(library.catalog.apply_metadata, book_id, metadata)


# Members Endpoints
@app.get("/api/members")
def list_members(
    q: Optional[str] = None,
    category: Optional[MemberCategory] = None,
    active: Optional[bool] = None,
    library: Library = Depends(get_library),
):
    if q:
        members = library.members.search(q)
    elif category:
        members = library.members.find_by_category(category)
    else:
        members = library.members.list_members()
    if active is not None:
        members = [m for m in members if m.is_active is active]
    return members


@app.get("/api/members/{member_id}")
def get_member(member_id: str, library: Library = Depends(get_library)) -> Member:
    return library.members.get(member_id)


@app.post("/api/members", status_code=201)
def create_member(payload: Member, library: Library = Depends(get_library)) -> Member:
    return library.members.create(payload)


@app.put("/api/members/{member_id}")
def update_member(member_id: str, payload: UpdateMember, library: Library = Depends(get_library)) -> Member:
    return library.members.update(member_id, _changes(payload))


@app.post("/api/members/{member_id}/active")
def set_member_active(member_id: str, payload: ActiveRequest, library: Library = Depends(get_library)) -> Member:
    return library.members.set_active(member_id, payload.is_active)


@app.delete("/api/members/{member_id}", status_code=204)
def delete_member(member_id: str, library: Library = Depends(get_library)):
    library.members.delete(member_id)
    return Response(status_code=204)


@app.get("/api/members/{member_id}/loans")
def member_loans(member_id: str, library: Library = Depends(get_library)) -> List[LedgerRecord]:
    return library.ledger.current_borrows(member_id)


@app.get("/api/members/{member_id}/history")
def member_history(member_id: str, library: Library = Depends(get_library)) -> List[LedgerRecord]:
    return library.ledger.borrow_history(member_id)


@app.get("/api/members/{member_id}/fines")
def member_fines(member_id: str, library: Library = Depends(get_library)):
    return {
        "member_id": member_id,
        "total_fine": str(library.ledger.total_fine(member_id)),
        "remaining_capacity": library.ledger.remaining_capacity(member_id),
    }


# Loans Endpoints
@app.get("/api/loans")
def list_loans(status: Optional[str] = None, library: Library = Depends(get_library)):
    if status in (None, "open"):
        records = library.ledger.active_records()
    elif status == "overdue":
        records = library.ledger.overdue_records()
    elif status in ("all", "returned"):
        records = library.ledger.all_records()
        if status == "returned":
            records = [r for r in records if r.is_returned]
    else:
        raise HTTPException(400, "status must be one of open, overdue, returned, all")

    # join-like enrichment for client
    members_map = {m.identifier: m for m in library.members.list_members()}
    books_map = {b.identifier: b for b in library.catalog.list_books()}
    out: List[Dict[str, Any]] = []
    for r in records:
        d = r.model_dump(mode="json")
        m = members_map.get(r.member_id)
        b = books_map.get(r.book_id)
        d["member_name"] = m.name if m else None
        d["book_title"] = b.title if b else None
        out.append(d)
    return out


@app.post("/api/loans/borrow", status_code=201)
def borrow_book(payload: BorrowRequest, library: Library = Depends(get_library)) -> LedgerRecord:
    return library.ledger.borrow(payload.member_id, payload.book_id, notes=payload.notes)


@app.post("/api/loans/return")
def return_book(payload: ReturnRequest, library: Library = Depends(get_library)) -> LedgerRecord:
    return library.ledger.return_book(payload.member_id, payload.book_id)


@app.get("/api/loans/{record_id}")
def get_loan(record_id: int, library: Library = Depends(get_library)):
    record = library.ledger.get_record(record_id)
    d = record.model_dump(mode="json")
    d["outstanding_fine"] = str(library.ledger.outstanding_fine(record_id))
    return d


@app.post("/api/loans/{record_id}/extend")
def extend_loan(record_id: int, payload: ExtendRequest, library: Library = Depends(get_library)) -> LedgerRecord:
    return library.ledger.extend_due_date(record_id, payload.days)


# Stats endpoint
@app.get("/api/stats")
def stats(library: Library = Depends(get_library)):
    ledger_stats = library.ledger.statistics()
    return {
        "books": library.catalog.count_by_status(False) + library.catalog.count_by_status(True),
        "available": library.catalog.count_by_status(False),
        "borrowed": library.catalog.count_by_status(True),
        "limited_members": library.members.count_by_category(MemberCategory.LIMITED),
        "staff_members": library.members.count_by_category(MemberCategory.STAFF),
        "active_loans": ledger_stats.open_records,
        "overdue": ledger_stats.overdue_records,
        "total_fines": str(ledger_stats.total_fines),
    }


# Schema info (useful for tooling)
@app.get("/schema")
def get_schema_info():
    return {
        "collections": [
            {"name": "book", "fields": list(Book.model_fields.keys())},
            {"name": "member", "fields": list(Member.model_fields.keys())},
            {"name": "ledger", "fields": list(LedgerRecord.model_fields.keys())},
        ]
    }


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "transactions": None,
        "collections": [],
    }
    try:
        library = get_library()
    except HTTPException as e:
        response["database"] = f"❌ {e.detail}"
        return response
    try:
        library.db.command("ping")
        response["database"] = "✅ Connected & Working"
        response["database_name"] = library.db.name
        response["transactions"] = library.boundary.uses_transactions
        response["collections"] = library.db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)

import threading

import pytest

from conftest import book_id
from errors import FailureReason, PreconditionFailed
from schemas import Member, MemberCategory


def race(library, requests):
    """Run borrow(member_id, book_id) for every request at the same moment."""
    barrier = threading.Barrier(len(requests))
    outcomes = []
    lock = threading.Lock()

    def attempt(member_id, target):
        barrier.wait()
        try:
            library.ledger.borrow(member_id, target)
            outcome = "ok"
        except PreconditionFailed as exc:
            outcome = exc.reason
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=attempt, args=request) for request in requests]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return outcomes


def test_concurrent_borrows_of_one_book(library, check_flags):
    member_ids = [f"C{i}" for i in range(8)]
    for member_id in member_ids:
        library.members.create(Member(identifier=member_id, name=f"Caller {member_id}", category=MemberCategory.STAFF))

    outcomes = race(library, [(m, book_id(1)) for m in member_ids])

    assert len(outcomes) == 8
    assert outcomes.count("ok") == 1
    assert all(o == FailureReason.ALREADY_BORROWED for o in outcomes if o != "ok")
    open_for_book = [r for r in library.ledger.active_records() if r.book_id == book_id(1)]
    assert len(open_for_book) == 1
    check_flags(library)


def test_concurrent_borrows_respect_member_limit(library, check_flags):
    # S1 may hold five books; ten parallel requests for distinct books.
    outcomes = race(library, [("S1", book_id(n)) for n in range(1, 11)])

    assert outcomes.count("ok") == 5
    assert outcomes.count(FailureReason.LIMIT_REACHED) == 5
    assert len(library.ledger.current_borrows("S1")) == 5
    check_flags(library)


def test_readers_wait_for_an_open_borrow(library, monkeypatch):
    seen = {}

    def observe():
        seen["open_records"] = library.ledger.statistics().open_records
        seen["borrowed"] = library.catalog.get(book_id(1)).borrowed
        seen["current"] = len(library.ledger.current_borrows("S1"))

    observer = threading.Thread(target=observe)

    def flip_then_fail(*args, **kwargs):
        # The record is written but not committed; the observer must block.
        observer.start()
        observer.join(timeout=0.3)
        seen["blocked"] = observer.is_alive()
        return False

    monkeypatch.setattr(library.catalog, "set_borrowed_flag", flip_then_fail)
    with pytest.raises(PreconditionFailed):
        library.ledger.borrow("S1", book_id(1))
    observer.join(timeout=10)

    assert seen == {"blocked": True, "open_records": 0, "borrowed": False, "current": 0}
    assert library.ledger.all_records() == []

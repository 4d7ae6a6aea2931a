from datetime import date

import pytest

from conftest import book_id
from errors import FailureReason, NotFound, PreconditionFailed
from schemas import Member, MemberCategory, borrow_limit_for


def test_borrow_limit_per_category():
    assert borrow_limit_for(MemberCategory.LIMITED) == 5
    assert borrow_limit_for(MemberCategory.STAFF) == 10
    assert borrow_limit_for("staff") == 10


def test_member_round_trip(library):
    member = library.members.get("S1")
    assert member.category == MemberCategory.LIMITED
    assert member.affiliation == "Physics"
    assert member.since == date(2023, 9, 1)
    assert member.borrow_limit == 5
    assert library.members.get("T1").borrow_limit == 10


def test_unknown_member(library):
    assert library.members.find_by_identifier("NOPE") is None
    with pytest.raises(NotFound) as exc:
        library.members.get("NOPE")
    assert exc.value.reason == FailureReason.MEMBER_NOT_FOUND


def test_duplicate_member_refused(library):
    with pytest.raises(PreconditionFailed) as exc:
        library.members.create(Member(identifier="S1", name="Other", category=MemberCategory.STAFF))
    assert exc.value.reason == FailureReason.DUPLICATE_MEMBER


def test_search_and_filters(library):
    assert [m.identifier for m in library.members.search("minh")] == ["T1"]
    assert [m.identifier for m in library.members.search("s2")] == ["S2"]
    assert {m.identifier for m in library.members.find_by_category(MemberCategory.LIMITED)} == {"S1", "S2"}
    assert {m.identifier for m in library.members.active_members()} == {"S1", "T1"}
    assert library.members.count_by_category(MemberCategory.LIMITED) == 1
    assert library.members.count_by_category(MemberCategory.STAFF) == 1


def test_deactivated_member_cannot_borrow(library):
    library.members.set_active("S1", False)
    with pytest.raises(PreconditionFailed) as exc:
        library.ledger.borrow("S1", book_id(1))
    assert exc.value.reason == FailureReason.MEMBER_INACTIVE

    library.members.set_active("S1", True)
    library.ledger.borrow("S1", book_id(1))


def test_deactivation_keeps_open_loans(library, check_flags):
    library.ledger.borrow("S1", book_id(1))
    library.members.set_active("S1", False)
    library.ledger.return_book("S1", book_id(1))
    check_flags(library)


def test_category_change_moves_limit(library):
    member = library.members.update("S1", {"category": MemberCategory.STAFF, "affiliation": "Library"})
    assert member.borrow_limit == 10
    assert member.affiliation == "Library"
    for n in range(1, 8):
        library.ledger.borrow("S1", book_id(n))
    assert library.ledger.remaining_capacity("S1") == 3


def test_category_change_refused_above_new_limit(library):
    for n in range(1, 9):
        library.ledger.borrow("T1", book_id(n))

    with pytest.raises(PreconditionFailed) as exc:
        library.members.update("T1", {"category": MemberCategory.LIMITED, "affiliation": "Physics"})
    assert exc.value.reason == FailureReason.LIMIT_REACHED
    member = library.members.get("T1")
    assert member.category == MemberCategory.STAFF
    assert member.affiliation == "Archives"

    for n in range(1, 4):
        library.ledger.return_book("T1", book_id(n))
    assert library.members.update("T1", {"category": MemberCategory.LIMITED}).borrow_limit == 5
    assert library.ledger.remaining_capacity("T1") == 0


def test_member_with_open_loans_cannot_be_deleted(library):
    library.ledger.borrow("T1", book_id(1))
    with pytest.raises(PreconditionFailed) as exc:
        library.members.delete("T1")
    assert exc.value.reason == FailureReason.MEMBER_HAS_LOANS

    library.ledger.return_book("T1", book_id(1))
    library.members.delete("T1")
    assert library.members.find_by_identifier("T1") is None

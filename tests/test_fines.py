from datetime import datetime, timedelta
from decimal import Decimal

from ledger import calculate_fine, days_until_due, is_overdue, whole_days_between
from schemas import LedgerRecord

DUE = datetime(2025, 1, 15, 9, 0, 0)


def make_record(returned_at=None, due_at=DUE):
    return LedgerRecord(
        record_id=1,
        member_id="S1",
        book_id="978-0-00-000001",
        borrow_at=due_at - timedelta(days=14),
        due_at=due_at,
        returned_at=returned_at,
        is_returned=returned_at is not None,
    )


def test_whole_days_truncates():
    assert whole_days_between(DUE, DUE + timedelta(hours=23, minutes=59)) == 0
    assert whole_days_between(DUE, DUE + timedelta(days=1)) == 1
    assert whole_days_between(DUE, DUE + timedelta(days=2, hours=23)) == 2
    assert whole_days_between(DUE + timedelta(days=2, hours=5), DUE) == -2


def test_fine_ten_days_late():
    record = make_record(returned_at=DUE + timedelta(days=10))
    assert calculate_fine(record, DUE, Decimal("5000")) == Decimal("50000")


def test_fine_zero_when_returned_on_time():
    assert calculate_fine(make_record(returned_at=DUE), DUE + timedelta(days=30)) == 0
    assert calculate_fine(make_record(returned_at=DUE - timedelta(days=3)), DUE + timedelta(days=30)) == 0


def test_fine_zero_for_partial_day():
    record = make_record(returned_at=DUE + timedelta(hours=23, minutes=59))
    assert is_overdue(record, DUE)
    assert calculate_fine(record, DUE, Decimal("5000")) == 0


def test_returned_record_ignores_as_of():
    """Once returned, the return time is the comparison point, not as_of."""
    record = make_record(returned_at=DUE + timedelta(days=2))
    assert calculate_fine(record, DUE + timedelta(days=100), Decimal("5000")) == Decimal("10000")


def test_open_record_uses_as_of():
    record = make_record()
    assert not is_overdue(record, DUE)
    assert calculate_fine(record, DUE + timedelta(days=3, hours=12), Decimal("5000")) == Decimal("15000")


def test_fine_rate_is_configurable():
    record = make_record(returned_at=DUE + timedelta(days=4))
    assert calculate_fine(record, DUE, Decimal("0.50")) == Decimal("2.00")


def test_days_until_due():
    record = make_record()
    assert days_until_due(record, DUE - timedelta(days=3)) == 3
    assert days_until_due(record, DUE + timedelta(days=2)) == -2

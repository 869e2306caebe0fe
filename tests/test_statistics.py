from datetime import date
from decimal import Decimal

import pytest

from spendsort.domain.timefmt import format_date_range
from spendsort.models import BatchMetadata, BatchStrategy, DateRange, Transaction, TransactionType
from spendsort.services.statistics import calculate_statistics, generate_title

INCOME = TransactionType.INCOME
EXPENSE = TransactionType.EXPENSE


def _starbucks() -> list[Transaction]:
    return [
        Transaction(id=str(i), merchant="Starbucks", description="Coffee", amount=amount, date=date(2025, 3, i + 1))
        for i, amount in enumerate(["5.75", "8.45", "15.99", "4.50"])
    ]


def test_empty_statistics():
    stats = calculate_statistics([])
    assert stats.total_income == 0
    assert stats.total_expense == 0
    assert stats.transaction_count == 0
    assert stats.date_range.start is None
    assert stats.sources == []


def test_statistics_totals_and_counts():
    transactions = [
        Transaction(id="1", amount="1,200.00", type=INCOME, source="checking", date=date(2025, 1, 31)),
        Transaction(id="2", amount=Decimal("45.10"), type=EXPENSE, source="credit", date=date(2025, 1, 2)),
        Transaction(id="3", amount=4.9, type=EXPENSE, source="checking", category_id="c", date="2025-02-03"),
    ]
    stats = calculate_statistics(transactions)

    assert stats.total_income == Decimal("1200.00")
    assert stats.total_expense == Decimal("50.00")
    assert stats.income_count == 1
    assert stats.expense_count == 2
    assert stats.categorized_count == 1
    assert stats.sources == ["checking", "credit"]
    assert stats.date_range == DateRange(start=date(2025, 1, 2), end=date(2025, 2, 3))


def test_statistics_skip_unusable_amounts_and_dates():
    transactions = [
        Transaction(id="1", amount="not a number", date="someday"),
        Transaction(id="2", amount=None),
        Transaction(id="3", amount="10"),
    ]
    stats = calculate_statistics(transactions)

    assert stats.total_expense == Decimal("10")
    assert stats.skipped_amounts == 2
    assert stats.expense_count == 3
    assert stats.date_range.start is None


@pytest.mark.parametrize(
    ("start", "end", "expected"),
    [
        (date(2025, 3, 1), date(2025, 3, 30), "March 2025"),
        (date(2025, 1, 5), date(2025, 3, 1), "January - March 2025"),
        (date(2024, 12, 5), date(2025, 1, 1), "December 2024 - January 2025"),
        (None, None, "unknown dates"),
    ],
)
def test_format_date_range(start, end, expected):
    assert format_date_range(DateRange(start=start, end=end)) == expected


def test_title_empty_batch():
    assert generate_title("anything", []) == "Empty Batch"


def test_title_from_period_batch_id():
    transactions = [Transaction(id="1", description="Whatever", merchant="Acme", type=EXPENSE)]
    assert generate_title("batch_income_2025-03", transactions) == "Income - March 2025"
    assert generate_title("batch_expense_2024-11_checking", transactions) == "Expenses - November 2024"


def test_title_invalid_period_falls_through():
    transactions = [Transaction(id="1", description="Rent payment", date=date(2025, 3, 5))]
    assert generate_title("batch_expense_2025-13", transactions) == "Transactions from March 2025"


def test_title_from_metadata():
    transactions = _starbucks()
    summary = BatchMetadata(strategy=BatchStrategy.MERCHANT, summary="Morning coffee runs")
    keywords = BatchMetadata(strategy=BatchStrategy.SIMILARITY, keywords=["Gym", "Membership"])

    assert generate_title("b", transactions, summary) == "Morning coffee runs"
    assert generate_title("b", transactions, keywords) == "Gym Membership - Expenses"


def test_title_single_transaction_with_merchant():
    transaction = Transaction(
        id="1",
        merchant="Starbucks",
        description="Morning coffee at the downtown store on Main",
    )
    assert generate_title("merchant_x", [transaction]) == "Starbucks - Morning coffee at the downtown"


def test_title_single_transaction_without_merchant():
    transaction = Transaction(id="1", description="Rent payment", amount=1200, type=EXPENSE, date=date(2025, 3, 1))
    assert generate_title("similar_1", [transaction]) == "Transactions from March 2025"


def test_title_dominant_merchant_same_type():
    assert generate_title("merchant_expense_starbucks", _starbucks()) == "Starbucks - Expenses"


def test_title_dominant_merchant_mixed_type():
    transactions = [
        Transaction(id="1", merchant="Acme", description="Invoice", type=INCOME),
        Transaction(id="2", merchant="Acme", description="Refund", type=EXPENSE),
        Transaction(id="3", description="Other", type=EXPENSE),
    ]
    assert generate_title("b", transactions) == "Transactions from Acme"


def test_title_common_words():
    transactions = [
        Transaction(id="1", description="Gym membership January"),
        Transaction(id="2", description="Gym membership February"),
        Transaction(id="3", description="Gym membership March"),
    ]
    assert generate_title("b", transactions) == "Gym Membership - Expenses"


def test_title_common_words_mixed_type():
    transactions = [
        Transaction(id="1", description="Transfer savings", type=INCOME),
        Transaction(id="2", description="Transfer savings", type=EXPENSE),
    ]
    assert generate_title("b", transactions) == "Transfer Savings Transactions"


def test_title_fallback_date_range():
    transactions = [
        Transaction(id="1", description="Alpha", date=date(2025, 1, 3)),
        Transaction(id="2", description="Beta", date=date(2025, 2, 3)),
    ]
    assert generate_title("b", transactions) == "Expenses - January - February 2025"


def test_title_fallback_date_range_for_mixed_types():
    transactions = [
        Transaction(id="1", description="Alpha", date=date(2025, 1, 3), type=INCOME),
        Transaction(id="2", description="Beta", date=date(2025, 2, 3)),
    ]
    assert generate_title("b", transactions) == "Transactions from January - February 2025"

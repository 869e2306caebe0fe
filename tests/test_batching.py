from collections import Counter
from datetime import date, timedelta

import pytest

from spendsort.core.configuration import CategorizerConfig
from spendsort.models import BatchStrategy, Transaction, TransactionType
from spendsort.services.batching import BatchOrganizer, slugify

INCOME = TransactionType.INCOME
EXPENSE = TransactionType.EXPENSE


def _no_merchant(transaction: Transaction) -> None:
    return None


def _mixed(count: int) -> list[Transaction]:
    descriptions = ["Starbucks", "AMAZON MKTP", "Shell Oil", "Rent payment", "Salary ACME", "Corner Deli", "Uber Trip"]
    return [
        Transaction(
            id=str(i),
            description=f"{descriptions[i % len(descriptions)]} {i}",
            amount=i,
            type=INCOME if i % 5 == 0 else EXPENSE,
            source="checking" if i % 2 else "credit",
            date=date(2025, 1 + i % 3, 1 + i % 28),
        )
        for i in range(count)
    ]


def _assert_partition(batches, transactions, max_size):
    ids = Counter(t.id for batch in batches for t in batch.transactions)
    assert ids == Counter(t.id for t in transactions)
    assert all(0 < len(batch.transactions) <= max_size for batch in batches)
    assert len({batch.id for batch in batches}) == len(batches)


def test_starbucks_batch():
    transactions = [
        Transaction(id=str(i), merchant="Starbucks", description="Coffee", amount=amount, date=date(2025, 3, i + 1))
        for i, amount in enumerate(["5.75", "8.45", "15.99", "4.50"])
    ]
    batches = BatchOrganizer().organize(transactions)

    assert len(batches) == 1
    batch = batches[0]
    assert batch.id == "merchant_expense_starbucks"
    assert batch.title == "Starbucks - Expenses"
    assert batch.metadata.strategy == BatchStrategy.MERCHANT
    assert batch.statistics.transaction_count == 4
    assert all(t.batch_id == batch.id for t in batch.transactions)


@pytest.mark.parametrize("max_size", [3, 10, 25])
def test_output_partitions_input(max_size):
    transactions = _mixed(60)
    batches = BatchOrganizer(CategorizerConfig(max_batch_size=max_size)).organize(transactions)
    _assert_partition(batches, transactions, max_size)


def test_empty_input():
    assert BatchOrganizer().organize([]) == []


def test_reorganizing_a_batch_does_not_split_it_further():
    organizer = BatchOrganizer(CategorizerConfig(max_batch_size=10))
    for batch in organizer.organize(_mixed(60)):
        again = organizer.organize(batch.transactions)
        _assert_partition(again, batch.transactions, 10)


def test_oversized_merchant_group_is_chunked_chronologically():
    start = date(2025, 1, 1)
    transactions = [
        Transaction(id=str(i), merchant="Amazon", description="Order", date=start + timedelta(days=i))
        for i in reversed(range(30))
    ]
    batches = BatchOrganizer(CategorizerConfig(max_batch_size=25)).organize(transactions)

    assert [b.id for b in batches] == ["merchant_expense_amazon_1", "merchant_expense_amazon_2"]
    assert len(batches[0].transactions) == 25
    assert batches[0].transactions[0].date == start
    assert batches[1].statistics.date_range.end == start + timedelta(days=29)


def test_oversized_merchant_group_is_split_by_type_first():
    transactions = [
        Transaction(id=str(i), merchant="Acme Corp", description="Acme", type=INCOME if i < 20 else EXPENSE)
        for i in range(40)
    ]
    batches = BatchOrganizer(CategorizerConfig(max_batch_size=25)).organize(transactions)

    assert {b.id for b in batches} == {"merchant_income_acme-corp", "merchant_expense_acme-corp"}
    assert all(len(b.transactions) == 20 for b in batches)
    assert {b.metadata.type for b in batches} == {INCOME, EXPENSE}


def test_small_mixed_merchant_group():
    transactions = [
        Transaction(id="1", merchant="Acme", type=INCOME),
        Transaction(id="2", merchant="Acme", type=INCOME),
        Transaction(id="3", merchant="Acme", type=EXPENSE),
    ]
    batches = BatchOrganizer().organize(transactions)

    assert [b.id for b in batches] == ["merchant_mixed_acme"]
    assert batches[0].title == "Transactions from Acme"


def test_merchant_groups_below_minimum_fall_through():
    transactions = [
        Transaction(id="1", merchant="Acme", description="Acme widgets", date=date(2025, 4, 2)),
        Transaction(id="2", merchant="Acme", description="Acme gadgets", date=date(2025, 4, 9)),
    ]
    batches = BatchOrganizer().organize(transactions)

    assert all(b.metadata.strategy != BatchStrategy.MERCHANT for b in batches)
    _assert_partition(batches, transactions, 25)


def test_similarity_pass_clusters_near_duplicates():
    transactions = [
        Transaction(id="1", description="Spotify Premium Family"),
        Transaction(id="2", description="Spotify Premium Familly"),
        Transaction(id="3", description="Electric company", date=date(2025, 3, 3)),
    ]
    batches = BatchOrganizer(merchant_extractor=_no_merchant).organize(transactions)

    similar = [b for b in batches if b.metadata.strategy == BatchStrategy.SIMILARITY]
    assert len(similar) == 1
    assert similar[0].id == "similar_1"
    assert {t.id for t in similar[0].transactions} == {"1", "2"}
    assert similar[0].metadata.keywords == ["Spotify", "Premium"]
    assert similar[0].title == "Spotify Premium - Expenses"


def test_fallback_groups_by_type_and_month():
    transactions = [
        Transaction(id="1", description="Rent payment", date=date(2025, 3, 1)),
        Transaction(id="2", description="Electric bill", date=date(2025, 3, 15)),
        Transaction(id="3", description="Paycheck", type=INCOME, date=date(2025, 3, 30)),
    ]
    batches = BatchOrganizer(merchant_extractor=_no_merchant).organize(transactions)

    by_id = {b.id: b for b in batches}
    assert set(by_id) == {"batch_expense_2025-03", "batch_income_2025-03"}
    assert by_id["batch_expense_2025-03"].title == "Expenses - March 2025"
    assert by_id["batch_income_2025-03"].title == "Income - March 2025"


def test_fallback_adds_source_suffix_when_sources_differ():
    transactions = [
        Transaction(id="1", description="Rent payment", source="checking", date=date(2025, 3, 1)),
        Transaction(id="2", description="Electric bill", source="Credit Card", date=date(2025, 3, 15)),
    ]
    batches = BatchOrganizer(merchant_extractor=_no_merchant).organize(transactions)

    assert {b.id for b in batches} == {"batch_expense_2025-03_checking", "batch_expense_2025-03_credit-card"}


def test_fallback_undated():
    transactions = [Transaction(id="1", description="Rent payment", amount=1200)]
    batches = BatchOrganizer(merchant_extractor=_no_merchant).organize(transactions)

    assert [b.id for b in batches] == ["batch_expense_undated"]
    assert batches[0].title == "Transactions from unknown dates"


def test_slugify():
    assert slugify("Trader Joe's #12") == "trader-joe-s-12"
    assert slugify("***") == "unknown"

from collections.abc import Iterable
from datetime import date
from typing import Protocol

from spendsort.models import Category, Transaction


class TransactionRepository(Protocol):
    """Read-only view of stored transactions and categories."""

    async def find_categorized_transactions(self, limit: int) -> list[Transaction]: ...

    async def find_categories(self) -> list[Category]: ...

    async def find_recent_categorized(self, sample_size: int) -> list[Transaction]: ...

    async def count_categorized(self) -> int: ...


def _recency_key(transaction: Transaction) -> date:
    return transaction.date or date.min


class InMemoryRepository:
    """Repository backed by plain lists. Newest transactions come first."""

    def __init__(
        self,
        transactions: Iterable[Transaction] = (),
        categories: Iterable[Category] = (),
    ):
        self.transactions: list[Transaction] = list(transactions)
        self.categories: list[Category] = list(categories)

    def add(self, transaction: Transaction) -> None:
        self.transactions = [t for t in self.transactions if t.id != transaction.id]
        self.transactions.append(transaction)

    def _categorized(self) -> list[Transaction]:
        categorized = [t for t in self.transactions if t.category_id]
        return sorted(categorized, key=_recency_key, reverse=True)

    async def find_categorized_transactions(self, limit: int) -> list[Transaction]:
        return self._categorized()[:limit]

    async def find_categories(self) -> list[Category]:
        return list(self.categories)

    async def find_recent_categorized(self, sample_size: int) -> list[Transaction]:
        return self._categorized()[:sample_size]

    async def count_categorized(self) -> int:
        return sum(1 for t in self.transactions if t.category_id)

from abc import ABC, abstractmethod

from spendsort.models import CategoryMatch, Transaction


class Classifier(ABC):
    @abstractmethod
    def match(self, transaction: Transaction) -> CategoryMatch | None:
        """Propose a category for the transaction, or None."""

    @abstractmethod
    def learn(self, transaction: Transaction) -> None:
        """Record a transaction whose category has been confirmed."""

import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from sklearn.feature_extraction.text import CountVectorizer
from sklearn.naive_bayes import MultinomialNB
from sklearn.pipeline import Pipeline

from spendsort.domain.text import normalize
from spendsort.logger import get_logger
from spendsort.models import Category, CategoryMatch, SuggestionSource, Transaction, TransactionType

from .base import Classifier

logger = get_logger(__name__)

MIN_TRAINING_TRANSACTIONS = 5

# Cold-start keywords keyed by common category names. A seed entry applies to
# every supplied category of the same type whose name matches one of the aliases.
SEED_VOCABULARY: dict[str, tuple[TransactionType, tuple[str, ...], tuple[str, ...]]] = {
    "Food & Dining": (
        TransactionType.EXPENSE,
        ("dining", "dining out", "restaurants", "restaurant", "food"),
        ("restaurant", "coffee", "cafe", "starbucks", "pizza", "burger", "diner", "grill",
         "bistro", "bakery", "doordash", "ubereats", "grubhub", "mcdonalds", "takeout", "lunch",
         "dinner", "breakfast"),
    ),
    "Groceries": (
        TransactionType.EXPENSE,
        ("grocery", "groceries", "supermarket"),
        ("grocery", "groceries", "supermarket", "market", "safeway", "kroger", "aldi", "lidl",
         "costco", "trader", "whole foods", "produce", "walmart"),
    ),
    "Transportation": (
        TransactionType.EXPENSE,
        ("transport", "transportation", "travel", "auto", "car", "gas", "fuel"),
        ("uber", "lyft", "taxi", "gas", "fuel", "shell", "chevron", "exxon", "parking", "transit",
         "metro", "train", "toll", "airline", "flight"),
    ),
    "Utilities": (
        TransactionType.EXPENSE,
        ("utilities", "utility", "bills"),
        ("electric", "electricity", "power", "water", "gas company", "internet", "comcast",
         "verizon", "phone", "utility", "energy", "sewer"),
    ),
    "Entertainment": (
        TransactionType.EXPENSE,
        ("entertainment", "subscriptions", "subscription", "streaming"),
        ("netflix", "spotify", "hulu", "movie", "cinema", "theatre", "theater", "concert",
         "tickets", "disney", "steam", "subscription", "games"),
    ),
    "Shopping": (
        TransactionType.EXPENSE,
        ("shopping", "retail", "clothing"),
        ("amazon", "target", "ebay", "store", "shop", "mall", "clothing", "apparel", "etsy",
         "best buy"),
    ),
    "Housing": (
        TransactionType.EXPENSE,
        ("housing", "rent", "mortgage", "home"),
        ("rent", "mortgage", "landlord", "property", "hoa", "apartment", "lease"),
    ),
    "Health": (
        TransactionType.EXPENSE,
        ("health", "healthcare", "medical", "pharmacy", "fitness"),
        ("pharmacy", "cvs", "walgreens", "doctor", "dental", "clinic", "hospital", "gym",
         "fitness", "medical"),
    ),
    "Salary": (
        TransactionType.INCOME,
        ("salary", "income", "wages", "paycheck", "payroll"),
        ("salary", "payroll", "paycheck", "direct deposit", "wages", "employer", "deposit"),
    ),
    "Interest": (
        TransactionType.INCOME,
        ("interest", "dividends", "investments", "investment"),
        ("interest", "dividend", "yield", "investment"),
    ),
}


@dataclass(frozen=True)
class ClassifierModel:
    """A fully built model snapshot. Replaced wholesale, never mutated."""

    pipeline: Pipeline | None = None
    labels: tuple[str, ...] = ()
    trained: bool = False
    seeded: bool = False
    document_count: int = 0
    categories: frozenset[str] = field(default_factory=frozenset)

    @property
    def empty(self) -> bool:
        return self.pipeline is None


def _build_pipeline() -> Pipeline:
    return Pipeline([
        ("counts", CountVectorizer(token_pattern=r"(?u)\b\w+\b")),
        ("nb", MultinomialNB(alpha=1.0)),
    ])


def _category_matches_seed(category: Category, aliases: Iterable[str]) -> bool:
    name = normalize(category.name)
    if not name:
        return False
    for alias in aliases:
        alias_norm = normalize(alias)
        if name == alias_norm or alias_norm in name.split() or name in alias_norm.split():
            return True
    return False


def seed_documents(categories: Sequence[Category]) -> list[tuple[str, str]]:
    documents: list[tuple[str, str]] = []
    for canonical, (seed_type, aliases, keywords) in SEED_VOCABULARY.items():
        names = (canonical, *aliases)
        for category in categories:
            if category.type != seed_type or not _category_matches_seed(category, names):
                continue
            documents.extend((normalize(keyword), category.id) for keyword in keywords)
    return documents


class BayesClassifier(Classifier):
    def __init__(self, sample_size: int = 1000, min_transactions: int = MIN_TRAINING_TRANSACTIONS):
        self.sample_size = sample_size
        self.min_transactions = min_transactions
        self._model = ClassifierModel()
        self._stale = True
        self._train_lock = threading.Lock()

    @property
    def model(self) -> ClassifierModel:
        return self._model

    @property
    def trained(self) -> bool:
        return self._model.trained

    @property
    def stale(self) -> bool:
        return self._stale

    def mark_stale(self) -> None:
        self._stale = True

    def train(self, transactions: Iterable[Transaction], categories: Sequence[Category]) -> bool:
        """
        Rebuild the model from a snapshot of categorized transactions.

        Returns True only when enough history exists. With too little
        history the model is built from the seed vocabulary instead and
        ``trained`` stays False.
        """
        known_ids = {category.id for category in categories}
        categorized = [
            t for t in transactions
            if t.category_id and t.category_id in known_ids
        ][: self.sample_size]

        with self._train_lock:
            if len(categorized) < self.min_transactions:
                logger.info(
                    "[TRAIN] Only %d categorized transactions (need %d); using seed vocabulary.",
                    len(categorized),
                    self.min_transactions,
                )
                model = self._fit(seed_documents(categories), trained=False, seeded=True)
            else:
                documents: list[tuple[str, str]] = []
                for transaction in categorized:
                    documents.append((normalize(transaction.description), transaction.category_id))
                    if transaction.merchant:
                        documents.append((normalize(transaction.merchant), transaction.category_id))
                model = self._fit(documents, trained=True, seeded=False)

            self._model = model
            self._stale = False

        logger.info(
            "[TRAIN] Classifier ready: trained=%s seeded=%s documents=%d categories=%d",
            model.trained,
            model.seeded,
            model.document_count,
            len(model.categories),
        )
        return model.trained

    @staticmethod
    def _fit(documents: list[tuple[str, str]], *, trained: bool, seeded: bool) -> ClassifierModel:
        documents = [(text, label) for text, label in documents if text]
        if not documents:
            return ClassifierModel(trained=False, seeded=seeded)
        texts = [text for text, _ in documents]
        labels = [label for _, label in documents]
        pipeline = _build_pipeline()
        try:
            pipeline.fit(texts, labels)
        except ValueError as exc:
            logger.warning("[TRAIN] Could not fit classifier: %s", exc)
            return ClassifierModel(trained=False, seeded=seeded)
        return ClassifierModel(
            pipeline=pipeline,
            labels=tuple(str(label) for label in pipeline.classes_),
            trained=trained,
            seeded=seeded,
            document_count=len(documents),
            categories=frozenset(labels),
        )

    def classify(self, text: str | None) -> list[tuple[str, float]]:
        """Category ids ranked by posterior. Empty when nothing is known about the text."""
        model = self._model
        processed = normalize(text)
        if model.pipeline is None or not processed:
            return []
        features = model.pipeline.named_steps["counts"].transform([processed])
        if features.nnz == 0:
            return []
        probabilities = model.pipeline.named_steps["nb"].predict_proba(features)[0]
        ranked = sorted(zip(model.labels, probabilities), key=lambda item: item[1], reverse=True)
        return [(label, float(probability)) for label, probability in ranked]

    def match(self, transaction: Transaction) -> CategoryMatch | None:
        ranked = self.classify(transaction.description)
        if not ranked:
            return None
        category_id, confidence = ranked[0]
        origin = "seed keywords" if self._model.seeded else "previously categorized transactions"
        return CategoryMatch(
            category_id=category_id,
            confidence=confidence,
            source=SuggestionSource.BAYES_CLASSIFIER,
            reasoning=f"Matched based on text similarity to {origin}",
        )

    def learn(self, transaction: Transaction) -> None:
        # The model is rebuilt wholesale on the next training pass.
        self.mark_stale()

    def status(self) -> dict[str, object]:
        model = self._model
        return {
            "trained": model.trained,
            "seeded": model.seeded,
            "documents": model.document_count,
            "categories": len(model.categories),
            "stale": self._stale,
        }

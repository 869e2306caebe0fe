import re
from collections.abc import Iterable, Sequence
from datetime import date
from time import perf_counter

from spendsort.core.configuration import CategorizerConfig
from spendsort.domain.merchants import MerchantExtractor, extract_merchant, merchant_key
from spendsort.domain.similarity import similarity
from spendsort.domain.text import find_common_words, normalize
from spendsort.domain.timefmt import format_duration, year_month
from spendsort.logger import get_logger
from spendsort.models import Batch, BatchMetadata, BatchStrategy, Transaction, TransactionType
from spendsort.services.statistics import calculate_statistics, generate_title

logger = get_logger(__name__)

_SLUG_NOISE = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    return _SLUG_NOISE.sub("-", text.lower()).strip("-") or "unknown"


def _chronological_key(transaction: Transaction) -> tuple[bool, date]:
    # Undated transactions sort last.
    return transaction.date is None, transaction.date or date.min


def _uniform_type(transactions: Sequence[Transaction]) -> TransactionType | None:
    types = {t.type for t in transactions}
    return types.pop() if len(types) == 1 else None


class BatchOrganizer:
    """
    Groups transactions into reviewable batches in three passes.

    Merchant groups are claimed first, then near-duplicate descriptions, and
    whatever is left is grouped by type, source and month. Every input
    transaction lands in exactly one batch and no batch exceeds
    ``max_batch_size``.
    """

    def __init__(
        self,
        config: CategorizerConfig | None = None,
        merchant_extractor: MerchantExtractor = extract_merchant,
    ):
        self.config = config or CategorizerConfig()
        self.merchant_extractor = merchant_extractor

    @property
    def max_size(self) -> int:
        return self.config.max_batch_size

    def _chunks(self, transactions: Sequence[Transaction]) -> list[list[Transaction]]:
        if len(transactions) <= self.max_size:
            return [list(transactions)]
        ordered = sorted(transactions, key=_chronological_key)
        return [ordered[start:start + self.max_size] for start in range(0, len(ordered), self.max_size)]

    def split(self, transactions: Sequence[Transaction]) -> list[tuple[TransactionType | None, list[Transaction]]]:
        """Split an oversized group by type, then chronologically. Small groups are returned whole."""
        if len(transactions) <= self.max_size:
            return [(_uniform_type(transactions), list(transactions))]
        by_type: dict[TransactionType, list[Transaction]] = {}
        for transaction in transactions:
            by_type.setdefault(transaction.type, []).append(transaction)
        parts = []
        for kind, members in by_type.items():
            parts.extend((kind, chunk) for chunk in self._chunks(members))
        return parts

    def _merchant_pass(
        self,
        transactions: Sequence[Transaction],
    ) -> tuple[list[tuple[str, list[Transaction], BatchMetadata]], list[Transaction]]:
        groups: dict[str, list[Transaction]] = {}
        names: dict[str, str] = {}
        leftover: list[Transaction] = []
        for transaction in transactions:
            merchant = self.merchant_extractor(transaction)
            if not merchant:
                leftover.append(transaction)
                continue
            key = merchant_key(merchant)
            groups.setdefault(key, []).append(transaction)
            names.setdefault(key, merchant)

        batches = []
        for key, members in groups.items():
            if len(members) < self.config.min_merchant_group:
                leftover.extend(members)
                continue
            parts = self.split(members)
            for kind, chunk in parts:
                base = f"merchant_{kind.value if kind else 'mixed'}_{slugify(key)}"
                metadata = BatchMetadata(strategy=BatchStrategy.MERCHANT, merchant=names[key], type=kind)
                batches.append((base, chunk, metadata))
        logger.debug("[BATCH] Merchant pass: %d batches, %d left over", len(batches), len(leftover))
        return batches, leftover

    def cluster(self, transactions: Iterable[Transaction]) -> list[list[Transaction]]:
        """Seed clustering: each transaction joins the first cluster whose seed it resembles."""
        clusters: list[list[Transaction]] = []
        for transaction in transactions:
            for members in clusters:
                if similarity(members[0].description, transaction.description) >= self.config.cluster_threshold:
                    members.append(transaction)
                    break
            else:
                clusters.append([transaction])
        return clusters

    def _similarity_pass(
        self,
        transactions: Sequence[Transaction],
    ) -> tuple[list[tuple[str, list[Transaction], BatchMetadata]], list[Transaction]]:
        describable = [t for t in transactions if normalize(t.description)]
        leftover = [t for t in transactions if not normalize(t.description)]

        batches = []
        number = 0
        for members in self.cluster(describable):
            if len(members) < 2:
                leftover.extend(members)
                continue
            number += 1
            keywords = find_common_words(t.description for t in members)
            for kind, chunk in self.split(members):
                metadata = BatchMetadata(strategy=BatchStrategy.SIMILARITY, keywords=keywords, type=kind)
                batches.append((f"similar_{number}", chunk, metadata))
        logger.debug("[BATCH] Similarity pass: %d batches, %d left over", len(batches), len(leftover))
        return batches, leftover

    def _fallback_pass(self, transactions: Sequence[Transaction]) -> list[tuple[str, list[Transaction], BatchMetadata]]:
        groups: dict[tuple[TransactionType, str, str], list[Transaction]] = {}
        for transaction in transactions:
            key = (transaction.type, transaction.origin, year_month(transaction.date))
            groups.setdefault(key, []).append(transaction)

        sources_per_period: dict[tuple[TransactionType, str], int] = {}
        for kind, _, period in groups:
            sources_per_period[(kind, period)] = sources_per_period.get((kind, period), 0) + 1

        batches = []
        for (kind, origin, period), members in groups.items():
            base = f"batch_{kind.value}_{period}"
            if sources_per_period[(kind, period)] > 1:
                base = f"{base}_{slugify(origin)}"
            for chunk in self._chunks(members):
                batches.append((base, chunk, BatchMetadata(strategy=BatchStrategy.FALLBACK, type=kind)))
        return batches

    def _build(self, batch_id: str, transactions: list[Transaction], metadata: BatchMetadata) -> Batch:
        assigned = [t.model_copy(update={"batch_id": batch_id}) for t in transactions]
        return Batch(
            id=batch_id,
            transactions=assigned,
            metadata=metadata,
            statistics=calculate_statistics(assigned),
            title=generate_title(batch_id, assigned, metadata),
        )

    def organize(self, transactions: Iterable[Transaction]) -> list[Batch]:
        started = perf_counter()
        transactions = list(transactions)
        if not transactions:
            return []

        merchant_batches, remaining = self._merchant_pass(transactions)
        similar_batches, remaining = self._similarity_pass(remaining)
        fallback_batches = self._fallback_pass(remaining)
        planned = merchant_batches + similar_batches + fallback_batches

        # Chunks of one group share a base id; number them only when there are several.
        totals: dict[str, int] = {}
        for base, _, _ in planned:
            totals[base] = totals.get(base, 0) + 1
        seen: dict[str, int] = {}
        batches = []
        for base, members, metadata in planned:
            batch_id = base
            if totals[base] > 1:
                seen[base] = seen.get(base, 0) + 1
                batch_id = f"{base}_{seen[base]}"
            batches.append(self._build(batch_id, members, metadata))

        logger.info(
            "[BATCH] Organized %d transactions into %d batches (merchant: %d, similar: %d, fallback: %d) in %s",
            len(transactions),
            len(batches),
            len(merchant_batches),
            len(similar_batches),
            len(fallback_batches),
            format_duration(perf_counter() - started),
        )
        return batches

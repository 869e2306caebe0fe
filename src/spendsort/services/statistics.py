import re
from collections import Counter
from collections.abc import Sequence
from decimal import Decimal

from spendsort.domain.text import find_common_words
from spendsort.domain.timefmt import date_range, format_date_range, month_name
from spendsort.logger import get_logger
from spendsort.models import BatchMetadata, BatchStatistics, Transaction, TransactionType

logger = get_logger(__name__)

EMPTY_BATCH_TITLE = "Empty Batch"
DOMINANT_MERCHANT_SHARE = 0.5
DESCRIPTION_PREVIEW = 30

_PERIOD_BATCH_ID = re.compile(r"^batch_(income|expense)_(\d{4})-(\d{2})(?:_|$)")


def calculate_statistics(transactions: Sequence[Transaction]) -> BatchStatistics:
    """Totals, counts, date range and sources. Missing amounts are skipped, not fatal."""
    total_income = Decimal("0")
    total_expense = Decimal("0")
    income_count = 0
    expense_count = 0
    skipped = 0
    sources: list[str] = []

    for transaction in transactions:
        if transaction.type == TransactionType.INCOME:
            income_count += 1
        else:
            expense_count += 1
        if transaction.origin not in sources:
            sources.append(transaction.origin)
        if transaction.amount is None:
            skipped += 1
            logger.warning("[BATCH] Transaction %s has no usable amount; excluded from totals", transaction.id)
            continue
        if transaction.type == TransactionType.INCOME:
            total_income += transaction.amount
        else:
            total_expense += transaction.amount

    return BatchStatistics(
        total_income=total_income,
        total_expense=total_expense,
        income_count=income_count,
        expense_count=expense_count,
        transaction_count=len(transactions),
        categorized_count=sum(1 for t in transactions if t.category_id),
        date_range=date_range(t.date for t in transactions),
        sources=sources,
        skipped_amounts=skipped,
    )


def _period_title(batch_id: str) -> str | None:
    match = _PERIOD_BATCH_ID.match(batch_id)
    if not match:
        return None
    kind, year, month = match.groups()
    if not 1 <= int(month) <= 12:
        return None
    label = TransactionType(kind).label
    return f"{label} - {month_name(int(month))} {year}"


def _shared_type(transactions: Sequence[Transaction]) -> TransactionType | None:
    """The common type of a multi-transaction batch, or None when mixed or single."""
    if len(transactions) < 2:
        return None
    types = {t.type for t in transactions}
    return types.pop() if len(types) == 1 else None


def _dominant_merchant(transactions: Sequence[Transaction]) -> str | None:
    counts = Counter(t.merchant for t in transactions if t.merchant)
    if not counts:
        return None
    merchant, count = counts.most_common(1)[0]
    if count >= len(transactions) * DOMINANT_MERCHANT_SHARE:
        return merchant
    return None


def _labelled(subject: str, shared: TransactionType | None, mixed: str) -> str:
    if shared is not None:
        return f"{subject} - {shared.label}"
    return mixed


def generate_title(
    batch_id: str,
    transactions: Sequence[Transaction],
    metadata: BatchMetadata | None = None,
) -> str:
    """
    Derive a human-readable batch title. First rule that applies wins:

    1. ``batch_<type>_<YYYY-MM>`` ids render as ``Income - March 2025``.
    2. Metadata summary, merchant or keywords.
    3. A single transaction with a merchant.
    4. A merchant covering at least half of the batch.
    5. Significant words shared by at least half of the descriptions.
    6. Type and date range.
    """
    if not transactions:
        return EMPTY_BATCH_TITLE

    period = _period_title(batch_id)
    if period:
        return period

    shared = _shared_type(transactions)

    if metadata is not None:
        if metadata.summary:
            return metadata.summary
        if metadata.merchant:
            return _labelled(metadata.merchant, shared, f"Transactions from {metadata.merchant}")
        if metadata.keywords:
            words = " ".join(metadata.keywords)
            return _labelled(words, shared, f"{words} Transactions")

    if len(transactions) == 1 and transactions[0].merchant:
        only = transactions[0]
        return f"{only.merchant} - {only.description[:DESCRIPTION_PREVIEW]}"

    merchant = _dominant_merchant(transactions)
    if merchant:
        return _labelled(merchant, shared, f"Transactions from {merchant}")

    common = find_common_words(t.description for t in transactions)
    if common:
        words = " ".join(common)
        return _labelled(words, shared, f"{words} Transactions")

    dates = format_date_range(date_range(t.date for t in transactions))
    if shared is not None:
        return f"{shared.label} - {dates}"
    return f"Transactions from {dates}"

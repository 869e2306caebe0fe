import datetime as dt
import math
import re
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from spendsort.logger import get_logger

logger = get_logger(__name__)

_AMOUNT_NOISE = re.compile(r"[,\s$€£]")


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"

    @property
    def label(self) -> str:
        return "Income" if self is TransactionType.INCOME else "Expenses"


class EnrichmentStatus(str, Enum):
    PENDING = "pending"
    ENRICHED = "enriched"
    COMPLETED = "completed"


class SuggestionSource(str, Enum):
    EXACT_MATCH = "exact-match"
    SIMILAR_MATCH = "similar-match"
    BAYES_CLASSIFIER = "bayes-classifier"
    EXTERNAL_AI = "external-ai"
    EXTERNAL_AI_CACHE = "external-ai-cache"
    NONE = "none"
    ERROR = "error"
    TIMEOUT = "timeout"


def parse_amount(value: Any) -> Decimal | None:
    """Parse a raw amount into a non-negative Decimal, or None when unusable."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        parsed = Decimal(str(value))
    else:
        text = _AMOUNT_NOISE.sub("", str(value))
        negative = text.startswith("(") and text.endswith(")")
        text = text.strip("()")
        try:
            parsed = Decimal(text)
        except InvalidOperation:
            return None
        if negative:
            parsed = -parsed
    if not parsed.is_finite():
        return None
    return abs(parsed)


def parse_date(value: Any) -> dt.date | None:
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, str):
        try:
            return dt.datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    date: dt.date | None = None
    description: str = ""
    merchant: str | None = None
    amount: Decimal | None = Decimal("0")
    type: TransactionType = TransactionType.EXPENSE
    category_id: str | None = None
    source: str | None = None
    account_type: str | None = None
    batch_id: str | None = None
    enrichment_status: EnrichmentStatus = EnrichmentStatus.PENDING

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> dt.date | None:
        parsed = parse_date(value)
        if parsed is None and value not in (None, ""):
            logger.warning("[MODEL] Ignoring unparseable date %r", value)
        return parsed

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Decimal | None:
        parsed = parse_amount(value)
        if parsed is None and value is not None:
            logger.warning("[MODEL] Ignoring unparseable amount %r", value)
        return parsed

    @field_validator("description", mode="before")
    @classmethod
    def _coerce_description(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("merchant", "source", "account_type", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @property
    def origin(self) -> str:
        return self.source or self.account_type or "unknown"


class Category(BaseModel):
    id: str
    name: str
    type: TransactionType = TransactionType.EXPENSE
    color: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)


class Suggestion(BaseModel):
    transaction_id: str
    category_id: str | None = None
    confidence: float = 0.0
    source: SuggestionSource = SuggestionSource.NONE
    reasoning: str = ""
    needs_review: bool = True

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        if math.isnan(number):
            return 0.0
        return min(1.0, max(0.0, number))


class CategoryMatch(BaseModel):
    category_id: str
    confidence: float
    source: SuggestionSource
    reasoning: str = ""


class ExternalCategorization(BaseModel):
    category_name: str | None = None
    confidence: float = 0.0
    reasoning: str = ""
    error: bool = False
    error_type: str | None = None
    from_cache: bool = False


class BatchSummary(BaseModel):
    summary: str | None = None
    insights: list[str] = Field(default_factory=list)
    error: bool = False
    error_type: str | None = None
    timed_out: bool = False
    from_cache: bool = False


class CategoryTally(BaseModel):
    category_id: str
    count: int
    average_confidence: float
    weighted_confidence: float


class ConfidenceLevels(BaseModel):
    high: int = 0
    medium: int = 0
    low: int = 0
    very_low: int = 0


class BatchSuggestionResult(BaseModel):
    suggestions: list[Suggestion] = Field(default_factory=list)
    top_category: str | None = None
    top_categories: list[CategoryTally] = Field(default_factory=list)
    average_confidence: float = 0.0
    needs_review: bool = True
    timed_out: bool = False
    confidence_levels: ConfidenceLevels = Field(default_factory=ConfidenceLevels)
    auto_count: int = 0
    review_count: int = 0


class DateRange(BaseModel):
    start: dt.date | None = None
    end: dt.date | None = None


class BatchStatistics(BaseModel):
    total_income: Decimal = Decimal("0")
    total_expense: Decimal = Decimal("0")
    income_count: int = 0
    expense_count: int = 0
    transaction_count: int = 0
    categorized_count: int = 0
    date_range: DateRange = Field(default_factory=DateRange)
    sources: list[str] = Field(default_factory=list)
    skipped_amounts: int = 0


class BatchStrategy(str, Enum):
    MERCHANT = "merchant"
    SIMILARITY = "similarity"
    FALLBACK = "fallback"


class BatchMetadata(BaseModel):
    strategy: BatchStrategy
    merchant: str | None = None
    keywords: list[str] = Field(default_factory=list)
    type: TransactionType | None = None
    summary: str | None = None
    insights: list[str] = Field(default_factory=list)


class Batch(BaseModel):
    id: str
    transactions: list[Transaction]
    metadata: BatchMetadata
    statistics: BatchStatistics = Field(default_factory=BatchStatistics)
    title: str = ""
    status: EnrichmentStatus = EnrichmentStatus.PENDING


class EnrichedBatch(BaseModel):
    batch: Batch
    suggestions: BatchSuggestionResult

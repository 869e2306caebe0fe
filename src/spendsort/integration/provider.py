import json
from abc import ABC, abstractmethod
from collections.abc import Sequence
from decimal import Decimal
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from spendsort.core.configuration import DEFAULT_OPENAI_MODEL, CategorizerConfig, ProviderConfig
from spendsort.logger import get_logger
from spendsort.models import BatchSummary, ExternalCategorization, Transaction, TransactionType

logger = get_logger(__name__)

DEFAULT_CONFIDENCE = 0.5
UNPARSED_CONFIDENCE = 0.3
CONNECT_TIMEOUT = 5.0
SUMMARY_MAX_WORDS = 8
SUMMARY_SAMPLE_SIZE = 15


class ProviderError(Exception):
    """Base class for failures reported by a categorization provider."""

    retryable = False
    error_type = "api_error"


class RateLimitedError(ProviderError):
    error_type = "rate_limited"


class ProviderClientError(ProviderError):
    """4xx-style rejection: bad key, bad request, unknown model."""


class TransientProviderError(ProviderError):
    retryable = True


class ResponseParseError(ProviderError):
    error_type = "parse_error"


class CategorizationProvider(ABC):
    @abstractmethod
    async def request_categorization(
        self,
        description: str,
        amount: Decimal | None,
        type: TransactionType,
        candidate_names: Sequence[str],
    ) -> ExternalCategorization:
        """Ask the service for one category suggestion."""

    @abstractmethod
    async def request_batch(
        self,
        transactions: Sequence[Transaction],
        candidate_names: Sequence[str],
    ) -> list[ExternalCategorization | None]:
        """One result per transaction, in input order. None marks a missing answer."""

    @abstractmethod
    async def request_summary(self, transactions: Sequence[Transaction]) -> BatchSummary:
        """A short title and a few insights for a group of transactions."""


def _coerce_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if confidence != confidence or confidence <= 0:
        return DEFAULT_CONFIDENCE
    return min(confidence, 1.0)


def _result_from_item(item: dict[str, Any]) -> ExternalCategorization:
    category = item.get("category") or item.get("category_name")
    return ExternalCategorization(
        category_name=str(category).strip() if category else None,
        confidence=_coerce_confidence(item.get("confidence")),
        reasoning=str(item.get("reasoning") or "No reasoning provided"),
    )


def parse_single_response(text: str) -> ExternalCategorization:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("[AI] Response was not JSON; using first line as the category")
        first_line = text.strip().splitlines()[0] if text.strip() else None
        return ExternalCategorization(
            category_name=first_line,
            confidence=UNPARSED_CONFIDENCE,
            reasoning="Error parsing structured response",
        )
    if not isinstance(payload, dict):
        raise ResponseParseError(f"Unexpected response shape: {type(payload).__name__}")
    return _result_from_item(payload)


def parse_batch_response(text: str, size: int) -> list[ExternalCategorization | None]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ResponseParseError(f"Batch response is not JSON: {exc}") from exc

    items: list[Any]
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict) and isinstance(payload.get("results"), list):
        items = payload["results"]
    elif isinstance(payload, dict):
        # Older flat format: category0, confidence0, reasoning0, ...
        items = []
        for index in range(size):
            if f"category{index}" in payload:
                items.append({
                    "transactionIndex": index,
                    "category": payload.get(f"category{index}"),
                    "confidence": payload.get(f"confidence{index}"),
                    "reasoning": payload.get(f"reasoning{index}"),
                })
    else:
        raise ResponseParseError(f"Unexpected batch response shape: {type(payload).__name__}")

    results: list[ExternalCategorization | None] = [None] * size
    for position, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        index = item.get("transactionIndex", position)
        try:
            index = int(index)
        except (TypeError, ValueError):
            continue
        if 0 <= index < size:
            results[index] = _result_from_item(item)
    return results


def _short_summary(text: str | None) -> str | None:
    words = str(text or "").split()
    if not words:
        return None
    return " ".join(words[:SUMMARY_MAX_WORDS])


def parse_summary_response(text: str) -> BatchSummary:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        logger.warning("[AI] Summary response was not JSON; using the first line")
        return BatchSummary(summary=_short_summary(lines[0]) if lines else None, insights=lines[1:])
    if not isinstance(payload, dict):
        raise ResponseParseError(f"Unexpected summary shape: {type(payload).__name__}")
    insights = payload.get("insights") or []
    if not isinstance(insights, list):
        insights = [insights]
    return BatchSummary(
        summary=_short_summary(payload.get("summary")),
        insights=[str(insight) for insight in insights if insight],
    )


def is_api_key_format(api_key: str | None) -> bool:
    return bool(api_key) and api_key.startswith("sk-")


class OpenAIProvider(CategorizationProvider):
    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_OPENAI_MODEL,
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
        timeout: float = 10.0,
    ):
        # Retries live in ExternalCategorizationClient.
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            max_retries=0,
            timeout=httpx.Timeout(timeout, connect=min(timeout, CONNECT_TIMEOUT)),
        )
        self.model = model

    async def _complete(self, system: str, user: str, max_tokens: int) -> str:
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=0.2,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
            )
        except openai.RateLimitError as exc:
            raise RateLimitedError(str(exc)) from exc
        except (openai.APITimeoutError, openai.APIConnectionError) as exc:
            raise TransientProviderError(str(exc)) from exc
        except openai.InternalServerError as exc:
            raise TransientProviderError(str(exc)) from exc
        except openai.APIStatusError as exc:
            raise ProviderClientError(f"{exc.status_code}: {exc}") from exc

        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise ResponseParseError("Empty response from provider")
        return content.strip()

    async def request_categorization(
        self,
        description: str,
        amount: Decimal | None,
        type: TransactionType,
        candidate_names: Sequence[str],
    ) -> ExternalCategorization:
        system = "You are a financial transaction categorizer. Analyze the transaction and provide a category."
        if candidate_names:
            options = "\n".join(f"- {name}" for name in candidate_names)
            system += (
                f"\n\nPlease categorize into one of these existing categories:\n{options}"
                "\n\nIf none fit well, suggest a new category name."
            )
        system += (
            "\n\nRespond with a JSON object containing:\n"
            "1. category: The suggested category name\n"
            "2. confidence: Your confidence score (0.0-1.0) in this categorization\n"
            "3. reasoning: Brief explanation for why this category fits"
        )
        user = f'Categorize this {type.value} transaction: "{description}" for ${amount}'
        text = await self._complete(system, user, max_tokens=300)
        logger.debug("[AI] Raw response: %s", text)
        return parse_single_response(text)

    async def request_batch(
        self,
        transactions: Sequence[Transaction],
        candidate_names: Sequence[str],
    ) -> list[ExternalCategorization | None]:
        system = "You are a financial transaction categorizer. Analyze each transaction and provide a category."
        if candidate_names:
            options = "\n".join(f"- {name}" for name in candidate_names)
            system += (
                f"\n\nPlease categorize each transaction into one of these existing categories:\n{options}"
                "\n\nIf none fit well, suggest a new category name."
            )
        system += (
            "\n\nRespond with a JSON object with a `results` array where each element contains:\n"
            "1. transactionIndex: The index of the transaction (starting at 0)\n"
            "2. category: The suggested category name\n"
            "3. confidence: Your confidence score (0.0-1.0) in this categorization\n"
            "4. reasoning: Brief explanation for why this category fits"
        )
        lines = "\n".join(
            f'Transaction {index}: "{t.description}" for ${t.amount} ({t.type.value})'
            for index, t in enumerate(transactions)
        )
        text = await self._complete(system, f"Please categorize these transactions:\n\n{lines}", max_tokens=1000)
        logger.debug("[AI] Batch response: %d chars", len(text))
        return parse_batch_response(text, len(transactions))

    async def request_summary(self, transactions: Sequence[Transaction]) -> BatchSummary:
        system = (
            "You are a financial analyst assistant. Analyze the transactions and provide a concise summary. "
            "Focus on dominant merchants, time periods, subscriptions, travel or unusual spending."
            f"\n\nThe summary MUST be no longer than {SUMMARY_MAX_WORDS} words."
            "\n\nRespond with a JSON object containing:\n"
            f"1. summary: Your {SUMMARY_MAX_WORDS}-words-or-less summary\n"
            "2. insights: Array of brief insights"
        )
        sample = transactions[:SUMMARY_SAMPLE_SIZE]
        lines = [
            f'Transaction {index}: "{t.description}" for ${t.amount} ({t.type.value})'
            + (f" - Merchant: {t.merchant}" if t.merchant else "")
            for index, t in enumerate(sample, start=1)
        ]
        if len(transactions) > len(sample):
            lines.append(f"(Showing {len(sample)} of {len(transactions)} total transactions)")
        dates = sorted(t.date for t in transactions if t.date)
        period = f"Date range: {dates[0]} to {dates[-1]}" if dates else "Date range: Unknown"
        total = sum((t.amount for t in transactions if t.amount is not None), Decimal("0"))
        user = (
            "Please analyze these transactions and provide a summary and key insights as a JSON object:\n\n"
            + "\n".join(lines)
            + f"\n\n{period}\nTotal amount: ${total:.2f}\nTotal transactions: {len(transactions)}"
        )
        text = await self._complete(system, user, max_tokens=400)
        logger.debug("[AI] Summary response: %d chars", len(text))
        return parse_summary_response(text)


class FailingProvider(CategorizationProvider):
    """Provider that fails every call. Used to exercise the fallback paths."""

    def __init__(self, error: Exception | None = None):
        self.error = error or TransientProviderError("Simulated provider failure")
        self.calls = 0

    async def request_categorization(
        self,
        description: str,
        amount: Decimal | None,
        type: TransactionType,
        candidate_names: Sequence[str],
    ) -> ExternalCategorization:
        self.calls += 1
        raise self.error

    async def request_batch(
        self,
        transactions: Sequence[Transaction],
        candidate_names: Sequence[str],
    ) -> list[ExternalCategorization | None]:
        self.calls += 1
        raise self.error

    async def request_summary(self, transactions: Sequence[Transaction]) -> BatchSummary:
        self.calls += 1
        raise self.error


def build_provider(provider_config: ProviderConfig, config: CategorizerConfig) -> CategorizationProvider | None:
    if provider_config.simulate_failure:
        logger.warning("SIMULATE_AI_FAILURE is set. External categorization calls will fail.")
        return FailingProvider()
    if not provider_config.configured:
        logger.info("OPENAI_API_KEY not set. External categorization will be disabled.")
        return None
    return OpenAIProvider(
        api_key=provider_config.api_key,
        model=provider_config.model,
        base_url=provider_config.base_url,
        timeout=config.request_timeout,
    )

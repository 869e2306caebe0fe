from pydantic import BaseModel, Field

from spendsort.models import Category, Transaction


class SuggestRequest(BaseModel):
    transaction: Transaction
    confidence_threshold: float | None = Field(None, ge=0.0, le=1.0)


class BatchRequest(BaseModel):
    transactions: list[Transaction]
    confidence_threshold: float | None = Field(None, ge=0.0, le=1.0)


class HistoryRequest(BaseModel):
    transactions: list[Transaction] = Field(default_factory=list)
    categories: list[Category] = Field(default_factory=list)


class LearnRequest(BaseModel):
    transaction: Transaction
    category_id: str


class SimilarRequest(BaseModel):
    transaction: Transaction
    candidates: list[Transaction]
    threshold: float = Field(0.7, ge=0.0, le=1.0)


class SimilarTransaction(BaseModel):
    transaction: Transaction
    score: float


class ApiKeyRequest(BaseModel):
    api_key: str = Field(..., min_length=1)

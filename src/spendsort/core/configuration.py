import os

from pydantic import BaseModel, Field

from spendsort.core import settings
from spendsort.logger import get_logger

logger = get_logger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4o"


class CategorizerConfig(BaseModel):
    """Tunables consumed by the cascade, the AI client and the batch organizer."""

    confidence_threshold: float = Field(0.7, ge=0.0, le=1.0)
    max_batch_size: int = Field(25, ge=1)
    min_merchant_group: int = Field(3, ge=1)
    cluster_threshold: float = Field(0.85, ge=0.0, le=1.0)
    match_threshold: float = Field(0.7, ge=0.0, le=1.0)
    recent_sample_size: int = Field(100, ge=1)
    training_sample_size: int = Field(1000, ge=1)
    new_user_threshold: int = Field(10, ge=0)

    sub_batch_size: int = Field(5, ge=1)
    sub_batch_pause: float = Field(0.5, ge=0.0)
    batch_timeout: float = Field(30.0, gt=0.0)

    request_timeout: float = Field(10.0, gt=0.0)
    max_retries: int = Field(3, ge=0)
    retry_base_delay: float = Field(1.0, ge=0.0)
    rate_limit_cooldown: float = Field(60.0, ge=0.0)
    cache_ttl: float = Field(24 * 60 * 60, ge=0.0)
    cache_size: int = Field(1000, ge=1)
    ai_batch_size: int = Field(10, ge=1)
    ai_batch_pause: float = Field(0.5, ge=0.0)
    summary_timeout: float = Field(15.0, gt=0.0)

    @classmethod
    def from_env(cls) -> "CategorizerConfig":
        defaults = cls()
        return cls(
            confidence_threshold=settings.get_env_float(
                "CONFIDENCE_THRESHOLD", defaults.confidence_threshold, min_value=0.0, max_value=1.0
            ),
            max_batch_size=settings.get_env_int("MAX_BATCH_SIZE", defaults.max_batch_size, min_value=1),
            min_merchant_group=settings.get_env_int(
                "MIN_MERCHANT_GROUP", defaults.min_merchant_group, min_value=1
            ),
            cluster_threshold=settings.get_env_float(
                "CLUSTER_SIMILARITY_THRESHOLD", defaults.cluster_threshold, min_value=0.0, max_value=1.0
            ),
            match_threshold=settings.get_env_float(
                "MATCH_SIMILARITY_THRESHOLD", defaults.match_threshold, min_value=0.0, max_value=1.0
            ),
            recent_sample_size=settings.get_env_int(
                "RECENT_SAMPLE_SIZE", defaults.recent_sample_size, min_value=1
            ),
            training_sample_size=settings.get_env_int(
                "TRAINING_SAMPLE_SIZE", defaults.training_sample_size, min_value=1
            ),
            new_user_threshold=settings.get_env_int(
                "NEW_USER_THRESHOLD", defaults.new_user_threshold, min_value=0
            ),
            sub_batch_size=settings.get_env_int("SUB_BATCH_SIZE", defaults.sub_batch_size, min_value=1),
            sub_batch_pause=settings.get_env_float("SUB_BATCH_PAUSE", defaults.sub_batch_pause, min_value=0.0),
            batch_timeout=settings.get_env_float("BATCH_TIMEOUT", defaults.batch_timeout, min_value=0.001),
            request_timeout=settings.get_env_float(
                "AI_REQUEST_TIMEOUT", defaults.request_timeout, min_value=0.001
            ),
            max_retries=settings.get_env_int("AI_MAX_RETRIES", defaults.max_retries, min_value=0),
            retry_base_delay=settings.get_env_float(
                "AI_RETRY_BASE_DELAY", defaults.retry_base_delay, min_value=0.0
            ),
            rate_limit_cooldown=settings.get_env_float(
                "AI_RATE_LIMIT_COOLDOWN", defaults.rate_limit_cooldown, min_value=0.0
            ),
            cache_ttl=settings.get_env_float("AI_CACHE_TTL", defaults.cache_ttl, min_value=0.0),
            cache_size=settings.get_env_int("AI_CACHE_SIZE", defaults.cache_size, min_value=1),
            ai_batch_size=settings.get_env_int("AI_BATCH_SIZE", defaults.ai_batch_size, min_value=1),
            summary_timeout=settings.get_env_float(
                "AI_SUMMARY_TIMEOUT", defaults.summary_timeout, min_value=0.001
            ),
        )


class ProviderConfig(BaseModel):
    api_key: str | None = None
    model: str = DEFAULT_OPENAI_MODEL
    base_url: str | None = None
    simulate_failure: bool = False

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_env(cls) -> "ProviderConfig":
        return cls(
            api_key=os.getenv("OPENAI_API_KEY") or None,
            model=os.getenv("OPENAI_MODEL") or DEFAULT_OPENAI_MODEL,
            base_url=os.getenv("OPENAI_BASE_URL") or None,
            simulate_failure=settings.get_env_bool("SIMULATE_AI_FAILURE", False),
        )

import threading
from datetime import datetime, timezone
from time import monotonic, time
from typing import Any

from spendsort.logger import get_logger

logger = get_logger(__name__)

DEFAULT_RATE_LIMIT_COOLDOWN = 60.0

_COUNTERS = (
    "api_calls",
    "cache_hits",
    "batch_requests",
    "errors",
    "rate_limit_errors",
    "retries",
    "timeout_errors",
    "successful_calls",
)


class ExternalServiceMetrics:
    """
    Counters and rate-limit state for the external categorization service.

    One instance is owned by whoever wires the application together and is
    passed to the client and the cascade. All updates go through the lock.
    """

    def __init__(self, cooldown: float = DEFAULT_RATE_LIMIT_COOLDOWN):
        self.cooldown = cooldown
        self._lock = threading.Lock()
        self._counters: dict[str, int] = dict.fromkeys(_COUNTERS, 0)
        self._rate_limited_at: float | None = None
        self.last_rate_limit_time: datetime | None = None
        self.last_error: str | None = None
        self.last_error_time: datetime | None = None
        self.started_at = time()

    def __getattr__(self, name: str) -> int:
        counters = self.__dict__.get("_counters")
        if counters is not None and name in counters:
            return counters[name]
        raise AttributeError(name)

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def record_error(self, message: str, *, timeout: bool = False) -> None:
        with self._lock:
            self._counters["errors"] += 1
            if timeout:
                self._counters["timeout_errors"] += 1
            self.last_error = message
            self.last_error_time = datetime.now(timezone.utc)

    def mark_rate_limited(self) -> None:
        with self._lock:
            self._counters["rate_limit_errors"] += 1
            self._rate_limited_at = monotonic()
            self.last_rate_limit_time = datetime.now(timezone.utc)
        logger.warning("[AI] Rate limit signalled; pausing external calls for %.0fs", self.cooldown)

    @property
    def is_rate_limited(self) -> bool:
        return self.check_rate_limited()

    def check_rate_limited(self) -> bool:
        with self._lock:
            if self._rate_limited_at is None:
                return False
            if monotonic() - self._rate_limited_at < self.cooldown:
                return True
            self._rate_limited_at = None
        logger.info("[AI] Rate limit cool-down elapsed")
        return False

    def snapshot(self, cache_size: int | None = None) -> dict[str, Any]:
        rate_limited = self.check_rate_limited()
        with self._lock:
            data: dict[str, Any] = dict(self._counters)
            last_rate_limit = self.last_rate_limit_time
            last_error = self.last_error
            last_error_time = self.last_error_time
        runtime = time() - self.started_at
        lookups = data["api_calls"] + data["cache_hits"]
        data.update({
            "is_rate_limited": rate_limited,
            "last_rate_limit_time": last_rate_limit.isoformat() if last_rate_limit else None,
            "last_error": last_error,
            "last_error_time": last_error_time.isoformat() if last_error_time else None,
            "runtime_seconds": round(runtime, 1),
            "cache_hit_rate": round(data["cache_hits"] / lookups * 100) if lookups else 0,
        })
        if cache_size is not None:
            data["cache_size"] = cache_size
        return data

    def reset(self) -> None:
        """Zero the counters. Rate-limit state is kept so a reset cannot bypass a cool-down."""
        with self._lock:
            self._counters = dict.fromkeys(_COUNTERS, 0)
            self.started_at = time()
            self.last_error = f"Reset at {datetime.now(timezone.utc).isoformat()}"
            self.last_error_time = datetime.now(timezone.utc)
        logger.info("[AI] Metrics reset")

"""In-process request rate limiting."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Mapping

from flask import Response, current_app, g
from flask_login import current_user

from opshub.audit import resolve_client_ip
from opshub.errors import RateLimitExceeded


STRATEGIES = ("fixed_window", "sliding_window", "token_bucket")


@dataclass(frozen=True)
class RateLimitConfig:
    name: str
    strategy: str
    requests: int
    window: float

    def __post_init__(self):
        if self.strategy not in STRATEGIES:
            raise ValueError(f"Unknown rate limiting strategy: {self.strategy}")
        if self.requests <= 0 or self.window <= 0:
            raise ValueError("Rate limits need a positive request count and window")

    @classmethod
    def from_mapping(cls, name: str, values: Mapping[str, Any]) -> "RateLimitConfig":
        return cls(
            name=name,
            strategy=values.get("strategy", "fixed_window"),
            requests=int(values["requests"]),
            window=float(values["window"]),
        )


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset: float
    strategy: str
    retry_after: int | None = None

    def headers(self) -> dict[str, str]:
        values = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset))),
        }
        if self.retry_after is not None:
            values["Retry-After"] = str(self.retry_after)
        return values


@dataclass
class _Entry:
    data: dict[str, Any] = field(default_factory=dict)
    expires: float = 0.0


class MemoryRateLimitStore:
    """Thread safe key/value store whose entries expire after a TTL."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self.lock = threading.RLock()

    def get(self, key: str) -> dict[str, Any] | None:
        with self.lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() > entry.expires:
                del self._entries[key]
                return None
            return entry.data

    def set(self, key: str, data: dict[str, Any], ttl: float) -> None:
        with self.lock:
            self._entries[key] = _Entry(data=data, expires=self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self.lock:
            self._entries.pop(key, None)

    def cleanup(self) -> int:
        now = self._clock()
        with self.lock:
            expired = [key for key, entry in self._entries.items() if now > entry.expires]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)


class RateLimiter:
    def __init__(
        self,
        config: RateLimitConfig,
        store: MemoryRateLimitStore,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self._clock = clock

    def _key(self, identifier: str) -> str:
        return f"rate_limit:{self.config.name}:{identifier}"

    def check(self, identifier: str) -> RateLimitResult:
        key = self._key(identifier)
        with self.store.lock:
            if self.config.strategy == "fixed_window":
                return self._fixed_window(key)
            if self.config.strategy == "sliding_window":
                return self._sliding_window(key)
            return self._token_bucket(key)

    def reset(self, identifier: str) -> None:
        self.store.delete(self._key(identifier))

    def _result(self, allowed: bool, remaining: int, reset: float, retry_after=None):
        return RateLimitResult(
            allowed=allowed,
            limit=self.config.requests,
            remaining=max(0, remaining),
            reset=reset,
            strategy=self.config.strategy,
            retry_after=retry_after,
        )

    def _fixed_window(self, key: str) -> RateLimitResult:
        now = self._clock()
        window = self.config.window
        window_start = math.floor(now / window) * window
        reset = window_start + window
        existing = self.store.get(key)

        if existing is None or existing["window_start"] != window_start:
            self.store.set(key, {"count": 1, "window_start": window_start}, window)
            return self._result(True, self.config.requests - 1, reset)

        if existing["count"] >= self.config.requests:
            return self._result(False, 0, reset, retry_after=max(1, math.ceil(reset - now)))

        existing["count"] += 1
        self.store.set(key, existing, window)
        return self._result(True, self.config.requests - existing["count"], reset)

    def _sliding_window(self, key: str) -> RateLimitResult:
        now = self._clock()
        window = self.config.window
        existing = self.store.get(key) or {}
        queue = [stamp for stamp in existing.get("queue", []) if stamp > now - window]

        if len(queue) >= self.config.requests:
            # Rejected requests are not recorded, so the oldest entry bounds the wait.
            retry_after = max(1, math.ceil(queue[0] + window - now))
            self.store.set(key, {"queue": queue}, window)
            return self._result(False, 0, queue[0] + window, retry_after=retry_after)

        queue.append(now)
        self.store.set(key, {"queue": queue}, window)
        return self._result(True, self.config.requests - len(queue), queue[0] + window)

    def _token_bucket(self, key: str) -> RateLimitResult:
        now = self._clock()
        capacity = self.config.requests
        refill_interval = self.config.window / capacity
        ttl = self.config.window * 2
        existing = self.store.get(key)

        if existing is None:
            self.store.set(key, {"tokens": capacity - 1, "last_refill": now}, ttl)
            return self._result(True, capacity - 1, now + refill_interval)

        elapsed = now - existing["last_refill"]
        refilled = int(elapsed // refill_interval)
        tokens = min(capacity, existing["tokens"] + refilled)
        last_refill = existing["last_refill"] + refilled * refill_interval
        if tokens >= capacity:
            last_refill = now

        if tokens <= 0:
            wait = last_refill + refill_interval - now
            self.store.set(key, {"tokens": 0, "last_refill": last_refill}, ttl)
            return self._result(
                False, 0, last_refill + refill_interval, retry_after=max(1, math.ceil(wait))
            )

        tokens -= 1
        self.store.set(key, {"tokens": tokens, "last_refill": last_refill}, ttl)
        return self._result(True, tokens, last_refill + refill_interval)


def get_store() -> MemoryRateLimitStore:
    store = current_app.extensions.get("opshub_rate_limit_store")
    if store is None:
        store = MemoryRateLimitStore()
        current_app.extensions["opshub_rate_limit_store"] = store
    return store


def get_limiter(name: str) -> RateLimiter:
    limits = current_app.config.get("RATE_LIMITS") or {}
    if name not in limits:
        raise KeyError(f"No rate limit named {name!r} is configured")
    return RateLimiter(RateLimitConfig.from_mapping(name, limits[name]), get_store())


def _client_identifier() -> str:
    if current_user.is_authenticated:
        return f"user:{current_user.get_id()}"
    return f"ip:{resolve_client_ip() or 'unknown'}"


def rate_limited(name: str):
    """Decorator applying the configured ``RATE_LIMITS[name]`` limit."""

    def decorator(view_func):
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            if not current_app.config.get("RATE_LIMIT_ENABLED", True):
                return view_func(*args, **kwargs)

            result = get_limiter(name).check(_client_identifier())
            g.rate_limit_result = result
            if not result.allowed:
                current_app.logger.warning(
                    "Rate limit %s exceeded for %s", name, _client_identifier()
                )
                raise RateLimitExceeded(
                    retry_after=result.retry_after or 1, limit=result.limit
                )
            return view_func(*args, **kwargs)

        return wrapped

    return decorator


def apply_rate_limit_headers(response: Response) -> Response:
    result = g.get("rate_limit_result")
    if result is not None:
        for name, value in result.headers().items():
            response.headers[name] = value
    return response

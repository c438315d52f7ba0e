"""Multi-rule sliding-window throttling for credential endpoints.

Each rule maps a request to an optional key. Every applicable rule records a
hit, and the request is rejected when any rule's count for its key exceeds the
rule's limit within the trailing window.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Protocol, Tuple

from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.storage.models import normalize_email

logger = get_logger(__name__)

LOGIN_PATH_MARKER = "sessions/login"
PASSWORD_RESET_PATH_MARKER = "password/forgot"


@dataclass(frozen=True)
class RequestInfo:
    """The parts of an inbound request the throttles look at."""

    method: str
    path: str
    ip: Optional[str] = None
    email: Optional[str] = None


KeyExtractor = Callable[[RequestInfo], Optional[str]]


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    key_extractor: KeyExtractor
    limit: int
    window_seconds: int

    def key_for(self, request: RequestInfo) -> Optional[str]:
        key = self.key_extractor(request)
        return key or None


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    rule: Optional[RateLimitRule] = None
    status_code: int = 200
    message: Optional[str] = None
    retry_after: int = 0
    counts: Dict[str, int] = field(default_factory=dict)

    def body(self) -> dict:
        return {"error": self.message}

    def headers(self) -> dict:
        return {"Retry-After": str(self.retry_after)} if not self.allowed else {}


class CounterStore(Protocol):
    def hit(self, key: str, window_seconds: int, now: float) -> int:
        """Record one event for ``key`` and return the count inside the window."""
        ...


class InMemoryCounterStore:
    """True sliding window of hit timestamps, guarded by a mutex."""

    def __init__(self) -> None:
        self._hits: Dict[str, Deque[float]] = {}
        # Each key ages out on its own rule's window
        self._windows: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._last_sweep = 0.0

    def hit(self, key: str, window_seconds: int, now: float) -> int:
        cutoff = now - window_seconds
        with self._lock:
            bucket = self._hits.setdefault(key, deque())
            self._windows[key] = window_seconds
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            bucket.append(now)
            count = len(bucket)
            if now - self._last_sweep >= window_seconds:
                self._sweep(now)
            return count

    def _sweep(self, now: float) -> None:
        # Drop keys whose newest hit has aged out so idle clients don't pile up
        stale = [
            key
            for key, bucket in self._hits.items()
            if not bucket or bucket[-1] <= now - self._windows.get(key, 0)
        ]
        for key in stale:
            self._hits.pop(key, None)
            self._windows.pop(key, None)
        self._last_sweep = now

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._windows.clear()


def _post_matching(request: RequestInfo, marker: str) -> bool:
    return request.method.upper() == "POST" and marker in request.path


def _ip_key(marker: str) -> KeyExtractor:
    def extract(request: RequestInfo) -> Optional[str]:
        if _post_matching(request, marker):
            return request.ip
        return None

    return extract


def _email_key(marker: str) -> KeyExtractor:
    def extract(request: RequestInfo) -> Optional[str]:
        if _post_matching(request, marker):
            return normalize_email(request.email) or None
        return None

    return extract


def default_rules(settings: Settings) -> List[RateLimitRule]:
    window = settings.rate_limit_window_seconds
    per_credential = settings.credential_rate_limit_per_minute
    return [
        RateLimitRule(
            "logins/ip",
            _ip_key(LOGIN_PATH_MARKER),
            settings.rate_limit_requests_per_minute,
            window,
        ),
        RateLimitRule("logins/email", _email_key(LOGIN_PATH_MARKER), per_credential, window),
        RateLimitRule(
            "password_resets/ip", _ip_key(PASSWORD_RESET_PATH_MARKER), per_credential, window
        ),
        RateLimitRule(
            "password_resets/email",
            _email_key(PASSWORD_RESET_PATH_MARKER),
            per_credential,
            window,
        ),
    ]


class RateLimiter:
    def __init__(
        self,
        settings: Settings,
        *,
        rules: Optional[List[RateLimitRule]] = None,
        counters: Optional[CounterStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.rules = list(rules) if rules is not None else default_rules(settings)
        self.counters = counters or InMemoryCounterStore()
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self.settings.rate_limiting_enabled

    def applicable(self, request: RequestInfo) -> List[Tuple[RateLimitRule, str]]:
        matches = []
        for rule in self.rules:
            key = rule.key_for(request)
            if key is not None:
                matches.append((rule, key))
        return matches

    def check(self, request: RequestInfo) -> RateLimitDecision:
        """Count the request against every applicable rule.

        All applicable counters are incremented even after one rule trips, so
        each dimension keeps an accurate tally.
        """
        if not self.enabled:
            return RateLimitDecision(allowed=True)
        now = self._clock()
        tripped: Optional[RateLimitRule] = None
        counts: Dict[str, int] = {}
        for rule, key in self.applicable(request):
            count = self.counters.hit(f"{rule.name}:{key}", rule.window_seconds, now)
            counts[rule.name] = count
            if count > rule.limit and tripped is None:
                tripped = rule
        if tripped is None:
            return RateLimitDecision(allowed=True, counts=counts)
        logger.warning(
            "rate_limit_exceeded",
            rule=tripped.name,
            path=request.path,
            count=counts[tripped.name],
            limit=tripped.limit,
        )
        return RateLimitDecision(
            allowed=False,
            rule=tripped,
            status_code=self.settings.rate_limit_response_status,
            message=self.settings.rate_limit_response_message,
            retry_after=tripped.window_seconds,
            counts=counts,
        )

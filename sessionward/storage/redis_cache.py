from __future__ import annotations

import hashlib
import uuid

from redis import Redis


class RedisCounterStore:
    """Rate-limit counters shared across processes through Redis.

    A sorted set per key holds hit timestamps; the Lua script prunes, records
    and counts in one atomic step.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local member = ARGV[3]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
redis.call('ZADD', key, now, member)
local count = redis.call('ZCARD', key)
redis.call('PEXPIRE', key, math.ceil(window * 1000))
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the logical key so user-supplied parts cannot inject delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling shared counters."""
        self.client.ping()

    def hit(self, key: str, window_seconds: int, now: float) -> int:
        # Unique member so simultaneous hits at the same timestamp all count
        member = f"{now:.6f}:{uuid.uuid4().hex}"
        count = self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[now, window_seconds, member],
        )
        return int(count)

    def close(self) -> None:
        self.client.close()

import os
import time
from dataclasses import dataclass

import redis

from scripture_api.errors import ApiError

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")


@dataclass(frozen=True)
class RateLimit:
    scope: str
    limit: int
    window_sec: int
    message: str


CHAT_LIMIT = RateLimit(
    "chat",
    int(os.getenv("CHAT_RATE_LIMIT", "10")),
    60,
    "You're sending messages too quickly. Please wait a moment.",
)
AUTH_LIMIT = RateLimit(
    "auth",
    int(os.getenv("AUTH_RATE_LIMIT", "10")),
    3600,
    "Too many login attempts. Please try again in an hour.",
)
PAYMENT_LIMIT = RateLimit(
    "payment",
    int(os.getenv("PAYMENT_RATE_LIMIT", "20")),
    3600,
    "Too many payment requests. Please try again later.",
)

_REDIS_CLIENT = None
_REDIS_AVAILABLE = True
_MEM_WINDOWS = {}


def get_redis():
    global _REDIS_CLIENT, _REDIS_AVAILABLE
    if not _REDIS_AVAILABLE:
        return None
    if _REDIS_CLIENT is None:
        client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
        try:
            client.ping()
        except redis.RedisError:
            _REDIS_AVAILABLE = False
            return None
        _REDIS_CLIENT = client
    return _REDIS_CLIENT


def _window_key(scope: str, identifier: str, window_start: int) -> str:
    return f"ratelimit:{scope}:{identifier}:{window_start}"


_WINDOW_INCR_LUA = """
local key = KEYS[1]
local ttl = tonumber(ARGV[1])
local new_count = redis.call("INCR", key)
if new_count == 1 then
  redis.call("EXPIRE", key, ttl)
end
return new_count
"""


def _mem_incr(key: str, expires_at_ts: int, now_ts: int) -> int:
    for stale in [k for k, v in _MEM_WINDOWS.items() if v["expires_at_ts"] <= now_ts]:
        _MEM_WINDOWS.pop(stale, None)
    data = _MEM_WINDOWS.setdefault(key, {"count": 0, "expires_at_ts": expires_at_ts})
    data["count"] += 1
    return data["count"]


def hit(rule: RateLimit, identifier: str, now_ts: int | None = None) -> dict:
    """Count one request in the current fixed window."""
    now_ts = int(now_ts if now_ts is not None else time.time())
    window_start = now_ts - (now_ts % rule.window_sec)
    expires_at_ts = window_start + rule.window_sec
    key = _window_key(rule.scope, identifier or "unknown", window_start)
    client = get_redis()
    if client is None:
        count = _mem_incr(key, expires_at_ts, now_ts)
    else:
        count = int(client.eval(_WINDOW_INCR_LUA, 1, key, rule.window_sec) or 0)
    retry_after = max(expires_at_ts - now_ts, 1)
    if count > rule.limit:
        return {"status": "limit", "count": count, "limit": rule.limit, "retry_after": retry_after}
    return {"status": "ok", "count": count, "limit": rule.limit, "retry_after": retry_after}


def enforce(rule: RateLimit, identifier: str) -> None:
    result = hit(rule, identifier)
    if result["status"] == "limit":
        raise ApiError(
            429,
            "rate_limited",
            rule.message,
            headers={"Retry-After": str(result["retry_after"])},
        )


def reset_memory_windows() -> None:
    _MEM_WINDOWS.clear()

"""Single-use OAuth ``state`` values, in Redis when reachable."""
import os
import time
from typing import Optional

from scripture_api.rate_limit import get_redis


OAUTH_STATE_TTL_SEC = int(os.getenv("OAUTH_STATE_TTL_SEC", "600"))

_MEM_STATES = {}


def _state_key(state: str) -> str:
    return f"oauth:state:{state}"


def store_oauth_state(state: str, payload: dict) -> None:
    key = _state_key(state)
    ttl = max(60, OAUTH_STATE_TTL_SEC)
    client = get_redis()
    if client is None:
        _MEM_STATES[key] = {"payload": dict(payload), "expires_at_ts": int(time.time()) + ttl}
        return
    client.hset(key, mapping=payload)
    client.expire(key, ttl)


def consume_oauth_state(state: str) -> Optional[dict]:
    """Return the saved payload once; a second call for the same state gets ``None``."""
    key = _state_key(state)
    client = get_redis()
    if client is None:
        data = _MEM_STATES.pop(key, None)
        if not data or time.time() >= data["expires_at_ts"]:
            return None
        return data["payload"]
    pipe = client.pipeline()
    pipe.hgetall(key)
    pipe.delete(key)
    payload, _deleted = pipe.execute()
    return payload or None


def reset_memory_states() -> None:
    _MEM_STATES.clear()

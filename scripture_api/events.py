import hashlib
import json
import os
from datetime import datetime, timezone

EVENT_LOG_PATH = os.getenv("EVENT_LOG_PATH", "logs/events.log")
LOG_ID_SALT = os.getenv("LOG_ID_SALT", "")

# Payload keys that carry identifiers and are hashed before writing.
_HASHED_KEYS = ("user_id", "customer_ref", "subscription_ref", "email")


def _hash_id(value: str) -> str:
    raw = f"{LOG_ID_SALT}{value}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]


def _log_event(event_type: str, payload: dict) -> None:
    try:
        dir_path = os.path.dirname(EVENT_LOG_PATH)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        safe_payload = dict(payload or {})
        for key in _HASHED_KEYS:
            if safe_payload.get(key):
                safe_payload[key] = _hash_id(str(safe_payload[key]))
        record = {
            "event_type": event_type,
            "ts": datetime.now(timezone.utc).isoformat(),
            **safe_payload,
        }
        with open(EVENT_LOG_PATH, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")
    except OSError:
        pass


def log_api_event(event_type: str, payload: dict) -> None:
    _log_event(event_type, payload)


def log_billing_event(event_type: str, payload: dict) -> None:
    _log_event(event_type, payload)


def log_chat_event(event_type: str, payload: dict) -> None:
    _log_event(event_type, payload)


def reset_event_log(reason: str) -> None:
    try:
        dir_path = os.path.dirname(EVENT_LOG_PATH)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        with open(EVENT_LOG_PATH, "w", encoding="utf-8") as f:
            f.write("")
    except OSError:
        return
    _log_event("event_log_reset", {"reason": reason})

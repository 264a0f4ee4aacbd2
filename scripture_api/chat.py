import json
import os
import time
from typing import Iterator, List, Optional

import requests

from scripture_api.errors import LlmUnavailable, validation_error
from scripture_api.events import log_chat_event

OLLAMA_URL = os.getenv("OLLAMA_URL", "http://ollama:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama3.1")
OLLAMA_TIMEOUT_SEC = float(os.getenv("OLLAMA_TIMEOUT_SEC", "60"))
LLM_SLOW_MS = int(os.getenv("LLM_SLOW_MS", "2000"))
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.7"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "1000"))

MESSAGE_MAX_CHARS = 2000
HISTORY_TURNS = 10

SYSTEM_PROMPT = (
    'You are a wise and compassionate Christian scholar named "ScriptureGuide". '
    "Help people understand and apply Biblical teachings to their lives.\n"
    "1. Answer only questions about the Bible, Christian scripture, faith, theology and Christian living. "
    "Politely redirect anything else back to scripture.\n"
    "2. Always include relevant Bible verses with citations (book chapter:verse) and a named translation.\n"
    "3. Be warm, pastoral, encouraging and non-judgmental; stay faithful to orthodox Christian teaching.\n"
    "4. Where passages are debated, acknowledge the main perspectives within mainstream Christianity.\n"
    "5. Quote verses in quotation marks followed by the reference, for example "
    '"For God so loved the world..." - John 3:16 NIV.\n'
    "6. Encourage prayer, and keep language clear rather than academic."
)

FALLBACK_ANSWER = (
    "I apologize, but I was unable to generate a response. "
    "Please try rephrasing your question about scripture."
)


def clean_message(message: str | None) -> str:
    text = (message or "").strip()
    if not text:
        raise validation_error("Please enter your question.")
    if len(text) > MESSAGE_MAX_CHARS:
        raise validation_error(
            f"Message is too long. Please keep it under {MESSAGE_MAX_CHARS} characters."
        )
    return text


def build_messages(user_message: str, history: Optional[List[dict]] = None) -> List[dict]:
    turns = []
    for item in history or []:
        role = item.get("role")
        content = item.get("content")
        if not role or not content:
            continue
        turns.append({"role": "user" if role == "user" else "assistant", "content": str(content)})
    turns = turns[-HISTORY_TURNS:]
    return [{"role": "system", "content": SYSTEM_PROMPT}, *turns, {"role": "user", "content": user_message}]


def _chat_payload(messages: List[dict], stream: bool) -> dict:
    return {
        "model": OLLAMA_MODEL,
        "messages": messages,
        "stream": stream,
        "options": {"temperature": LLM_TEMPERATURE, "num_predict": LLM_MAX_TOKENS},
    }


def _log_latency(start: float) -> None:
    elapsed_ms = int((time.perf_counter() - start) * 1000)
    log_chat_event("llm_latency", {"model": OLLAMA_MODEL, "elapsed_ms": elapsed_ms})
    if elapsed_ms > LLM_SLOW_MS:
        log_chat_event("llm_slow", {"model": OLLAMA_MODEL, "elapsed_ms": elapsed_ms})


def generate_answer(messages: List[dict]) -> str:
    url = f"{OLLAMA_URL}/api/chat"
    start = time.perf_counter()
    try:
        res = requests.post(url, json=_chat_payload(messages, False), timeout=OLLAMA_TIMEOUT_SEC)
        res.raise_for_status()
        data = res.json()
    except (requests.RequestException, ValueError) as exc:
        log_chat_event("llm_error", {"model": OLLAMA_MODEL, "error": "request_failed"})
        raise LlmUnavailable("generation request failed") from exc
    _log_latency(start)
    content = ((data.get("message") or {}).get("content") or "").strip()
    return content or FALLBACK_ANSWER


def stream_answer(messages: List[dict]) -> Iterator[str]:
    """Yield answer text chunks as the backend produces them.

    Raises ``LlmUnavailable`` from inside the iteration if the backend fails
    part way.
    """
    url = f"{OLLAMA_URL}/api/chat"
    start = time.perf_counter()
    try:
        with requests.post(
            url,
            json=_chat_payload(messages, True),
            timeout=OLLAMA_TIMEOUT_SEC,
            stream=True,
        ) as res:
            res.raise_for_status()
            for line in res.iter_lines(decode_unicode=True):
                if not line:
                    continue
                chunk = json.loads(line)
                if chunk.get("error"):
                    raise LlmUnavailable(str(chunk["error"]))
                content = (chunk.get("message") or {}).get("content") or ""
                if content:
                    yield content
                if chunk.get("done"):
                    break
    except (requests.RequestException, ValueError) as exc:
        log_chat_event("llm_error", {"model": OLLAMA_MODEL, "error": "stream_failed"})
        raise LlmUnavailable("generation stream failed") from exc
    _log_latency(start)

import json
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, Optional

from scripture_api.errors import LlmUnavailable
from scripture_api.events import log_chat_event

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

STREAM_ERROR_MESSAGE = (
    "Sorry, I encountered an issue. Please try rephrasing your scripture question."
)


def format_sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def relay_answer(
    chunks: Iterable[str],
    on_complete: Optional[Callable[[str], None]] = None,
) -> Iterator[str]:
    """Frame an answer stream as server-sent events.

    Each chunk becomes a ``done: false`` frame, followed by one closing frame.
    ``on_complete`` runs only when the upstream stream finished cleanly.
    """
    parts = []
    try:
        for content in chunks:
            parts.append(content)
            yield format_sse({"content": content, "done": False})
    except LlmUnavailable:
        log_chat_event("chat_stream_failed", {"chunks": len(parts)})
        yield format_sse({"error": STREAM_ERROR_MESSAGE, "done": True})
        return
    full_response = "".join(parts)
    if on_complete is not None:
        on_complete(full_response)
    yield format_sse(
        {
            "content": "",
            "done": True,
            "full_response": full_response,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )

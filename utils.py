import time
from typing import List, Dict, Any, Optional
import contextvars

# Context variable for request ID propagation
request_id_ctx = contextvars.ContextVar("request_id", default="-")

EMPTY_USAGE = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


def _now_ms() -> int:
    return int(time.time() * 1000)


def format_response(model: str, choices: List[dict], usage: Optional[dict] = None) -> dict:
    """Standardized OpenAI response format"""
    return {
        "id": f"chatcmpl-{_now_ms()}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": choices,
        "usage": usage or dict(EMPTY_USAGE),
    }


def build_delta_chunk(model: str, content: str) -> dict:
    """Minimal streaming chunk used to inject content mid-stream"""
    return {
        "id": f"chatcmpl-inject-{_now_ms()}",
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "delta": {"content": content}, "finish_reason": None}],
    }


def error_body(message: str, error_type: str, code: Optional[int] = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"message": message, "type": error_type}
    if code is not None:
        error["code"] = code
    return {"error": error}

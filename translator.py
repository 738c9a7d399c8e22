import logging
from typing import Any, Dict, List, Optional

from config import AppConfig
from reasoning_filter import CLOSE_MARKER, OPEN_MARKER, REASONING_FIELDS
from utils import format_response

logger = logging.getLogger(__name__)


def inject_thinking_prompt(messages: List[Dict[str, Any]], prompt: str) -> List[Dict[str, Any]]:
    """Prefix the leading system message with prompt, or add one"""
    if messages and messages[0].get("role") == "system":
        first = {**messages[0], "content": f"{prompt}\n\n{messages[0].get('content', '')}"}
        return [first, *messages[1:]]
    return [{"role": "system", "content": prompt}, *messages]


def build_upstream_payload(
    cfg: AppConfig,
    model: str,
    messages: List[Dict[str, Any]],
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    stream: Optional[bool] = False,
) -> Dict[str, Any]:
    """Map a client chat request onto the NIM request body"""
    nim_model = cfg.map_model(model)
    caps = cfg.capabilities_for(nim_model)
    final_messages = [dict(m) for m in messages]

    if cfg.enable_thinking_mode and caps.system_prompt_thinking:
        final_messages = inject_thinking_prompt(final_messages, cfg.thinking_system_prompt)

    payload: Dict[str, Any] = {
        "model": nim_model,
        "messages": final_messages,
        "temperature": cfg.default_temperature if temperature is None else temperature,
        "max_tokens": max_tokens or cfg.default_max_tokens,
        "stream": bool(stream),
    }
    if cfg.enable_thinking_mode and caps.template_thinking:
        payload["chat_template_kwargs"] = {"enable_thinking": True}

    logger.debug("Resolved model %s -> %s (%s)", model, nim_model, caps)
    return payload


def _message_reasoning(message: Dict[str, Any]) -> str:
    for field in REASONING_FIELDS:
        value = message.get(field)
        if isinstance(value, str) and value:
            return value
    return ""


def splice_message(message: Dict[str, Any], show_reasoning: bool = True) -> Dict[str, Any]:
    content = message.get("content") or ""
    reasoning = _message_reasoning(message)
    if show_reasoning and reasoning:
        content = f"{OPEN_MARKER}{reasoning}{CLOSE_MARKER}{content}"
    return {"role": message.get("role") or "assistant", "content": content}


def splice_completion(upstream: Dict[str, Any], model: str, show_reasoning: bool = True) -> dict:
    """Rebuild a complete NIM response for the client, reasoning folded into content"""
    choices = [
        {
            "index": choice.get("index"),
            "message": splice_message(choice.get("message") or {}, show_reasoning),
            "finish_reason": choice.get("finish_reason"),
        }
        for choice in upstream.get("choices") or []
    ]
    return format_response(model, choices, upstream.get("usage"))

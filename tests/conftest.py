import json
import sys
from pathlib import Path
from typing import List, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from config import AppConfig  # noqa: E402


def sse(*deltas: dict, done: bool = True) -> bytes:
    """Build an upstream event stream carrying one delta per frame"""
    out = b""
    for i, delta in enumerate(deltas):
        frame = {
            "id": f"chatcmpl-up-{i}",
            "object": "chat.completion.chunk",
            "model": "deepseek-ai/deepseek-r1-0528",
            "choices": [{"index": 0, "delta": delta, "finish_reason": None}],
        }
        out += f"data: {json.dumps(frame, ensure_ascii=False)}\n\n".encode("utf-8")
    if done:
        out += b"data: [DONE]\n\n"
    return out


def data_frames(raw: bytes) -> List[dict]:
    frames = []
    for line in raw.decode("utf-8").split("\n"):
        if not line.startswith("data: ") or line == "data: [DONE]":
            continue
        try:
            frames.append(json.loads(line[len("data: "):]))
        except json.JSONDecodeError:
            continue
    return frames


def contents(raw: bytes) -> List[Optional[str]]:
    return [f["choices"][0]["delta"].get("content") for f in data_frames(raw)]


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(api_key="test-key", nim_api_base="http://nim.test/v1")

import json

import httpx
from fastapi.testclient import TestClient

from app import create_app
from config import AppConfig
from conftest import contents, sse
from reasoning_filter import CLOSE_MARKER, OPEN_MARKER


class FakeNim:
    """Records upstream requests and replays canned responses"""

    def __init__(self, response_factory):
        self.requests = []
        self.response_factory = response_factory

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response_factory(request)

    @property
    def last_body(self) -> dict:
        return json.loads(self.requests[-1].content)


def make_client(cfg: AppConfig, upstream) -> TestClient:
    return TestClient(create_app(cfg, transport=httpx.MockTransport(upstream)))


def chunked(raw: bytes, size: int):
    async def gen():
        for i in range(0, len(raw), size):
            yield raw[i:i + size]
    return gen()


CHAT = {"model": "gpt-4-turbo", "messages": [{"role": "user", "content": "2+2?"}]}


def test_health_and_models(app_config):
    upstream = FakeNim(lambda r: httpx.Response(500))
    with make_client(app_config, upstream) as client:
        health = client.get("/health").json()
        models = client.get("/v1/models").json()
    assert health["status"] == "ok"
    assert health["reasoning_display"] is True
    assert health["thinking_mode"] is True
    assert health["nim_base"] == "http://nim.test/v1"
    assert health["api_key_set"] is True
    assert models["object"] == "list"
    ids = [m["id"] for m in models["data"]]
    assert "gpt-4" in ids and "gemini-pro" in ids
    assert all(m["owned_by"] == "nvidia-nim-proxy" for m in models["data"])
    assert upstream.requests == []


def test_missing_api_key_fails_fast():
    upstream = FakeNim(lambda r: httpx.Response(200, json={}))
    with make_client(AppConfig(), upstream) as client:
        resp = client.post("/v1/chat/completions", json=CHAT)
    assert resp.status_code == 500
    assert resp.json() == {"error": {"message": "NIM_API_KEY environment variable not set", "type": "server_error"}}
    assert upstream.requests == []


def test_missing_messages_rejected(app_config):
    upstream = FakeNim(lambda r: httpx.Response(200, json={}))
    with make_client(app_config, upstream) as client:
        resp = client.post("/v1/chat/completions", json={"model": "gpt-4"})
    assert resp.status_code == 422
    assert upstream.requests == []


def test_unknown_endpoint(app_config):
    with make_client(app_config, FakeNim(lambda r: httpx.Response(200))) as client:
        resp = client.get("/v1/embeddings")
    assert resp.status_code == 404
    assert resp.json()["error"] == {"message": "Endpoint /v1/embeddings not supported", "type": "not_found", "code": 404}


def test_non_streaming_splices_reasoning(app_config):
    body = {
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": "4", "reasoning_content": "2+2=4"},
            "finish_reason": "stop",
        }],
        "usage": {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3},
    }
    upstream = FakeNim(lambda r: httpx.Response(200, json=body))
    with make_client(app_config, upstream) as client:
        resp = client.post("/v1/chat/completions", json=CHAT)
    assert resp.status_code == 200
    out = resp.json()
    assert out["model"] == "gpt-4-turbo"
    assert out["choices"][0]["message"]["content"] == f"{OPEN_MARKER}2+2=4{CLOSE_MARKER}4"

    request = upstream.requests[-1]
    assert str(request.url) == "http://nim.test/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer test-key"
    assert request.headers["accept"] == "application/json"
    assert upstream.last_body["model"] == "deepseek-ai/deepseek-r1-0528"
    assert upstream.last_body["stream"] is False


def test_upstream_http_error_is_forwarded(app_config):
    upstream = FakeNim(lambda r: httpx.Response(429, json={"detail": "slow down"}))
    with make_client(app_config, upstream) as client:
        resp = client.post("/v1/chat/completions", json=CHAT)
    assert resp.status_code == 429
    error = resp.json()["error"]
    assert error["type"] == "proxy_error"
    assert error["code"] == 429
    assert json.loads(error["message"]) == {"detail": "slow down"}
    # no retries
    assert len(upstream.requests) == 1


def test_upstream_transport_error_is_500(app_config):
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    with make_client(app_config, FakeNim(boom)) as client:
        resp = client.post("/v1/chat/completions", json=CHAT)
    assert resp.status_code == 500
    assert resp.json()["error"]["message"] == "connection refused"


def test_streaming_error_before_first_byte_is_json(app_config):
    upstream = FakeNim(lambda r: httpx.Response(503, text="upstream overloaded"))
    with make_client(app_config, upstream) as client:
        resp = client.post("/v1/chat/completions", json={**CHAT, "stream": True})
    assert resp.status_code == 503
    assert resp.json()["error"]["message"] == "upstream overloaded"


def test_streaming_rewrites_reasoning(app_config):
    raw = sse({"role": "assistant", "content": ""}, {"reasoning_content": "Let me think"}, {"content": "The answer is 4"})
    upstream = FakeNim(lambda r: httpx.Response(
        200, headers={"content-type": "text/event-stream"}, content=chunked(raw, 11)
    ))
    with make_client(app_config, upstream) as client:
        resp = client.post("/v1/chat/completions", json={**CHAT, "stream": True})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["x-accel-buffering"] == "no"
    assert contents(resp.content) == ["", OPEN_MARKER + "Let me think", CLOSE_MARKER + "The answer is 4"]
    assert resp.content.endswith(b"data: [DONE]\n\n")
    assert upstream.requests[-1].headers["accept"] == "text/event-stream"
    assert upstream.last_body["stream"] is True


def test_streaming_closes_dangling_span_with_client_model(app_config):
    raw = sse({"reasoning_content": "partial thought"})
    upstream = FakeNim(lambda r: httpx.Response(200, content=chunked(raw, 4)))
    with make_client(app_config, upstream) as client:
        resp = client.post("/v1/chat/completions", json={**CHAT, "stream": True})
    assert contents(resp.content) == [OPEN_MARKER + "partial thought", CLOSE_MARKER]
    closing = [line for line in resp.content.split(b"\n\n") if b"chatcmpl-inject-" in line]
    assert len(closing) == 1
    assert json.loads(closing[0][len(b"data: "):])["model"] == "gpt-4-turbo"


def test_streaming_reasoning_hidden():
    cfg = AppConfig(api_key="k", nim_api_base="http://nim.test/v1", show_reasoning=False)
    raw = sse({"reasoning_content": "Let me think"}, {"content": "The answer is 4"})
    upstream = FakeNim(lambda r: httpx.Response(200, content=chunked(raw, 3)))
    with make_client(cfg, upstream) as client:
        resp = client.post("/v1/chat/completions", json={**CHAT, "stream": True})
    assert contents(resp.content) == ["", "The answer is 4"]
    assert b"think>" not in resp.content


def test_each_stream_starts_with_closed_span(app_config):
    streams = iter([
        sse({"reasoning_content": "first"}, done=False),
        sse({"content": "second"}),
    ])
    upstream = FakeNim(lambda r: httpx.Response(200, content=next(streams)))
    with make_client(app_config, upstream) as client:
        first = client.post("/v1/chat/completions", json={**CHAT, "stream": True})
        second = client.post("/v1/chat/completions", json={**CHAT, "stream": True})
    assert contents(first.content) == [OPEN_MARKER + "first", CLOSE_MARKER]
    assert contents(second.content) == ["second"]


def test_non_json_success_body_is_json_error(app_config):
    upstream = FakeNim(lambda r: httpx.Response(200, text="<html>gateway</html>"))
    with make_client(app_config, upstream) as client:
        resp = client.post("/v1/chat/completions", json=CHAT)
    assert resp.status_code == 500
    error = resp.json()["error"]
    assert error["type"] == "proxy_error"
    assert error["message"] == "<html>gateway</html>"


def test_non_object_success_body_is_json_error(app_config):
    upstream = FakeNim(lambda r: httpx.Response(200, json=[1]))
    with make_client(app_config, upstream) as client:
        resp = client.post("/v1/chat/completions", json=CHAT)
    assert resp.status_code == 500
    assert resp.json()["error"]["type"] == "proxy_error"
    assert resp.json()["error"]["code"] == 500


class DroppingStream(httpx.AsyncByteStream):
    """Upstream body that sends some bytes, then loses the connection"""

    def __init__(self, raw: bytes):
        self.raw = raw
        self.closed = False

    async def __aiter__(self):
        yield self.raw
        raise httpx.ReadError("connection reset")

    async def aclose(self):
        self.closed = True


def test_upstream_failure_mid_stream_ends_stream_quietly(app_config):
    body = DroppingStream(sse({"reasoning_content": "half a thought"}, done=False))
    upstream = FakeNim(lambda r: httpx.Response(200, stream=body))
    with make_client(app_config, upstream) as client:
        resp = client.post("/v1/chat/completions", json={**CHAT, "stream": True})
    assert resp.status_code == 200
    assert contents(resp.content) == [OPEN_MARKER + "half a thought"]
    assert b'{"error"' not in resp.content
    assert b"[DONE]" not in resp.content
    assert body.closed is True

import uuid
import httpx
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
from config import load_config, AppConfig
from translator import build_upstream_payload, splice_completion
from upstream import NimClient, UpstreamError
from utils import error_body, request_id_ctx
from typing import List, Dict, Any, Optional
import logging
from reasoning_filter import ReasoningFilter

logger = logging.getLogger(__name__)

SERVICE_NAME = "OpenAI → NVIDIA NIM Proxy"
MODELS_CREATED = 1700000000

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


class ChatCompletionRequest(BaseModel):
    model: str
    messages: List[Dict[str, Any]]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: Optional[bool] = False


def create_app(
    config: Optional[AppConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the proxy app; config and transport are injectable for tests"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage shared HTTP client"""
        cfg = config or load_config()
        app.state.config = cfg
        app.state.http_client = httpx.AsyncClient(timeout=cfg.timeout, transport=transport)
        app.state.nim = NimClient(cfg, app.state.http_client)
        yield
        await app.state.http_client.aclose()

    app = FastAPI(title="NIM Gateway", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = uuid.uuid4().hex[:8]
        request.state.id = rid
        token = request_id_ctx.set(rid)
        try:
            logger.info("%s %s", request.method, request.url.path)
            response = await call_next(request)
            return response
        finally:
            request_id_ctx.reset(token)

    @app.exception_handler(UpstreamError)
    async def upstream_error_handler(request: Request, exc: UpstreamError):
        logger.error("Proxy error [%s]: %s", exc.status_code, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.message, "proxy_error", exc.status_code),
        )

    @app.exception_handler(StarletteHTTPException)
    async def not_found_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content=error_body(f"Endpoint {request.url.path} not supported", "not_found", 404),
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(str(exc.detail), "http_error", exc.status_code),
        )

    @app.get("/health")
    async def health(request: Request):
        cfg: AppConfig = request.app.state.config
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "reasoning_display": cfg.show_reasoning,
            "thinking_mode": cfg.enable_thinking_mode,
            "nim_base": cfg.nim_api_base,
            "api_key_set": bool(cfg.api_key),
        }

    @app.get("/v1/models")
    async def list_models(request: Request):
        cfg: AppConfig = request.app.state.config
        models = [
            {"id": name, "object": "model", "created": MODELS_CREATED, "owned_by": "nvidia-nim-proxy"}
            for name in cfg.model_mapping
        ]
        return {"object": "list", "data": models}

    @app.post("/v1/chat/completions")
    async def chat_completions(req: ChatCompletionRequest, request: Request):
        cfg: AppConfig = request.app.state.config
        nim: NimClient = request.app.state.nim

        if not cfg.api_key:
            return JSONResponse(
                status_code=500,
                content=error_body("NIM_API_KEY environment variable not set", "server_error"),
            )

        payload = build_upstream_payload(
            cfg, req.model, req.messages, req.temperature, req.max_tokens, req.stream
        )
        logger.info("Forwarding %s as %s (stream=%s)", req.model, payload["model"], payload["stream"])

        if not req.stream:
            upstream = await nim.complete(payload)
            return splice_completion(upstream, req.model, cfg.show_reasoning)

        upstream_resp = await nim.open_stream(payload)
        # One filter per response; nothing is shared across requests
        reasoning_filter = ReasoningFilter(req.model, show_reasoning=cfg.show_reasoning)

        async def stream_generator():
            try:
                async for record in reasoning_filter.stream(upstream_resp.aiter_bytes()):
                    yield record
            except httpx.HTTPError as exc:
                # Headers are already out, the client only sees the stream end
                logger.error("Stream error: %s", exc)
            finally:
                await upstream_resp.aclose()

        return StreamingResponse(
            stream_generator(),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )

    return app


app = create_app()

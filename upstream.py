import json
import httpx
import logging
from typing import Any, Dict, Optional

from config import AppConfig

logger = logging.getLogger(__name__)


class UpstreamError(Exception):
    """Upstream call failed; carries the status to hand back to the client"""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    @classmethod
    def from_response(cls, resp: httpx.Response) -> "UpstreamError":
        try:
            detail = json.dumps(resp.json())
        except ValueError:
            detail = resp.text
        return cls(resp.status_code, detail or "Internal server error")

    @classmethod
    def from_transport(cls, exc: httpx.HTTPError) -> "UpstreamError":
        return cls(500, str(exc) or exc.__class__.__name__)


class NimClient:
    """Thin wrapper around the shared httpx client for the NIM chat endpoint"""

    def __init__(self, cfg: AppConfig, http_client: httpx.AsyncClient):
        self.cfg = cfg
        self.http = http_client

    @property
    def url(self) -> str:
        return f"{self.cfg.nim_api_base.rstrip('/')}/chat/completions"

    def _headers(self, stream: bool) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.cfg.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }

    async def complete(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await self.http.post(self.url, json=payload, headers=self._headers(False))
        except httpx.HTTPError as exc:
            raise UpstreamError.from_transport(exc) from exc
        if resp.status_code >= 400:
            raise UpstreamError.from_response(resp)
        try:
            body = resp.json()
        except ValueError as exc:
            raise UpstreamError(500, resp.text or str(exc)) from exc
        if not isinstance(body, dict):
            raise UpstreamError(500, f"Unexpected upstream response: {resp.text[:200]}")
        return body

    async def open_stream(self, payload: Dict[str, Any]) -> httpx.Response:
        """
        Send a streaming request and return the response once headers arrive.

        The status is checked here, before any byte goes to the client, so a
        failed call can still be answered with a JSON error. The caller owns
        the returned response and must close it.
        """
        request = self.http.build_request("POST", self.url, json=payload, headers=self._headers(True))
        resp: Optional[httpx.Response] = None
        try:
            resp = await self.http.send(request, stream=True)
            if resp.status_code >= 400:
                await resp.aread()
                raise UpstreamError.from_response(resp)
        except httpx.HTTPError as exc:
            if resp is not None:
                await resp.aclose()
            raise UpstreamError.from_transport(exc) from exc
        except UpstreamError:
            await resp.aclose()
            raise
        return resp

"""
Surface adapter protocol and shared HTTP plumbing.

A surface is anything a query can be submitted to: a search API, an LLM API
or a search page driven through a browser session. Adapters turn one query
into a SurfaceResponse and report every failure as a typed SurfaceError so
the failure classifier never needs surface-specific knowledge.

Key components:
- SurfaceResponse: What an adapter returns for one query
- SurfaceAdapter: Protocol the study runner depends on
- HTTPSurfaceAdapter: Base class for API adapters (retry + error mapping)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from ..engine.models import SessionHandle
from ..exceptions import SurfaceResponseError, SurfaceTransportError
from ..utils.time import elapsed_ms, monotonic_ms
from .retry_config import NO_RETRY_STATUS_CODES, create_retry_decorator

logger = logging.getLogger(__name__)

# Longest error body echoed into exception messages
MAX_ERROR_DETAIL_LENGTH = 200


@dataclass
class SurfaceResponse:
    """
    One surface answer.

    Attributes:
        response_text: Answer text (AI overview, completion text, top snippets)
        duration_ms: Time spent inside the adapter
        citations: Cited sources as {"title", "url"} dicts
        organic_results: Organic results as {"position", "title", "url", "snippet"}
        raw: Surface-specific payload kept for debugging (never checkpointed)
    """

    response_text: str
    duration_ms: int = 0
    citations: list[dict] = field(default_factory=list)
    organic_results: list[dict] = field(default_factory=list)
    raw: Any = None


class SurfaceAdapter(Protocol):
    """
    Interface between the study runner and one surface.

    Attributes:
        adapter_name: Registry name of the adapter (e.g. "serpapi")
        kind: "api" (needs an HTTP client) or "session" (needs a browser page)
    """

    adapter_name: str
    kind: str

    async def submit(
        self, handle: SessionHandle, query_text: str, timeout_ms: int
    ) -> SurfaceResponse:
        """
        Submit one query.

        Raises:
            SurfaceBlockedError: Block or challenge page
            SurfaceResponseError: Malformed or empty response
            SurfaceTransportError: Connection or HTTP failure
        """
        ...


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:MAX_ERROR_DETAIL_LENGTH]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return str(error.get("message", error))[:MAX_ERROR_DETAIL_LENGTH]
        if error:
            return str(error)[:MAX_ERROR_DETAIL_LENGTH]
    return response.text[:MAX_ERROR_DETAIL_LENGTH]


class HTTPSurfaceAdapter:
    """
    Base class for adapters that call a JSON HTTP API.

    Requests go through the session's httpx.AsyncClient, so they leave
    through the identity's proxy. Transient failures (429, 5xx, connect
    errors, timeouts) are retried by tenacity; everything else fails fast.

    Subclasses implement build_request() and parse_response().
    """

    adapter_name = "http"
    kind = "api"

    def build_request(self, query_text: str) -> dict:
        """Return keyword arguments for httpx.AsyncClient.request()."""
        raise NotImplementedError

    def parse_response(self, data: dict) -> SurfaceResponse:
        raise NotImplementedError

    @create_retry_decorator()
    async def _send(self, client: httpx.AsyncClient, request: dict) -> httpx.Response:
        response = await client.request(**request)

        if response.status_code in NO_RETRY_STATUS_CODES:
            raise SurfaceTransportError(
                f"{self.adapter_name} API error (non-retryable): "
                f"status={response.status_code}, detail={_error_detail(response)}",
                status_code=response.status_code,
            )

        # 429 and 5xx raise HTTPStatusError, which is retried
        response.raise_for_status()
        return response

    async def submit(
        self, handle: SessionHandle, query_text: str, timeout_ms: int
    ) -> SurfaceResponse:
        if handle.client is None:
            raise SurfaceTransportError(f"{self.adapter_name} needs an HTTP client handle")

        start = monotonic_ms()
        request = self.build_request(query_text)
        request.setdefault("timeout", timeout_ms / 1000.0)
        logger.debug(f"Sending {self.adapter_name} request via {handle.identity.label}")

        try:
            response = await self._send(handle.client, request)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"{self.adapter_name} API HTTP error: status={status}")
            raise SurfaceTransportError(
                f"{self.adapter_name} API HTTP error: status={status}, "
                f"detail={_error_detail(e.response)}",
                status_code=status,
            ) from e
        except httpx.ConnectError as e:
            logger.error(f"{self.adapter_name} API connection error: {e}")
            raise SurfaceTransportError(f"{self.adapter_name} connection error: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise SurfaceResponseError(
                f"{self.adapter_name} returned invalid JSON: {e}"
            ) from e
        if not isinstance(data, dict):
            raise SurfaceResponseError(f"{self.adapter_name} returned a non-object JSON body")

        result = self.parse_response(data)
        result.duration_ms = elapsed_ms(start)
        return result

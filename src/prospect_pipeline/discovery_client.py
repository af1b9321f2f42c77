# discovery_client.py
"""Streaming client for the lead discovery provider.

The provider answers ``POST {base_url}/search-stream`` with a server-sent
event stream:

    event: start     data: {"query", "limit", "estimatedPages"}
    event: results   data: {"leads": [...], "total", "progress", "page"}
    event: progress  data: {"progress", "coverage": {...}}
    event: complete  data: {"total", "query", "partial"?}
    event: error     data: {"error"}

Each event is translated into a PartialBatch, ProgressEvent or TerminalEvent.
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx

from .config import config
from .logging_utils import get_logger
from .models import (
    CoverageInfo,
    DiscoveryError,
    DiscoveryEvent,
    DiscoveryTransportError,
    PartialBatch,
    ProgressEvent,
    SearchContext,
    TerminalEvent,
    TerminalKind,
)

RETRYABLE_STATUS_CODES = {502, 503, 504}


class DiscoveryProvider(Protocol):
    """Anything that streams discovery events for a search context."""

    def search(self, context: SearchContext) -> AsyncIterator[DiscoveryEvent]:
        ...


def _coverage_from(data: Dict[str, Any]) -> Optional[CoverageInfo]:
    raw = data.get("coverage") or {}
    coverage = CoverageInfo(
        expanded_queries=raw.get("expandedQueries", raw.get("expanded_queries")),
        completed_queries=raw.get("completedQueries", raw.get("completed_queries")),
        estimated_remaining=raw.get(
            "estimatedRemaining", raw.get("estimated_remaining")
        ),
        page=data.get("page"),
        estimated_pages=data.get("estimatedPages", data.get("estimated_pages")),
    )
    if coverage == CoverageInfo():
        return None
    return coverage


def parse_event(name: str, data: Dict[str, Any]) -> List[DiscoveryEvent]:
    """Translate one SSE event into discovery events.

    Unknown event names produce no events.
    """
    if name == "start":
        return [ProgressEvent(progress=0.0, coverage=_coverage_from(data))]

    if name == "results":
        events: List[DiscoveryEvent] = [
            PartialBatch(
                leads=list(data.get("leads") or []),
                total=data.get("total"),
                page=data.get("page"),
            )
        ]
        if data.get("progress") is not None:
            events.append(
                ProgressEvent(
                    progress=float(data["progress"]),
                    coverage=_coverage_from(data),
                )
            )
        return events

    if name == "progress":
        return [
            ProgressEvent(
                progress=float(data.get("progress") or 0.0),
                coverage=_coverage_from(data),
            )
        ]

    if name == "complete":
        kind = TerminalKind.PARTIAL if data.get("partial") else TerminalKind.SUCCESS
        return [TerminalEvent(kind=kind, total=data.get("total"))]

    if name == "error":
        return [
            TerminalEvent(
                kind=TerminalKind.FAILURE,
                error=str(data.get("error") or "Search failed"),
            )
        ]

    return []


class DiscoveryClient:
    """httpx-based client for the streaming discovery endpoint.

    Supports use as an async context manager to close the underlying
    connection pool.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        auth_token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the discovery client.

        Args:
            base_url: Provider base URL. Defaults to config value.
            auth_token: Bearer token. Defaults to config value.
            timeout: Read timeout in seconds. Defaults to config value.
            client: Pre-built AsyncClient (tests inject a MockTransport here).
        """
        self.logger = get_logger(__name__)
        self.base_url = (base_url or config.DISCOVERY_API_URL).rstrip("/")
        self._auth_token = auth_token if auth_token is not None else config.AUTH_TOKEN
        self.timeout = timeout or config.DISCOVERY_TIMEOUT_SECONDS
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream", "Content-Type": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    @staticmethod
    def build_payload(context: SearchContext) -> Dict[str, Any]:
        return {
            "service": context.query,
            "location": context.location,
            "searchType": context.search_type.value,
            "limit": context.requested_count,
            "filters": sorted(context.filters),
        }

    async def search(self, context: SearchContext) -> AsyncIterator[DiscoveryEvent]:
        """Stream discovery events for a search.

        Raises:
            DiscoveryTransportError: Connection failures, retryable HTTP
                statuses and streams that end without a terminal event.
            DiscoveryError: Any other non-success HTTP status.
        """
        url = f"{self.base_url}/search-stream"
        self.logger.info(
            f"Opening discovery stream for '{context.query}' in '{context.location}'",
            extra={"requested_count": context.requested_count},
        )

        try:
            async with self._get_client().stream(
                "POST", url, json=self.build_payload(context), headers=self._headers()
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    message = f"Discovery request failed with HTTP {response.status_code}"
                    if response.status_code in RETRYABLE_STATUS_CODES:
                        raise DiscoveryTransportError(message)
                    raise DiscoveryError(message)

                terminated = False
                async for event in self._iter_events(response):
                    yield event
                    if isinstance(event, TerminalEvent):
                        terminated = True
                        break

                if not terminated:
                    raise DiscoveryTransportError(
                        "Discovery stream closed before completion"
                    )
        except httpx.TransportError as e:
            raise DiscoveryTransportError(f"Discovery connection failed: {e}") from e

    async def _iter_events(
        self, response: httpx.Response
    ) -> AsyncIterator[DiscoveryEvent]:
        event_name = "message"
        data_lines: List[str] = []

        async for line in response.aiter_lines():
            if line.startswith(":"):
                continue
            if not line:
                if data_lines:
                    for event in self._decode(event_name, data_lines):
                        yield event
                event_name = "message"
                data_lines = []
                continue

            field, _, value = line.partition(":")
            value = value[1:] if value.startswith(" ") else value
            if field == "event":
                event_name = value
            elif field == "data":
                data_lines.append(value)

        if data_lines:
            for event in self._decode(event_name, data_lines):
                yield event

    def _decode(self, name: str, data_lines: List[str]) -> List[DiscoveryEvent]:
        try:
            data = json.loads("\n".join(data_lines))
        except json.JSONDecodeError:
            self.logger.warning(f"Skipping malformed '{name}' event from provider")
            return []
        if not isinstance(data, dict):
            return []
        return parse_event(name, data)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "DiscoveryClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

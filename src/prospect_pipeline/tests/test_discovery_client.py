# src/prospect_pipeline/tests/test_discovery_client.py
"""
Unit tests for the streaming discovery client.

Tests cover:
- SSE event parsing into batches, progress and terminal events
- Request payload and auth header
- Retryable and non-retryable HTTP statuses
- Connection failures and streams without a terminal event
- Malformed event data
"""
import json

import httpx
import pytest

from prospect_pipeline.discovery_client import DiscoveryClient, parse_event
from prospect_pipeline.models import (
    DiscoveryError,
    DiscoveryTransportError,
    PartialBatch,
    ProgressEvent,
    SearchContext,
    TerminalEvent,
    TerminalKind,
)


def sse(*events) -> bytes:
    """Encode (name, data) pairs as a server-sent event stream."""
    chunks = [f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in events]
    return "".join(chunks).encode("utf-8")


def make_client(handler) -> DiscoveryClient:
    transport = httpx.MockTransport(handler)
    return DiscoveryClient(
        base_url="https://discovery.example.com/api",
        auth_token="token-123",
        client=httpx.AsyncClient(transport=transport),
    )


async def collect(client: DiscoveryClient, context: SearchContext):
    return [event async for event in client.search(context)]


CONTEXT = SearchContext(query="plumber", location="Austin, TX", requested_count=20)


class TestParseEvent:
    """Tests for parse_event()."""

    @pytest.mark.unit
    def test_results_event(self):
        events = parse_event("results", {
            "leads": [{"name": "Acme"}],
            "total": 1,
            "progress": 50,
            "page": 1,
        })

        assert isinstance(events[0], PartialBatch)
        assert events[0].leads == [{"name": "Acme"}]
        assert isinstance(events[1], ProgressEvent)
        assert events[1].progress == 50.0
        assert events[1].coverage.page == 1

    @pytest.mark.unit
    def test_progress_event_with_coverage(self):
        events = parse_event("progress", {
            "progress": 30,
            "coverage": {"expandedQueries": 4, "completedQueries": 1, "estimatedRemaining": 60},
        })

        coverage = events[0].coverage
        assert coverage.expanded_queries == 4
        assert coverage.completed_queries == 1
        assert coverage.estimated_remaining == 60

    @pytest.mark.unit
    def test_complete_and_error_events(self):
        assert parse_event("complete", {"total": 3})[0] == TerminalEvent(
            kind=TerminalKind.SUCCESS, total=3
        )
        assert parse_event("complete", {"total": 3, "partial": True})[0].kind == TerminalKind.PARTIAL
        error = parse_event("error", {"error": "quota exceeded"})[0]
        assert error.kind == TerminalKind.FAILURE
        assert error.error == "quota exceeded"

    @pytest.mark.unit
    def test_unknown_event_ignored(self):
        assert parse_event("heartbeat", {}) == []


class TestDiscoveryClientStream:
    """Tests for DiscoveryClient.search()."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stream_events(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            body = sse(
                ("start", {"query": "plumber", "limit": 20, "estimatedPages": 2}),
                ("results", {"leads": [{"name": "Acme"}], "total": 1, "progress": 50, "page": 1}),
                ("results", {"leads": [{"name": "Bolt"}], "total": 2, "progress": 100, "page": 2}),
                ("complete", {"total": 2, "query": "plumber"}),
            )
            return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})

        client = make_client(handler)
        events = await collect(client, CONTEXT)
        await client.close()

        kinds = [type(e).__name__ for e in events]
        assert kinds == [
            "ProgressEvent",
            "PartialBatch",
            "ProgressEvent",
            "PartialBatch",
            "ProgressEvent",
            "TerminalEvent",
        ]
        assert events[0].coverage.estimated_pages == 2

        request = requests[0]
        assert request.method == "POST"
        assert request.url.path == "/api/search-stream"
        assert request.headers["Authorization"] == "Bearer token-123"
        payload = json.loads(request.content)
        assert payload["service"] == "plumber"
        assert payload["location"] == "Austin, TX"
        assert payload["limit"] == 20

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_comments_and_malformed_data_skipped(self):
        def handler(request):
            body = (
                b": keep-alive\n\n"
                b"event: results\ndata: {not json}\n\n"
                b"event: complete\ndata: {\"total\": 0}\n\n"
            )
            return httpx.Response(200, content=body)

        client = make_client(handler)
        events = await collect(client, CONTEXT)

        assert events == [TerminalEvent(kind=TerminalKind.SUCCESS, total=0)]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_terminal_event_is_transport_error(self):
        def handler(request):
            return httpx.Response(200, content=sse(("results", {"leads": [{"name": "Acme"}]})))

        client = make_client(handler)

        with pytest.raises(DiscoveryTransportError):
            await collect(client, CONTEXT)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_error_is_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)

        with pytest.raises(DiscoveryTransportError):
            await collect(client, CONTEXT)

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error_type", [
        (503, DiscoveryTransportError),
        (502, DiscoveryTransportError),
        (401, DiscoveryError),
        (400, DiscoveryError),
    ])
    async def test_http_errors(self, status, error_type):
        def handler(request):
            return httpx.Response(status, json={"error": "nope"})

        client = make_client(handler)

        with pytest.raises(error_type) as exc_info:
            await collect(client, CONTEXT)
        assert str(status) in str(exc_info.value)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_retryable_error_is_not_transport(self):
        def handler(request):
            return httpx.Response(403)

        client = make_client(handler)

        with pytest.raises(DiscoveryError) as exc_info:
            await collect(client, CONTEXT)
        assert not isinstance(exc_info.value, DiscoveryTransportError)

"""Tests for geoproxy/proxy/handler.py — header policies and body relay."""

import asyncio
import logging

import httpx
import pytest

from geoproxy.errors import UpstreamError
from geoproxy.logging.audit import get_audit_logger
from geoproxy.proxy.handler import (
    build_response_headers,
    filename_from_url,
    relay_body,
    stream_response,
)
from geoproxy.proxy.upstream import UpstreamExchange
from tests.conftest import streamed

URL = "https://pixeldrain.com/api/file/abc123?download"


async def _exchange(response: httpx.Response) -> UpstreamExchange:
    """Wrap *response* as a streamed exchange served over a mock transport."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: streamed(response)))
    upstream = await client.send(client.build_request("GET", URL), stream=True)
    return UpstreamExchange(upstream)


class TestFilenameFromUrl:

    def test_last_segment(self):
        assert filename_from_url("https://cdn.pixeldrain.com/files/report%20v2.pdf?x=1") == "report v2.pdf"

    def test_id_url(self):
        assert filename_from_url(URL) == "abc123"

    def test_empty_path(self):
        assert filename_from_url("https://pixeldrain.com/") == "download"


class TestBuildResponseHeaders:

    async def test_mirror_keeps_range_headers(self):
        exchange = await _exchange(httpx.Response(
            206,
            headers={
                "content-type": "video/mp4",
                "content-range": "bytes 100-199/1000",
                "accept-ranges": "bytes",
                "etag": '"v1"',
            },
            content=b"x" * 100,
        ))
        headers = dict(build_response_headers(exchange, URL, "mirror"))
        assert headers["content-range"] == "bytes 100-199/1000"
        assert headers["accept-ranges"] == "bytes"
        assert headers["content-length"] == "100"
        assert headers["content-type"] == "video/mp4"
        assert headers["etag"] == '"v1"'

    async def test_mirror_drops_hop_by_hop(self):
        exchange = await _exchange(httpx.Response(
            200,
            headers={"connection": "keep-alive", "keep-alive": "timeout=5", "x-file-id": "abc123"},
            content=b"data",
        ))
        names = [key for key, _ in build_response_headers(exchange, URL, "mirror")]
        assert "connection" not in names
        assert "keep-alive" not in names
        assert "x-file-id" in names

    async def test_mirror_keeps_repeated_headers(self):
        exchange = await _exchange(httpx.Response(
            200,
            headers=[("set-cookie", "a=1"), ("set-cookie", "b=2")],
            content=b"",
        ))
        cookies = [value for key, value in build_response_headers(exchange, URL, "mirror") if key == "set-cookie"]
        assert cookies == ["a=1", "b=2"]

    async def test_curated_defaults(self):
        exchange = await _exchange(httpx.Response(200, content=b"data"))
        headers = build_response_headers(exchange, URL, "curated")
        assert headers == [
            ("content-type", "application/octet-stream"),
            ("content-disposition", 'attachment; filename="abc123"'),
        ]

    async def test_curated_prefers_upstream_values(self):
        exchange = await _exchange(httpx.Response(
            200,
            headers={
                "content-type": "application/zip",
                "content-disposition": 'attachment; filename="bundle.zip"',
                "content-range": "bytes 0-3/4",
            },
            content=b"data",
        ))
        headers = dict(build_response_headers(exchange, URL, "curated"))
        assert headers == {
            "content-type": "application/zip",
            "content-disposition": 'attachment; filename="bundle.zip"',
        }


class TestRelayBody:

    async def test_relays_chunks_and_closes(self):
        async def _chunks():
            yield b"one"
            yield b"two"
            yield b"three"

        exchange = await _exchange(httpx.Response(200, content=_chunks()))
        received = [chunk async for chunk in relay_body(exchange)]
        assert received == [b"one", b"two", b"three"]
        assert exchange._response.is_closed

    async def test_completion_logged_with_transfer_size(self):
        records: list[logging.LogRecord] = []
        handler = logging.Handler()
        handler.emit = records.append
        logger = get_audit_logger()
        level = logger.level
        logger.setLevel(logging.INFO)
        logger.addHandler(handler)
        try:
            exchange = await _exchange(httpx.Response(200, content=b"x" * 1000))
            received = b"".join([chunk async for chunk in relay_body(exchange)])
        finally:
            logger.removeHandler(handler)
            logger.setLevel(level)
        assert len(received) == 1000
        completed = [r for r in records if r.getMessage() == "Stream completed"]
        assert completed[0].audit_data["bytes_sent"] == 1000
        assert completed[0].audit_data["upstream_status"] == 200

    async def test_interrupted_stream_reraises_and_closes(self):
        async def _broken():
            yield b"partial"
            raise httpx.ReadError("connection reset")

        exchange = await _exchange(httpx.Response(200, content=_broken()))
        received = []
        with pytest.raises(httpx.ReadError):
            async for chunk in relay_body(exchange):
                received.append(chunk)
        assert received == [b"partial"]
        assert exchange._response.is_closed

    async def test_deadline_stops_stream(self):
        async def _slow():
            yield b"first"
            await asyncio.sleep(0.05)
            yield b"second"
            yield b"third"

        exchange = await _exchange(httpx.Response(200, content=_slow()))
        received = []
        with pytest.raises(UpstreamError):
            async for chunk in relay_body(exchange, deadline_seconds=0.01):
                received.append(chunk)
        assert received[0] == b"first"
        assert b"third" not in received
        assert exchange._response.is_closed

    async def test_closes_when_consumer_stops_early(self):
        async def _chunks():
            yield b"a"
            yield b"b"

        exchange = await _exchange(httpx.Response(200, content=_chunks()))
        body = relay_body(exchange)
        assert await body.__anext__() == b"a"
        await body.aclose()
        assert exchange._response.is_closed


class TestStreamResponse:

    async def test_status_and_headers(self):
        exchange = await _exchange(httpx.Response(
            206,
            headers={"content-range": "bytes 0-1/10", "content-type": "text/plain"},
            content=b"ab",
        ))
        response = stream_response(exchange, URL, header_policy="mirror")
        assert response.status_code == 206
        assert response.headers["content-range"] == "bytes 0-1/10"
        assert response.headers["content-type"] == "text/plain"
        assert response.background is not None
        await exchange.aclose()

    async def test_curated_headers(self):
        exchange = await _exchange(httpx.Response(200, headers={"content-range": "bytes 0-1/10"}, content=b"ab"))
        response = stream_response(exchange, URL, header_policy="curated")
        assert "content-range" not in response.headers
        assert response.headers["content-disposition"] == 'attachment; filename="abc123"'
        await exchange.aclose()

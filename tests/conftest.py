"""Shared fixtures for the download proxy test suite."""

import inspect

import httpx
import pytest

import geoproxy.proxy.upstream as upstream_mod
import geoproxy.security.asn as asn_mod
from geoproxy.config.settings import get_allowlist, get_settings
from geoproxy.security.asn import ASNResolver


class AsyncBytes(httpx.AsyncByteStream):
    """Body served as a live async stream, like a real transport delivers it."""

    def __init__(self, data: bytes, chunk_size: int = 256):
        self._data = data
        self._chunk_size = chunk_size

    async def __aiter__(self):
        for start in range(0, len(self._data), self._chunk_size):
            yield self._data[start:start + self._chunk_size]

    async def aclose(self) -> None:
        pass


def streamed(response: httpx.Response) -> httpx.Response:
    """Re-wrap a response built with content=/json= so its body is still unread.

    httpx reads such bodies eagerly, which leaves nothing for ``aiter_raw``.
    """
    if not response.is_stream_consumed:
        return response
    return httpx.Response(
        response.status_code,
        headers=response.headers,
        stream=AsyncBytes(response.content),
    )


class FakeResolver(ASNResolver):
    """Resolver returning a fixed ASN (or None) and recording every lookup."""

    def __init__(self, asn: str | None = None):
        self.asn = asn
        self.calls: list[str] = []

    async def resolve(self, ip: str) -> str | None:
        self.calls.append(ip)
        return self.asn


@pytest.fixture
def fake_resolver() -> FakeResolver:
    """Resolves every IP to Cloudflare's ASN by default."""
    return FakeResolver(asn="AS13335")


@pytest.fixture
def override_settings(monkeypatch):
    """Factory fixture: set env vars and clear settings caches.

    Usage:
        override_settings(HEADER_POLICY="curated", ALLOWED_ASNS="AS1")
    """
    def _override(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        # Clear lru_caches so Settings/AllowlistConfig re-read env
        get_settings.cache_clear()
        get_allowlist.cache_clear()

    yield _override

    get_settings.cache_clear()
    get_allowlist.cache_clear()


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch):
    """Reset shared clients between tests."""
    monkeypatch.setattr(upstream_mod, "_client", None)
    monkeypatch.setattr(asn_mod, "_resolver", None)
    yield


@pytest.fixture
def upstream(monkeypatch):
    """Factory fixture: route the shared upstream client through a handler.

    Usage:
        seen = upstream(lambda request: httpx.Response(200, content=b"data"))
        ... seen[0].headers ...
    """
    def _install(handler) -> list[httpx.Request]:
        seen: list[httpx.Request] = []

        async def _recording(request: httpx.Request):
            seen.append(request)
            result = handler(request)
            if inspect.isawaitable(result):
                result = await result
            return streamed(result)

        client = httpx.AsyncClient(
            transport=httpx.MockTransport(_recording),
            follow_redirects=True,
        )
        monkeypatch.setattr(upstream_mod, "_client", client)
        return seen

    yield _install


@pytest.fixture
def app_client(override_settings, fake_resolver):
    """httpx AsyncClient wired to the FastAPI app with a fake ASN resolver."""
    override_settings(
        ALLOWED_DOMAINS="pixeldrain.com,cdn.pixeldrain.com",
        ALLOWED_ASNS="AS13335,AS812",
        HEADER_POLICY="mirror",
        UPSTREAM_ERROR_POLICY="passthrough",
    )
    from geoproxy.main import app
    from geoproxy.security.asn import get_asn_resolver

    app.dependency_overrides[get_asn_resolver] = lambda: fake_resolver
    transport = httpx.ASGITransport(app=app)
    client = httpx.AsyncClient(transport=transport, base_url="http://test")
    yield client
    app.dependency_overrides.clear()

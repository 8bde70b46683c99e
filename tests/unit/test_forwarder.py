"""Unit tests for the request forwarder."""

import asyncio
import ssl

import httpx
import pytest
from starlette.requests import ClientDisconnect, Request

from topsites.proxy.forwarder import (
    Forwarder,
    TLSOptions,
    UpstreamConnectionError,
    build_connection_header,
    build_host_header,
    build_outbound_headers,
    build_response_headers,
    is_connection_reset,
    is_port_required,
    remap_status,
)

TARGET = "http://upstream.example:8080/test?sub1=amazon"


def make_request(method="GET", headers=None, body=b"", http_version="1.1", disconnect=False,
                 fail_receive=False):
    """Build a Starlette request over an in-memory ASGI receive channel."""
    scope = {
        "type": "http",
        "method": method,
        "path": "/cid/demo",
        "raw_path": b"/cid/demo",
        "root_path": "",
        "query_string": b"",
        "headers": [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in (headers or [])
        ],
        "http_version": http_version,
        "scheme": "http",
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 50000),
        "asgi": {"version": "3.0", "spec_version": "2.4"},
    }
    messages = [{"type": "http.request", "body": body, "more_body": False}]
    if disconnect:
        messages.append({"type": "http.disconnect"})

    async def receive():
        if messages:
            return messages.pop(0)
        if fail_receive:
            raise RuntimeError("receive channel broken")
        await asyncio.Event().wait()

    return Request(scope, receive)


def run_forward(forwarder, request, target=TARGET, headers=None):
    """Forward, then play the response into an in-memory ASGI send channel."""
    async def _run():
        response = await forwarder.forward(request, target, headers=headers)
        body = b""

        async def send(message):
            nonlocal body
            if message["type"] == "http.response.body":
                body += message.get("body", b"")

        await response(request.scope, request.receive, send)
        return response, body

    return asyncio.run(_run())


@pytest.fixture
def upstream():
    """Create a mock upstream that records the requests it receives."""
    seen = []

    async def handler(request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        seen.append((request, body))
        return httpx.Response(
            302,
            content=b"hello from upstream",
            headers=[
                ("content-type", "text/plain"),
                ("location", "https://real-upstream.example/landing"),
                ("set-cookie", "session=abc"),
                ("x-custom", "1"),
                ("x-custom", "2"),
            ],
        )

    return seen, httpx.MockTransport(handler)


# --- Header helpers ---

@pytest.mark.parametrize("url,expected", [
    ("http://example.com/path", "example.com"),
    ("http://example.com:80/path", "example.com"),
    ("https://example.com:443/", "example.com"),
    ("http://localhost:8000/test", "localhost:8000"),
    ("https://example.com:8443/", "example.com:8443"),
    ("wss://example.com:443/", "example.com"),
    ("http://[::1]:8080/", "[::1]:8080"),
])
def test_build_host_header(url, expected):
    """Test the Host header only carries non-default ports."""
    assert build_host_header(url) == expected


def test_build_host_header_requires_host():
    """Test URLs without a host are rejected."""
    with pytest.raises(ValueError):
        build_host_header("/relative/path")


def test_is_port_required():
    """Test default port detection per scheme."""
    assert not is_port_required(None, "http")
    assert not is_port_required(80, "http")
    assert not is_port_required(80, "ws")
    assert not is_port_required(443, "https:")
    assert is_port_required(8080, "http")
    assert is_port_required(80, "https")
    assert is_port_required(21, "ftp")


@pytest.mark.parametrize("inbound,expected", [
    (None, "close"),
    ("keep-alive", "close"),
    ("Upgrade", "Upgrade"),
    ("keep-alive, upgrade", "keep-alive, upgrade"),
    ("upgrade-insecure", "close"),
])
def test_build_connection_header(inbound, expected):
    """Test only upgrade requests keep their Connection header."""
    assert build_connection_header(inbound) == expected


def test_build_outbound_headers():
    """Test only allow-listed inbound headers travel upstream."""
    inbound = [
        ("Host", "proxy.example"),
        ("Cookie", "type=ninja"),
        ("Cookie", "language=python"),
        ("Accept", "text/html"),
        ("Authorization", "Bearer secret"),
        ("X-Region", "us"),
        ("User-Agent", "full agent"),
        ("Connection", "keep-alive"),
    ]

    headers = build_outbound_headers(inbound, TARGET, {"User-Agent": "pruned agent"})

    assert headers == {
        "cookie": "type=ninja; language=python",
        "accept": "text/html",
        "user-agent": "pruned agent",
        "accept-encoding": "identity",
        "host": "upstream.example:8080",
        "connection": "close",
    }


def test_build_response_headers_http11():
    """Test cookies are dropped and keep-alive is filled in."""
    upstream = [
        ("Content-Type", "text/plain"),
        ("Set-Cookie", "a=b"),
        ("Set-Cookie2", "c=d"),
        (" X-Padded ", "v"),
        ("X-Missing", None),
    ]

    headers = build_response_headers("1.1", {}, upstream)

    assert headers == [
        ("Content-Type", "text/plain"),
        ("X-Padded", "v"),
        ("connection", "keep-alive"),
    ]


def test_build_response_headers_keeps_upstream_connection():
    """Test an upstream Connection header isn't overridden for HTTP/1.1."""
    headers = build_response_headers("1.1", {"connection": "keep-alive"}, [("Connection", "close")])

    assert headers == [("Connection", "close")]


def test_build_response_headers_http10():
    """Test HTTP/1.0 clients never receive chunked framing."""
    upstream = [("Transfer-Encoding", "chunked"), ("Connection", "keep-alive"), ("X-A", "1")]

    assert build_response_headers("1.0", {}, upstream) == [("X-A", "1"), ("connection", "close")]
    assert build_response_headers("1.0", {"connection": "keep-alive"}, upstream) == [
        ("X-A", "1"),
        ("connection", "keep-alive"),
    ]


def test_build_response_headers_http2():
    """Test HTTP/2 responses get no Connection header."""
    assert build_response_headers("2", {}, [("X-A", "1")]) == [("X-A", "1")]


@pytest.mark.parametrize("status,expected", [
    (200, 200),
    (300, 300),
    (301, 200),
    (302, 200),
    (307, 200),
    (309, 200),
    (310, 310),
    (404, 404),
    (500, 500),
])
def test_remap_status(status, expected):
    """Test redirects are never relayed to the client."""
    assert remap_status(status) == expected


def test_is_connection_reset():
    """Test reset detection."""
    assert is_connection_reset(httpx.ReadError("reset"))
    assert is_connection_reset(httpx.RemoteProtocolError("peer closed"))
    assert not is_connection_reset(httpx.ReadTimeout("slow"))


# --- TLS ---

def test_tls_options_empty():
    """Test TLS options without material."""
    assert TLSOptions().is_empty()
    assert not TLSOptions(ciphers="ECDHE+AESGCM").is_empty()


def test_tls_options_secure_protocol():
    """Test pinning the TLS version, including method-style names."""
    context = TLSOptions(secure_protocol="TLSv1_2_method").create_ssl_context()

    assert context.minimum_version == ssl.TLSVersion.TLSv1_2
    assert context.maximum_version == ssl.TLSVersion.TLSv1_2
    assert context.verify_mode == ssl.CERT_REQUIRED


def test_tls_options_unsupported_protocol():
    """Test unknown protocol names are rejected."""
    with pytest.raises(ValueError, match="Unsupported TLS protocol"):
        TLSOptions(secure_protocol="SSLv3_method").create_ssl_context()


# --- Forwarding ---

def test_forward_get(upstream):
    """Test a GET is relayed with rewritten headers and a remapped status."""
    seen, transport = upstream
    forwarder = Forwarder(transport=transport)
    request = make_request(headers=[
        ("Cookie", "type=ninja"),
        ("X-Region", "us"),
        ("User-Agent", "full agent"),
        ("Connection", "keep-alive"),
    ])

    response, body = run_forward(forwarder, request, headers={"user-agent": "pruned"})

    outbound, outbound_body = seen[0]
    assert outbound.method == "GET"
    assert str(outbound.url) == TARGET
    assert outbound.headers["host"] == "upstream.example:8080"
    assert outbound.headers["connection"] == "close"
    assert outbound.headers["cookie"] == "type=ninja"
    assert outbound.headers["user-agent"] == "pruned"
    assert "x-region" not in outbound.headers
    assert outbound_body == b""

    assert response.status_code == 200
    assert body == b"hello from upstream"
    assert "set-cookie" not in response.headers
    assert response.headers.getlist("x-custom") == ["1", "2"]
    assert response.headers["location"] == "https://real-upstream.example/landing"
    assert response.headers["connection"] == "keep-alive"


def test_forward_streams_request_body(upstream):
    """Test request bodies are piped to the target."""
    seen, transport = upstream
    forwarder = Forwarder(transport=transport)
    request = make_request(
        method="POST",
        headers=[("Content-Type", "application/json"), ("Content-Length", "11")],
        body=b'{"a": true}',
    )

    run_forward(forwarder, request)

    outbound, outbound_body = seen[0]
    assert outbound.method == "POST"
    assert outbound.headers["content-type"] == "application/json"
    assert outbound_body == b'{"a": true}'


def test_forward_connect_error():
    """Test connection failures before a response surface as errors."""
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    forwarder = Forwarder(transport=httpx.MockTransport(handler))

    with pytest.raises(UpstreamConnectionError, match="ConnectError"):
        run_forward(forwarder, make_request())


def test_forward_timeout():
    """Test an outbound timeout aborts the request."""
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    forwarder = Forwarder(timeout=0.5, transport=httpx.MockTransport(handler))

    with pytest.raises(UpstreamConnectionError, match="ReadTimeout"):
        run_forward(forwarder, make_request())


def test_forward_invalid_target():
    """Test targets without a host are rejected before connecting."""
    forwarder = Forwarder(transport=httpx.MockTransport(lambda request: httpx.Response(200)))

    with pytest.raises(UpstreamConnectionError, match="invalid target URL"):
        run_forward(forwarder, make_request(), target="/no/host")


def test_forward_client_disconnect_aborts_upstream():
    """Test a client disconnect aborts the pending outbound request."""
    completed = []

    async def handler(request):
        await asyncio.sleep(5)
        completed.append(True)
        return httpx.Response(200, content=b"too late")

    forwarder = Forwarder(transport=httpx.MockTransport(handler))

    response, body = run_forward(forwarder, make_request(disconnect=True))

    assert completed == []
    assert body == b""
    assert not hasattr(response, "body_iterator")


def test_forward_stream_error_is_swallowed():
    """Test errors while streaming the body end the stream quietly."""
    class ResetStream(httpx.AsyncByteStream):
        async def __aiter__(self):
            yield b"partial"
            raise httpx.ReadError("connection reset by peer")

        async def aclose(self):
            pass

    forwarder = Forwarder(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, stream=ResetStream()))
    )

    response, body = run_forward(forwarder, make_request())

    assert response.status_code == 200
    assert body == b"partial"


def test_forward_receive_failure_is_not_a_disconnect():
    """Test a broken receive channel surfaces instead of passing as a disconnect."""
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200)

    forwarder = Forwarder(transport=httpx.MockTransport(handler))

    with pytest.raises(RuntimeError, match="receive channel broken"):
        run_forward(forwarder, make_request(fail_receive=True))


def test_client_disconnect_mid_body_closes_upstream():
    """Test the upstream is released when the client leaves during the body."""
    class StalledStream(httpx.AsyncByteStream):
        def __init__(self):
            self.closed = []

        async def __aiter__(self):
            yield b"first"
            await asyncio.sleep(3600)
            yield b"never sent"

        async def aclose(self):
            self.closed.append(True)

    stream = StalledStream()
    forwarder = Forwarder(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, stream=stream))
    )
    request = make_request()

    async def send(message):
        if message["type"] == "http.response.body" and message.get("body"):
            raise OSError("connection lost")

    async def _run():
        response = await forwarder.forward(request, TARGET)
        await response(request.scope, request.receive, send)

    with pytest.raises((ClientDisconnect, OSError)):
        asyncio.run(_run())

    assert stream.closed == [True]

"""Async request forwarder.

Relays an inbound request to a resolved target with httpx and streams the
target's response back unmodified. Every forward opens its own connection;
only allow-listed headers travel upstream, and cookie headers never travel
back to the client.
"""

import asyncio
import functools
import logging
import re
import ssl
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import httpx
from fastapi import Request, Response
from fastapi.responses import StreamingResponse
from starlette.requests import ClientDisconnect

from topsites.core.errors import ProxyError

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"http": 80, "ws": 80, "https": 443, "wss": 443}

DEFAULT_FORWARD_HEADERS = ("accept", "content-type", "content-length", "cookie")

HEADER_UPGRADE_RE = re.compile(r"(^|,)\s*upgrade\s*($|,)", re.IGNORECASE)

# Keys also match method-style names, e.g. "TLSv1_2_method"
TLS_VERSIONS = {
    "tlsv1_2": ssl.TLSVersion.TLSv1_2,
    "tlsv1_3": ssl.TLSVersion.TLSv1_3,
}


class UpstreamConnectionError(ProxyError):
    """Raised when the target fails before any response headers arrive."""
    pass


class _ClientGone(Exception):
    pass


@dataclass(frozen=True)
class TLSOptions:
    """Client TLS material for https targets."""
    cert: Optional[str] = None
    key: Optional[str] = None
    passphrase: Optional[str] = None
    ca: Optional[str] = None
    ciphers: Optional[str] = None
    secure_protocol: Optional[str] = None

    def is_empty(self) -> bool:
        return not any((self.cert, self.key, self.ca, self.ciphers, self.secure_protocol))

    def create_ssl_context(self) -> ssl.SSLContext:
        """Build a verifying SSL context carrying the configured material.

        Raises:
            ValueError: If ``secure_protocol`` names an unsupported version.
        """
        context = ssl.create_default_context(cafile=self.ca)
        if self.cert:
            context.load_cert_chain(self.cert, keyfile=self.key, password=self.passphrase)
        if self.ciphers:
            context.set_ciphers(self.ciphers)
        if self.secure_protocol:
            name = self.secure_protocol.lower()
            for suffix in ("_client_method", "_method"):
                if name.endswith(suffix):
                    name = name[: -len(suffix)]
            version = TLS_VERSIONS.get(name)
            if version is None:
                raise ValueError(f"Unsupported TLS protocol: {self.secure_protocol}")
            context.minimum_version = version
            context.maximum_version = version
        return context


class RelayResponse(StreamingResponse):
    """Streaming response that releases the upstream exchange however it ends.

    Starlette skips background tasks when the client disconnects mid-body, so
    cleanup runs in ``__call__`` instead.
    """

    def __init__(
        self,
        content: AsyncIterator[bytes],
        status_code: int,
        on_close: Callable[[], Awaitable[None]],
    ):
        super().__init__(content, status_code=status_code)
        self._on_close = on_close

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.body_iterator.aclose()
            await self._on_close()


@dataclass
class ForwardContext:
    """State owned by a single forwarded exchange."""
    request: Request
    client: httpx.AsyncClient
    outbound: httpx.Request
    target: str


def is_port_required(port: Optional[int], scheme: str) -> bool:
    """True if ``port`` isn't the default port for ``scheme``."""
    if not port:
        return False
    return DEFAULT_PORTS.get(scheme.split(":")[0].lower()) != port


def has_port(host: str) -> bool:
    # Ignore the colons inside a bracketed IPv6 literal
    return ":" in host.rsplit("]", 1)[-1]


def build_host_header(target_url: str) -> str:
    """Compute the outbound Host header for ``target_url``.

    Raises:
        ValueError: If the URL has no host or an invalid port.
    """
    parts = urlsplit(target_url)
    host = parts.hostname
    if not host:
        raise ValueError(f"No host in target URL: {target_url}")
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if is_port_required(port, parts.scheme) and not has_port(host):
        return f"{host}:{port}"
    return host


def build_connection_header(inbound_connection: Optional[str]) -> str:
    """Keep upgrade requests intact; close every other outbound connection."""
    if inbound_connection and HEADER_UPGRADE_RE.search(inbound_connection):
        return inbound_connection
    return "close"


def build_outbound_headers(
    inbound_headers: Iterable[Tuple[str, str]],
    target_url: str,
    extra_headers: Optional[Mapping[str, str]] = None,
    forward_headers: Iterable[str] = DEFAULT_FORWARD_HEADERS,
) -> Dict[str, str]:
    """Build the headers sent to the target.

    Args:
        inbound_headers: Inbound (name, value) pairs, duplicates allowed.
        target_url: Resolved target URL.
        extra_headers: Headers set by the caller (e.g. the pruned User-Agent).
        forward_headers: Inbound header names relayed as-is.

    Returns:
        Lowercased header dict.
    """
    allowed = {name.lower() for name in forward_headers}
    headers: Dict[str, str] = {}
    inbound_connection = None
    for name, value in inbound_headers:
        name = name.lower()
        if name == "connection":
            inbound_connection = value
        if name not in allowed:
            continue
        if name in headers:
            separator = "; " if name == "cookie" else ", "
            headers[name] = headers[name] + separator + value
        else:
            headers[name] = value

    for name, value in (extra_headers or {}).items():
        headers[name.lower()] = value

    # httpx would otherwise advertise compression the client never asked for
    headers.setdefault("accept-encoding", "identity")
    headers["host"] = build_host_header(target_url)
    headers["connection"] = build_connection_header(inbound_connection)
    return headers


def build_response_headers(
    http_version: str,
    inbound_headers: Mapping[str, str],
    upstream_headers: Iterable[Tuple[str, Optional[str]]],
) -> List[Tuple[str, str]]:
    """Select and adjust the upstream headers relayed to the client.

    Cookie headers and headers without a value are dropped. HTTP/1.0 clients
    never receive chunked framing.
    """
    headers = [
        (name.strip(), value)
        for name, value in upstream_headers
        if value is not None and "cookie" not in name.lower()
    ]
    inbound_connection = inbound_headers.get("connection")

    if http_version == "1.0":
        headers = [
            (name, value) for name, value in headers
            if name.lower() not in ("transfer-encoding", "connection")
        ]
        headers.append(("connection", inbound_connection or "close"))
    elif http_version not in ("2", "2.0"):
        if not any(name.lower() == "connection" for name, _ in headers):
            headers.append(("connection", inbound_connection or "keep-alive"))
    return headers


def remap_status(status_code: int) -> int:
    """Turn 301-309 into 200 so clients never follow a redirect upstream."""
    if 300 < status_code < 310:
        return 200
    return status_code


def is_connection_reset(exc: BaseException) -> bool:
    if isinstance(exc, (httpx.ReadError, httpx.RemoteProtocolError)):
        return True
    cause = exc.__cause__ or exc.__context__
    return isinstance(cause, ConnectionResetError)


def _has_body(request: Request) -> bool:
    if request.headers.get("transfer-encoding"):
        return True
    length = (request.headers.get("content-length") or "").strip()
    return bool(length) and length != "0"


class Forwarder:
    """Forwards one inbound request per call to a resolved target URL."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        tls: Optional[TLSOptions] = None,
        forward_headers: Iterable[str] = DEFAULT_FORWARD_HEADERS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            timeout: Seconds before the outbound request is aborted (None = never).
            tls: Client TLS material for https targets.
            forward_headers: Inbound header names relayed upstream.
            transport: Custom httpx transport (used by tests).
        """
        self._timeout = timeout
        self._forward_headers = tuple(forward_headers)
        self._transport = transport
        self._ssl_context: Optional[ssl.SSLContext] = None
        if tls is not None and not tls.is_empty():
            self._ssl_context = tls.create_ssl_context()

    def _create_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout),
            follow_redirects=False,
            limits=httpx.Limits(max_keepalive_connections=0),
            verify=self._ssl_context or True,
            transport=self._transport,
        )

    async def forward(
        self,
        request: Request,
        target: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Response:
        """Forward ``request`` to ``target`` and stream the response back.

        Args:
            request: Inbound request.
            target: Fully resolved target URL.
            headers: Extra outbound headers, overriding inbound ones.

        Returns:
            Streaming response relaying the target's status, headers and body.

        Raises:
            UpstreamConnectionError: If the target fails before responding.
        """
        try:
            outbound_headers = build_outbound_headers(
                request.headers.items(), target, headers, self._forward_headers
            )
        except ValueError as e:
            raise UpstreamConnectionError(f"invalid target URL: {target}") from e

        has_body = _has_body(request)
        client = self._create_client()
        try:
            outbound = client.build_request(
                request.method,
                target,
                headers=outbound_headers,
                content=self._iter_inbound(request) if has_body else None,
            )
        except httpx.InvalidURL as e:
            await client.aclose()
            raise UpstreamConnectionError(f"invalid target URL: {target}") from e

        ctx = ForwardContext(request=request, client=client, outbound=outbound, target=target)
        try:
            upstream = await self._send(ctx, watch_disconnect=not has_body)
        except (ClientDisconnect, _ClientGone):
            await client.aclose()
            logger.debug("Client went away, aborted request to %s", target)
            return Response()
        except httpx.HTTPError as e:
            await client.aclose()
            logger.warning("Forwarding to %s failed: %r", target, e)
            raise UpstreamConnectionError(f"upstream request failed: {e.__class__.__name__}") from e
        except Exception:
            await client.aclose()
            raise

        response = RelayResponse(
            self._stream_body(ctx, upstream),
            status_code=remap_status(upstream.status_code),
            on_close=functools.partial(self._close, ctx, upstream),
        )
        relayed = build_response_headers(
            request.scope.get("http_version", "1.1"),
            request.headers,
            (
                (name.decode("latin-1"), value.decode("latin-1"))
                for name, value in upstream.headers.raw
            ),
        )
        response.raw_headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in relayed
        ]
        return response

    async def _send(self, ctx: ForwardContext, watch_disconnect: bool) -> httpx.Response:
        """Send the outbound request, aborting it if the client disconnects.

        The disconnect watcher reads the ASGI receive channel, so it only runs
        for requests without a body.
        """
        if not watch_disconnect:
            return await ctx.client.send(ctx.outbound, stream=True)

        send_task = asyncio.ensure_future(ctx.client.send(ctx.outbound, stream=True))
        watch_task = asyncio.ensure_future(self._wait_for_disconnect(ctx.request))
        try:
            await asyncio.wait({send_task, watch_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not send_task.done():
                send_task.cancel()
            watch_task.cancel()
            watch_result, _ = await asyncio.gather(watch_task, send_task, return_exceptions=True)

        # A broken receive channel is an error, not a disconnect
        if isinstance(watch_result, Exception):
            raise watch_result
        if send_task.cancelled():
            raise _ClientGone()
        return send_task.result()

    @staticmethod
    async def _wait_for_disconnect(request: Request) -> None:
        while True:
            message = await request.receive()
            if message["type"] == "http.disconnect":
                return

    @staticmethod
    async def _iter_inbound(request: Request) -> AsyncIterator[bytes]:
        async for chunk in request.stream():
            if chunk:
                yield chunk

    @staticmethod
    async def _stream_body(ctx: ForwardContext, upstream: httpx.Response) -> AsyncIterator[bytes]:
        # Once headers are out no error response is possible; end the stream
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            if is_connection_reset(e):
                logger.debug("Connection to %s reset while streaming: %r", ctx.target, e)
            else:
                logger.warning("Error streaming response from %s: %r", ctx.target, e)

    @staticmethod
    async def _close(ctx: ForwardContext, upstream: httpx.Response) -> None:
        await upstream.aclose()
        await ctx.client.aclose()

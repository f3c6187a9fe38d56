"""
modarch_gateway.proxy.executor

Upstream proxy execution.

Responsibilities:
- Own one bounded httpx connection pool per upstream.
- Forward method/headers/body with hop-by-hop and identity headers filtered out.
- Stream the upstream response back without buffering; map transport failures.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from dataclasses import dataclass, field

import httpx

from modarch_gateway.errors import UpstreamTimeout, UpstreamUnavailable
from modarch_gateway.observability.logging import get_logger
from modarch_gateway.routing.upstreams import UpstreamTarget
from modarch_gateway.settings import Settings

log = get_logger(__name__)

# RFC 7230 section 6.1, plus headers httpx/the server recompute themselves.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
_RECOMPUTED_REQUEST_HEADERS = frozenset({"host", "content-length"})

TransportFactory = Callable[[UpstreamTarget], httpx.AsyncBaseTransport]


def _connection_listed(headers: Iterable[tuple[str, str]]) -> set[str]:
    listed: set[str] = set()
    for name, value in headers:
        if name.lower() == "connection":
            listed.update(token.strip().lower() for token in value.split(",") if token.strip())
    return listed


def forwardable_request_headers(
    headers: Iterable[tuple[str, str]],
    *,
    trusted: bool,
    identity_headers: frozenset[str],
) -> list[tuple[str, str]]:
    items = list(headers)
    drop = HOP_BY_HOP_HEADERS | _RECOMPUTED_REQUEST_HEADERS | _connection_listed(items)
    if not trusted:
        drop = drop | identity_headers | {"authorization"}
    return [(k, v) for k, v in items if k.lower() not in drop]


def forwardable_response_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    items = list(headers)
    drop = HOP_BY_HOP_HEADERS | _connection_listed(items)
    return [(k, v) for k, v in items if k.lower() not in drop]


@dataclass(slots=True)
class StreamedResponse:
    status_code: int
    headers: list[tuple[str, str]]
    body: AsyncIterator[bytes]
    upstream_name: str
    _upstream: httpx.Response | None = field(default=None, repr=False)

    async def aclose(self) -> None:
        # Safe to call repeatedly (stream finally + response background task).
        if self._upstream is not None:
            await self._upstream.aclose()


@dataclass(frozen=True, slots=True)
class ForwardedFor:
    client_host: str | None
    scheme: str
    host: str | None

    def headers(self) -> list[tuple[str, str]]:
        out = [("x-forwarded-proto", self.scheme)]
        if self.client_host:
            out.append(("x-forwarded-for", self.client_host))
        if self.host:
            out.append(("x-forwarded-host", self.host))
        return out


class ProxyExecutor:
    """
    One attempt per call; retry policy belongs to the caller.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        targets: Mapping[str, UpstreamTarget],
        identity_headers: frozenset[str],
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self._identity_headers = identity_headers
        self._clients: dict[str, httpx.AsyncClient] = {}
        for name, target in targets.items():
            self._clients[name] = httpx.AsyncClient(
                base_url=target.base_url,
                transport=transport_factory(target) if transport_factory else None,
                timeout=httpx.Timeout(settings.upstream_timeout_seconds),
                limits=httpx.Limits(
                    max_connections=settings.max_connections_for(name),
                    max_keepalive_connections=settings.max_connections_for(name),
                    keepalive_expiry=settings.upstream_idle_timeout_seconds,
                ),
                # Redirects are the browser's business; pass them through untouched.
                follow_redirects=False,
            )

    async def execute(
        self,
        *,
        target: UpstreamTarget,
        method: str,
        path: str,
        query: str,
        headers: Iterable[tuple[str, str]],
        body: bytes,
        forwarded: ForwardedFor,
    ) -> StreamedResponse:
        client = self._clients[target.name]
        outgoing = forwardable_request_headers(
            headers, trusted=target.trusted, identity_headers=self._identity_headers
        )
        outgoing.extend(forwarded.headers())
        url = f"{path}?{query}" if query else path
        request = client.build_request(method, url, headers=outgoing, content=body or None)

        try:
            upstream = await client.send(request, stream=True)
        except httpx.PoolTimeout as e:
            # Pool exhausted: the upstream is saturated, treat as unavailable (backpressure).
            raise UpstreamUnavailable(
                target.name, f"Upstream '{target.name}' is saturated"
            ) from e
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(target.name) from e
        except httpx.TransportError as e:
            log.warning("upstream_transport_error", upstream=target.name, error=type(e).__name__)
            raise UpstreamUnavailable(target.name) from e

        return StreamedResponse(
            status_code=upstream.status_code,
            headers=forwardable_response_headers(upstream.headers.multi_items()),
            body=self._stream(upstream, target.name),
            upstream_name=target.name,
            _upstream=upstream,
        )

    async def _stream(self, upstream: httpx.Response, upstream_name: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError:
            # Headers are already sent; the server aborts the connection on re-raise.
            log.warning("upstream_stream_aborted", upstream=upstream_name)
            raise
        finally:
            await upstream.aclose()

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()


# --- Module Notes -----------------------------------------------------------
# Bounded pools per upstream are the only backpressure mechanism: a slow upstream
# exhausts its own pool, never another upstream's.

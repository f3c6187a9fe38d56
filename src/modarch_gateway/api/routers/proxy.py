"""
modarch_gateway.api.routers.proxy

Catch-all proxy endpoint.

Responsibilities:
- Adapt the inbound Starlette request into a `GatewayRequest`.
- Run the pipeline while watching for caller disconnects.
- Stream the upstream response back unbuffered.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from starlette.responses import Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from modarch_gateway.api.deps import pipeline_from_app
from modarch_gateway.observability.logging import get_logger
from modarch_gateway.proxy.executor import ForwardedFor, StreamedResponse
from modarch_gateway.services.pipeline import (
    ClientDisconnected,
    GatewayPipeline,
    GatewayRequest,
    run_until_disconnect,
)

log = get_logger(__name__)

router = APIRouter()

PROXIED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

# nginx convention for "client closed request"; never actually seen by the caller.
CLIENT_CLOSED_REQUEST = 499


class UpstreamStreamingResponse(StreamingResponse):
    """
    Streams an upstream body and releases the upstream response however the send
    ends, including a disconnect before the body iterator was ever started.
    """

    def __init__(self, streamed: StreamedResponse) -> None:
        super().__init__(streamed.body, status_code=streamed.status_code)
        self.raw_headers = [
            (k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in streamed.headers
        ]
        self._streamed = streamed

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._streamed.aclose()


def to_gateway_request(request: Request, body: bytes) -> GatewayRequest:
    return GatewayRequest(
        method=request.method,
        path=request.url.path,
        query=request.url.query,
        headers=request.headers,
        raw_headers=tuple(request.headers.items()),
        body=body,
        namespace=request.query_params.get("namespace"),
        forwarded=ForwardedFor(
            client_host=request.client.host if request.client else None,
            scheme=request.url.scheme,
            host=request.headers.get("host"),
        ),
    )


@router.api_route("/{full_path:path}", methods=PROXIED_METHODS, include_in_schema=False)
async def proxy(
    request: Request,
    pipeline: GatewayPipeline = Depends(pipeline_from_app),
) -> Response:
    # Body is read up front so the receive channel only carries the disconnect afterwards.
    body = await request.body()
    try:
        streamed = await run_until_disconnect(
            pipeline.run(to_gateway_request(request, body)),
            request.receive,
        )
    except ClientDisconnected:
        log.info("client_disconnected")
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    return UpstreamStreamingResponse(streamed)


# --- Module Notes -----------------------------------------------------------
# Gateway errors raised by the pipeline are rendered by the handler in `api.app`.

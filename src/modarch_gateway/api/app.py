"""
modarch_gateway.api.app

FastAPI app factory for the modular-architecture BFF gateway.

Responsibilities:
- Build the FastAPI application and register routers/middleware.
- Build the pipeline components once at startup (routing table, upstream targets,
  connection pools) and dispose them at shutdown.
- Render gateway errors as structured JSON bodies.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from modarch_gateway import __version__
from modarch_gateway.api.routers.bff import router as bff_router
from modarch_gateway.api.routers.health import router as health_router
from modarch_gateway.api.routers.proxy import router as proxy_router
from modarch_gateway.auth.access import AccessEvaluator
from modarch_gateway.auth.identity import build_identity_resolver
from modarch_gateway.clients.access_review import (
    AccessReviewClient,
    AllowAllReviewClient,
    KubernetesAccessReviewClient,
    create_authz_http,
)
from modarch_gateway.errors import GatewayError
from modarch_gateway.observability.logging import configure_logging, get_logger
from modarch_gateway.observability.middleware import RequestContextMiddleware
from modarch_gateway.proxy.executor import ProxyExecutor, TransportFactory
from modarch_gateway.routing.table import RoutingTable
from modarch_gateway.routing.upstreams import resolve_targets
from modarch_gateway.services.pipeline import GatewayPipeline
from modarch_gateway.settings import Settings

log = get_logger(__name__)


def create_app(
    *,
    settings: Settings,
    authz_transport: httpx.AsyncBaseTransport | None = None,
    upstream_transport_factory: TransportFactory | None = None,
) -> FastAPI:
    # Transports are injectable so tests can stand in for the API server and upstreams.
    configure_logging(service_name=settings.service_name, level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("startup", env=settings.env, routes=len(settings.routes))
        resolver = build_identity_resolver(settings)
        if settings.identity_strategy == "internal":
            # Deployment precondition: a gatekeeper proxy must own these headers.
            log.info(
                "trusted_header_identity",
                user_header=settings.user_header,
                groups_header=settings.groups_header,
            )

        table = RoutingTable.from_config(settings.routes)
        targets = resolve_targets(table.upstream_names(), settings)

        authz_http: httpx.AsyncClient | None = None
        review_client: AccessReviewClient
        if settings.mock_k8s_client:
            log.warning("mock_authorization_enabled", detail="every access review is allowed")
            review_client = AllowAllReviewClient()
        else:
            authz_http = create_authz_http(settings, transport=authz_transport)
            review_client = KubernetesAccessReviewClient(
                http=authz_http, service_account_token=settings.service_account_token()
            )

        evaluator = AccessEvaluator(client=review_client)
        executor = ProxyExecutor(
            settings=settings,
            targets=targets,
            identity_headers=resolver.identity_headers(),
            transport_factory=upstream_transport_factory,
        )
        app.state.resolver = resolver
        app.state.evaluator = evaluator
        app.state.pipeline = GatewayPipeline(
            settings=settings,
            resolver=resolver,
            table=table,
            targets=targets,
            evaluator=evaluator,
            executor=executor,
        )
        app.state.ready = True
        try:
            yield
        finally:
            app.state.ready = False
            await executor.aclose()
            if authz_http is not None:
                await authz_http.aclose()
            log.info("shutdown")

    app = FastAPI(
        title="Modular Architecture BFF Gateway",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.ready = False

    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(GatewayError, _gateway_error_handler)  # type: ignore[arg-type]

    app.include_router(health_router, tags=["health"])
    app.include_router(bff_router, prefix=settings.bff_api_prefix, tags=["bff"])
    # Catch-all last: everything not served locally is proxied.
    app.include_router(proxy_router)

    return app


async def _gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


# --- Module Notes -----------------------------------------------------------
# OpenAPI/docs are disabled: every unmatched path belongs to an upstream.

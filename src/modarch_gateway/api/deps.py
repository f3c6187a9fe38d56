"""
modarch_gateway.api.deps

FastAPI dependency wiring for the API layer.

Responsibilities:
- Provide dependency functions for settings and the startup-built components.
- Resolve the caller identity for locally served BFF endpoints.
"""

from __future__ import annotations

from fastapi import Depends, Request

from modarch_gateway.auth.access import AccessEvaluator
from modarch_gateway.auth.identity import IdentityResolver
from modarch_gateway.auth.models import Identity
from modarch_gateway.errors import Unauthenticated
from modarch_gateway.services.pipeline import GatewayPipeline, log_failure
from modarch_gateway.settings import Settings


def settings_dep(request: Request) -> Settings:
    # Settings are fixed per app instance (no ambient global lookup).
    return request.app.state.settings  # type: ignore[no-any-return]


def pipeline_from_app(request: Request) -> GatewayPipeline:
    # Built in the lifespan handler of `modarch_gateway.api.app.create_app`.
    return request.app.state.pipeline  # type: ignore[no-any-return]


def evaluator_from_app(request: Request) -> AccessEvaluator:
    return request.app.state.evaluator  # type: ignore[no-any-return]


def resolver_from_app(request: Request) -> IdentityResolver:
    return request.app.state.resolver  # type: ignore[no-any-return]


def current_identity(
    request: Request,
    resolver: IdentityResolver = Depends(resolver_from_app),
) -> Identity:
    try:
        return resolver.resolve(request.headers)
    except Unauthenticated as e:
        log_failure(e, principal=None)
        raise


# --- Module Notes -----------------------------------------------------------
# The proxy route does not use `current_identity`: identity resolution is the
# first stage of `GatewayPipeline.run`.

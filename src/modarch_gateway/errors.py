"""
modarch_gateway.errors

Gateway error taxonomy.

Responsibilities:
- Define one exception type per caller-visible failure kind.
- Carry the HTTP status and the pipeline stage each kind belongs to.
"""

from __future__ import annotations

from typing import ClassVar


class GatewayError(Exception):
    """
    Base class for every terminal pipeline failure.
    `message` is safe to expose to callers; internals go to logs only.
    """

    code: ClassVar[str] = "InternalError"
    status_code: ClassVar[int] = 500
    stage: ClassVar[str] = "pipeline"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_body(self) -> dict[str, dict[str, str]]:
        return {"error": {"code": self.code, "message": self.message}}


class Unauthenticated(GatewayError):
    code = "Unauthenticated"
    status_code = 401
    stage = "identity"


class Forbidden(GatewayError):
    code = "Forbidden"
    status_code = 403
    stage = "access"


class AuthorizationServiceUnavailable(GatewayError):
    code = "AuthorizationServiceUnavailable"
    status_code = 500
    stage = "access"


class NoRouteMatched(GatewayError):
    code = "NoRouteMatched"
    status_code = 404
    stage = "routing"


class UpstreamUnavailable(GatewayError):
    code = "UpstreamUnavailable"
    status_code = 503
    stage = "proxy"

    def __init__(self, upstream_name: str, message: str | None = None) -> None:
        super().__init__(message or f"Upstream '{upstream_name}' is unavailable")
        self.upstream_name = upstream_name


class UpstreamTimeout(GatewayError):
    code = "UpstreamTimeout"
    status_code = 504
    stage = "proxy"

    def __init__(self, upstream_name: str) -> None:
        super().__init__(f"Upstream '{upstream_name}' did not respond in time")
        self.upstream_name = upstream_name


class RequestTimeout(GatewayError):
    code = "RequestTimeout"
    status_code = 504
    stage = "pipeline"


class PipelineStateError(RuntimeError):
    """Raised on an illegal request state transition (programming error, not caller-visible)."""


# --- Module Notes -----------------------------------------------------------
# The FastAPI exception handler in `api.app` renders these as {"error": {"code", "message"}}.

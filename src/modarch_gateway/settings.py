"""
modarch_gateway.settings

Central configuration model (Pydantic Settings).

Responsibilities:
- Provide strongly-typed, env-driven settings for every pipeline stage.
- Hide secrets from repr/logging (service-account token).
- Stay immutable once built; the app factory receives it explicitly.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RouteRuleConfig(BaseModel):
    """
    One entry of the routing table as it appears in configuration.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    path_prefix: str = Field(alias="pathPrefix", min_length=1)
    rewrite_prefix: str = Field(default="", alias="rewritePrefix")
    upstream_name: str = Field(alias="upstreamName", min_length=1)
    requires_authorization: bool = Field(default=True, alias="requiresAuthorization")
    resource: str = "services"
    resource_name: str | None = Field(default=None, alias="resourceName")


class UpstreamOverride(BaseModel):
    model_config = ConfigDict(frozen=True)

    scheme: Literal["http", "https"] = "http"
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    # Trusted upstreams receive the caller's identity headers and bearer token.
    trusted: bool = False


_routes_adapter = TypeAdapter(list[RouteRuleConfig])


class Settings(BaseSettings):
    """
    Enterprise pattern:
    - Strict env-driven configuration
    - Defaults safe for local dev (mock authorization, direct upstreams)
    - Single frozen settings object injected across layers
    """

    model_config = SettingsConfigDict(env_prefix="MODARCH_", case_sensitive=False, frozen=True)

    env: Literal["dev", "test", "prod"] = "dev"
    service_name: str = "modarch-gateway"
    log_level: str = "INFO"

    api_host: str = "0.0.0.0"
    api_port: int = 4000

    # Identity
    identity_strategy: Literal["internal", "user_token"] = "internal"
    user_header: str = "kubeflow-userid"
    groups_header: str = "kubeflow-groups"

    # Authorization service (Kubernetes access reviews)
    mock_k8s_client: bool = False
    k8s_api_url: str = "https://kubernetes.default.svc"
    k8s_token: str = Field(default="", repr=False)
    k8s_token_file: Path | None = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")
    k8s_verify_tls: bool = True
    authz_timeout_seconds: float = Field(default=10.0, gt=0)
    authz_max_connections: int = Field(default=50, ge=1)

    # Upstreams
    upstream_mode: Literal["direct", "service_discovery"] = "direct"
    service_namespace: str = "default"
    service_port: int = Field(default=8080, ge=1, le=65535)
    upstreams: dict[str, UpstreamOverride] = Field(default_factory=dict)
    upstream_timeout_seconds: float = Field(default=30.0, gt=0)
    upstream_idle_timeout_seconds: float = Field(default=60.0, gt=0)
    upstream_max_connections: int = Field(default=100, ge=1)
    upstream_max_connections_by_name: dict[str, int] = Field(default_factory=dict)

    # Routing
    routes: tuple[RouteRuleConfig, ...] = ()
    routes_file: Path | None = None

    # Whole-pipeline budget: access evaluation + proxy call up to response headers.
    request_timeout_seconds: float = Field(default=60.0, gt=0)

    # BFF endpoints
    bff_api_prefix: str = "/bff/api/v1"
    namespaces: tuple[str, ...] = ()
    mandatory_namespace: str | None = None

    @model_validator(mode="after")
    def _load_routes_file(self) -> Settings:
        # A routes file replaces inline routes; read once here so the table never changes later.
        if self.routes_file is not None:
            rules = _routes_adapter.validate_json(self.routes_file.read_bytes())
            object.__setattr__(self, "routes", tuple(rules))
        return self

    def max_connections_for(self, upstream_name: str) -> int:
        return self.upstream_max_connections_by_name.get(
            upstream_name, self.upstream_max_connections
        )

    def service_account_token(self) -> str:
        if self.k8s_token:
            return self.k8s_token
        if self.k8s_token_file is not None and self.k8s_token_file.is_file():
            return self.k8s_token_file.read_text().strip()
        return ""


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    # Used by the process entrypoint only; the app itself receives settings explicitly.
    return Settings()


# --- Module Notes -----------------------------------------------------------
# Routes and upstream overrides are complex values; via env they are supplied as JSON
# (e.g. MODARCH_ROUTES='[{"pathPrefix": "/api", "upstreamName": "model-registry"}]').

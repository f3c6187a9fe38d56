"""
modarch_gateway.routing.upstreams

Upstream target resolution.

Responsibilities:
- Resolve each upstream name to a network destination once, at startup.
- Support `direct` (explicit host/port) and `service_discovery` (cluster DNS convention).
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from modarch_gateway.settings import Settings


@dataclass(frozen=True, slots=True)
class UpstreamTarget:
    name: str
    scheme: str
    host: str
    port: int
    trusted: bool = False

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


class UpstreamResolutionError(ValueError):
    pass


def resolve_target(name: str, settings: Settings) -> UpstreamTarget:
    override = settings.upstreams.get(name)

    if settings.upstream_mode == "direct":
        if override is None or not override.host or override.port is None:
            raise UpstreamResolutionError(
                f"upstream '{name}' needs an explicit host and port in direct mode"
            )
        return UpstreamTarget(
            name=name,
            scheme=override.scheme,
            host=override.host,
            port=override.port,
            trusted=override.trusted,
        )

    # service_discovery: <name>.<namespace>.svc.cluster.local unless overridden.
    host = f"{name}.{settings.service_namespace}.svc.cluster.local"
    port = settings.service_port
    scheme = "http"
    trusted = False
    if override is not None:
        host = override.host or host
        port = override.port or port
        scheme = override.scheme
        trusted = override.trusted
    return UpstreamTarget(name=name, scheme=scheme, host=host, port=port, trusted=trusted)


def resolve_targets(names: Iterable[str], settings: Settings) -> dict[str, UpstreamTarget]:
    return {name: resolve_target(name, settings) for name in names}


# --- Module Notes -----------------------------------------------------------
# Targets are not re-resolved per request; DNS changes are the transport's concern.

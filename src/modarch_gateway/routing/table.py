"""
modarch_gateway.routing.table

Static prefix routing table.

Responsibilities:
- Hold the immutable, ordered set of RouteRules loaded at startup.
- Select a rule by longest-prefix match and rewrite the request path.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from modarch_gateway.errors import NoRouteMatched
from modarch_gateway.settings import RouteRuleConfig


@dataclass(frozen=True, slots=True)
class RouteRule:
    path_prefix: str
    rewrite_prefix: str
    upstream_name: str
    requires_authorization: bool = True
    resource: str = "services"
    resource_name: str | None = None

    def __post_init__(self) -> None:
        if not self.path_prefix.startswith("/"):
            raise ValueError("path_prefix must start with /")
        if self.rewrite_prefix and not self.rewrite_prefix.startswith("/"):
            raise ValueError("rewrite_prefix must be empty or start with /")

    @classmethod
    def from_config(cls, cfg: RouteRuleConfig) -> RouteRule:
        return cls(
            path_prefix=cfg.path_prefix,
            rewrite_prefix=cfg.rewrite_prefix,
            upstream_name=cfg.upstream_name,
            requires_authorization=cfg.requires_authorization,
            resource=cfg.resource,
            resource_name=cfg.resource_name,
        )

    def matches(self, path: str) -> bool:
        # Whole segments only: "/legacy" matches "/legacy/x" but not "/legacyfoo".
        if not path.startswith(self.path_prefix):
            return False
        rest = path[len(self.path_prefix) :]
        return not rest or rest.startswith("/") or self.path_prefix.endswith("/")

    def resource_name_for(self, path: str) -> str | None:
        """
        The static `resource_name` if configured, else the first path segment
        after the matched prefix (`/api` + `/api/v1/models` -> `v1`).
        """
        if self.resource_name:
            return self.resource_name
        rest = path[len(self.path_prefix) :].strip("/")
        return rest.split("/", 1)[0] or None

    def rewrite(self, path: str) -> str:
        rewritten = self.rewrite_prefix + path[len(self.path_prefix) :]
        if not rewritten.startswith("/"):
            rewritten = "/" + rewritten
        return rewritten


class RoutingTable:
    """
    Longest `path_prefix` wins; on equal length the first-registered rule wins.
    Duplicate prefixes are rejected up front rather than silently shadowed.
    """

    def __init__(self, rules: Iterable[RouteRule]) -> None:
        self._rules: tuple[RouteRule, ...] = tuple(rules)
        seen: set[str] = set()
        for rule in self._rules:
            if rule.path_prefix in seen:
                raise ValueError(f"duplicate route prefix: {rule.path_prefix}")
            seen.add(rule.path_prefix)

    @classmethod
    def from_config(cls, configs: Iterable[RouteRuleConfig]) -> RoutingTable:
        return cls(RouteRule.from_config(c) for c in configs)

    @property
    def rules(self) -> tuple[RouteRule, ...]:
        return self._rules

    def upstream_names(self) -> list[str]:
        return list(dict.fromkeys(r.upstream_name for r in self._rules))

    def route(self, path: str) -> tuple[RouteRule, str]:
        best: RouteRule | None = None
        for rule in self._rules:
            # Strict ">" keeps the earlier rule on ties.
            if rule.matches(path) and (best is None or len(rule.path_prefix) > len(best.path_prefix)):
                best = rule
        if best is None:
            raise NoRouteMatched(f"No route matches path '{path}'")
        return best, best.rewrite(path)

    def __len__(self) -> int:
        return len(self._rules)


# --- Module Notes -----------------------------------------------------------
# Prefix-only by design: no regex or wildcard segments. A restart is required to
# change routes.

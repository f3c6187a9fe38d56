"""
modarch_gateway.auth.identity

Identity resolution strategies.

Responsibilities:
- Turn request headers into a typed `Identity`.
- Fail with `Unauthenticated` before any authorization call is attempted.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from modarch_gateway.auth.models import Identity, InternalIdentity, TokenIdentity
from modarch_gateway.errors import Unauthenticated
from modarch_gateway.settings import Settings

BEARER_PREFIX = "Bearer "


class IdentityResolver(Protocol):
    def resolve(self, headers: Mapping[str, str]) -> Identity: ...

    def identity_headers(self) -> frozenset[str]: ...


def parse_groups(header_value: str | None) -> frozenset[str]:
    if not header_value:
        return frozenset()
    return frozenset(g.strip() for g in header_value.split(",") if g.strip())


class TrustedHeaderResolver:
    """
    `internal` strategy. Performs no verification: only safe behind a gatekeeper
    proxy that strips and re-injects these headers.
    """

    def __init__(self, *, user_header: str, groups_header: str) -> None:
        self._user_header = user_header.lower()
        self._groups_header = groups_header.lower()

    def resolve(self, headers: Mapping[str, str]) -> Identity:
        principal = (headers.get(self._user_header) or "").strip()
        if not principal:
            raise Unauthenticated(f"Missing required '{self._user_header}' header")
        return InternalIdentity(
            principal=principal,
            groups=parse_groups(headers.get(self._groups_header)),
        )

    def identity_headers(self) -> frozenset[str]:
        return frozenset({self._user_header, self._groups_header})


class BearerTokenResolver:
    """
    `user_token` strategy. The token stays opaque here; the self access review
    validates it and checks permission in one call.
    """

    def resolve(self, headers: Mapping[str, str]) -> Identity:
        value = headers.get("authorization")
        if not value:
            raise Unauthenticated("Missing Authorization header")
        if not value.startswith(BEARER_PREFIX):
            raise Unauthenticated("Authorization header must be in the format 'Bearer <token>'")
        token = value[len(BEARER_PREFIX) :].strip()
        if not token:
            raise Unauthenticated("Authorization header must be in the format 'Bearer <token>'")
        return TokenIdentity(credential=token)

    def identity_headers(self) -> frozenset[str]:
        return frozenset({"authorization"})


def build_identity_resolver(settings: Settings) -> IdentityResolver:
    if settings.identity_strategy == "user_token":
        return BearerTokenResolver()
    return TrustedHeaderResolver(
        user_header=settings.user_header,
        groups_header=settings.groups_header,
    )


# --- Module Notes -----------------------------------------------------------
# `headers` is expected to be case-insensitive (Starlette `Headers`) or pre-lowercased.

"""
modarch_gateway.auth.models

Auth domain models.

Responsibilities:
- Define the resolved caller identity as a tagged variant.
- Define the authorization query/decision value types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import jwt
from jwt import InvalidTokenError

ANONYMOUS_TOKEN_PRINCIPAL = "token-user"


@dataclass(frozen=True, slots=True)
class InternalIdentity:
    """
    Identity injected by a trusted gatekeeper proxy via headers.
    """

    principal: str
    groups: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class TokenIdentity:
    """
    Identity carried by an opaque bearer token; validated only by the access review.
    """

    credential: str = field(repr=False)

    @property
    def principal(self) -> str:
        # Log label only: the claim is read without signature verification.
        try:
            claims = jwt.decode(self.credential, options={"verify_signature": False})
        except InvalidTokenError:
            return ANONYMOUS_TOKEN_PRINCIPAL
        subject = claims.get("preferred_username") or claims.get("sub")
        return str(subject) if subject else ANONYMOUS_TOKEN_PRINCIPAL


Identity = InternalIdentity | TokenIdentity


class Verb(str, Enum):
    get = "get"
    list = "list"
    create = "create"
    update = "update"
    delete = "delete"
    # Only used for the cluster-admin probe.
    any = "*"


@dataclass(frozen=True, slots=True)
class AccessQuery:
    namespace: str
    resource: str
    verb: Verb
    resource_name: str | None = None

    @property
    def cluster_scoped(self) -> bool:
        return not self.namespace


@dataclass(frozen=True, slots=True)
class AccessDecision:
    allowed: bool
    reason: str | None = None


# --- Module Notes -----------------------------------------------------------
# `Identity` is matched structurally by the access evaluator; never branch on
# optional-field presence.

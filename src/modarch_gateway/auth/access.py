"""
modarch_gateway.auth.access

Access evaluation.

Responsibilities:
- Derive an `AccessQuery` from method, namespace and the matched route.
- Dispatch the query to the right review kind based on the identity variant.
- Resolve the user id the cluster knows a caller by.
"""

from __future__ import annotations

from modarch_gateway.auth.models import (
    AccessDecision,
    AccessQuery,
    Identity,
    InternalIdentity,
    TokenIdentity,
    Verb,
)
from modarch_gateway.clients.access_review import INVALID_CREDENTIAL, AccessReviewClient
from modarch_gateway.errors import Forbidden
from modarch_gateway.observability.logging import get_logger

log = get_logger(__name__)

INVALID_CREDENTIAL_MESSAGE = "The supplied credential is invalid or expired"

# Read methods resolve to get/list depending on whether a resource name is present.
_READ_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
_WRITE_VERBS: dict[str, Verb] = {
    "POST": Verb.create,
    "PUT": Verb.update,
    "PATCH": Verb.update,
    "DELETE": Verb.delete,
}


def verb_for(method: str, *, has_resource_name: bool) -> Verb:
    method = method.upper()
    if method in _READ_METHODS:
        return Verb.get if has_resource_name else Verb.list
    try:
        return _WRITE_VERBS[method]
    except KeyError:
        raise Forbidden(f"Method '{method}' is not supported") from None


def build_access_query(
    *,
    method: str,
    namespace: str | None,
    resource: str,
    resource_name: str | None = None,
    mandatory_namespace: str | None = None,
) -> AccessQuery:
    return AccessQuery(
        namespace=(namespace or mandatory_namespace or "").strip(),
        resource=resource,
        verb=verb_for(method, has_resource_name=bool(resource_name)),
        resource_name=resource_name or None,
    )


class AccessEvaluator:
    """
    A denial is a decision, not an error; only the review call failing raises.
    """

    def __init__(self, *, client: AccessReviewClient) -> None:
        self._client = client

    async def evaluate(self, identity: Identity, query: AccessQuery) -> AccessDecision:
        match identity:
            case InternalIdentity(principal=principal, groups=groups):
                decision = await self._client.subject_access_review(
                    user=principal, groups=groups, query=query
                )
            case TokenIdentity(credential=credential):
                decision = await self._client.self_subject_access_review(
                    token=credential, query=query
                )
            case _:
                raise TypeError(f"unsupported identity type: {type(identity).__name__}")

        if not decision.allowed:
            log.info(
                "access_denied",
                principal=identity.principal,
                namespace=query.namespace,
                resource=query.resource,
                verb=query.verb.value,
                reason=decision.reason,
            )
        return decision

    async def is_cluster_admin(self, identity: Identity) -> bool:
        query = AccessQuery(namespace="", resource="*", verb=Verb.any)
        decision = await self.evaluate(identity, query)
        reject_invalid_credential(decision)
        return decision.allowed

    async def user_id(self, identity: Identity) -> str:
        match identity:
            case InternalIdentity(principal=principal):
                return principal
            case TokenIdentity(credential=credential):
                username = await self._client.self_subject_review(token=credential)
                if username is None:
                    raise Forbidden(INVALID_CREDENTIAL_MESSAGE)
                return username
            case _:
                raise TypeError(f"unsupported identity type: {type(identity).__name__}")


def reject_invalid_credential(decision: AccessDecision) -> None:
    # A denial for a rejected token is an auth failure, not an empty answer.
    if decision.reason == INVALID_CREDENTIAL:
        raise Forbidden(INVALID_CREDENTIAL_MESSAGE)


# --- Module Notes -----------------------------------------------------------
# HTTP method -> verb table (PUT is always "update", even against a collection):
#   GET/HEAD/OPTIONS -> get (named resource) | list ; POST -> create
#   PUT/PATCH -> update ; DELETE -> delete
# The resource name is the rule's static name, else the first path segment after
# the matched prefix (see `RouteRule.resource_name_for`).

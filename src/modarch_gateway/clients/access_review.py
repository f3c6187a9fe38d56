"""
modarch_gateway.clients.access_review

HTTP client boundary for the Kubernetes authorization API.

Responsibilities:
- Submit SubjectAccessReview (named subject) and SelfSubjectAccessReview (caller token).
- Ask the API server who a bearer token belongs to (SelfSubjectReview).
- Map transport/server failures to `AuthorizationServiceUnavailable`.
- Provide an allow-all implementation for local development against stub backends.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from modarch_gateway.auth.models import AccessDecision, AccessQuery, TokenIdentity
from modarch_gateway.errors import AuthorizationServiceUnavailable
from modarch_gateway.observability.logging import get_logger
from modarch_gateway.settings import Settings

log = get_logger(__name__)

SAR_PATH = "/apis/authorization.k8s.io/v1/subjectaccessreviews"
SELF_SAR_PATH = "/apis/authorization.k8s.io/v1/selfsubjectaccessreviews"
SELF_SUBJECT_REVIEW_PATH = "/apis/authentication.k8s.io/v1/selfsubjectreviews"

INVALID_CREDENTIAL = "invalid-credential"


class AccessReviewClient(Protocol):
    async def subject_access_review(
        self, *, user: str, groups: frozenset[str], query: AccessQuery
    ) -> AccessDecision: ...

    async def self_subject_access_review(
        self, *, token: str, query: AccessQuery
    ) -> AccessDecision: ...

    async def self_subject_review(self, *, token: str) -> str | None: ...


def _resource_attributes(query: AccessQuery) -> dict[str, str]:
    attrs = {"verb": query.verb.value, "resource": query.resource}
    if query.namespace:
        attrs["namespace"] = query.namespace
    if query.resource_name:
        attrs["name"] = query.resource_name
    return attrs


def _decision_from(r: httpx.Response) -> AccessDecision:
    try:
        payload = r.json()
    except ValueError as e:
        raise AuthorizationServiceUnavailable("Unexpected access review response structure") from e
    status = payload.get("status") if isinstance(payload, dict) else None
    allowed = status.get("allowed") if isinstance(status, dict) else None
    if not isinstance(allowed, bool):
        raise AuthorizationServiceUnavailable("Unexpected access review response structure")
    reason = status.get("reason") or None
    if not allowed and reason is None:
        reason = "denied"
    return AccessDecision(allowed=allowed, reason=reason)


class KubernetesAccessReviewClient:
    """
    Talks to the API server's authorization.k8s.io group.
    SubjectAccessReview requires the gateway's own (privileged) service-account token.
    """

    def __init__(self, *, http: httpx.AsyncClient, service_account_token: str) -> None:
        self._http = http
        self._sa_token = service_account_token

    async def subject_access_review(
        self, *, user: str, groups: frozenset[str], query: AccessQuery
    ) -> AccessDecision:
        spec: dict[str, Any] = {"user": user, "resourceAttributes": _resource_attributes(query)}
        if groups:
            spec["groups"] = sorted(groups)
        body = {
            "apiVersion": "authorization.k8s.io/v1",
            "kind": "SubjectAccessReview",
            "spec": spec,
        }
        r = await self._post(SAR_PATH, body=body, token=self._sa_token)
        if r.status_code >= 400:
            # 401/403 here means the gateway itself is misconfigured, not that the caller is denied.
            log.error("access_review_rejected", kind="SubjectAccessReview", status=r.status_code)
            raise AuthorizationServiceUnavailable("Authorization service rejected the review")
        return _decision_from(r)

    async def self_subject_access_review(
        self, *, token: str, query: AccessQuery
    ) -> AccessDecision:
        body = {
            "apiVersion": "authorization.k8s.io/v1",
            "kind": "SelfSubjectAccessReview",
            "spec": {"resourceAttributes": _resource_attributes(query)},
        }
        r = await self._post(SELF_SAR_PATH, body=body, token=token)
        # The caller's token authenticates the review call itself.
        if r.status_code == 401:
            return AccessDecision(allowed=False, reason=INVALID_CREDENTIAL)
        if r.status_code == 403:
            return AccessDecision(allowed=False, reason="review-forbidden")
        if r.status_code >= 400:
            log.error("access_review_rejected", kind="SelfSubjectAccessReview", status=r.status_code)
            raise AuthorizationServiceUnavailable("Authorization service rejected the review")
        return _decision_from(r)

    async def self_subject_review(self, *, token: str) -> str | None:
        """
        Username the API server authenticates `token` as, or None if it rejects the token.
        """

        body = {"apiVersion": "authentication.k8s.io/v1", "kind": "SelfSubjectReview"}
        r = await self._post(SELF_SUBJECT_REVIEW_PATH, body=body, token=token)
        if r.status_code == 401:
            return None
        if r.status_code >= 400:
            log.error("access_review_rejected", kind="SelfSubjectReview", status=r.status_code)
            raise AuthorizationServiceUnavailable("Authorization service rejected the review")
        try:
            payload = r.json()
            username = payload["status"]["userInfo"]["username"]
        except (ValueError, KeyError, TypeError) as e:
            raise AuthorizationServiceUnavailable("Unexpected self subject review structure") from e
        if not isinstance(username, str) or not username:
            raise AuthorizationServiceUnavailable("Unexpected self subject review structure")
        return username

    async def _post(self, path: str, *, body: dict[str, Any], token: str) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            return await self._http.post(path, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise AuthorizationServiceUnavailable("Authorization service timed out") from e
        except httpx.HTTPError as e:
            raise AuthorizationServiceUnavailable("Authorization service is unreachable") from e


class AllowAllReviewClient:
    """
    Development stand-in selected by `mock_k8s_client`. Never touches the network.
    """

    async def subject_access_review(
        self, *, user: str, groups: frozenset[str], query: AccessQuery
    ) -> AccessDecision:
        log.warning("authorization_bypassed", principal=user, verb=query.verb.value)
        return AccessDecision(allowed=True, reason="mock-mode")

    async def self_subject_access_review(
        self, *, token: str, query: AccessQuery
    ) -> AccessDecision:
        log.warning("authorization_bypassed", verb=query.verb.value)
        return AccessDecision(allowed=True, reason="mock-mode")

    async def self_subject_review(self, *, token: str) -> str | None:
        # Nothing to ask in mock mode; fall back to the token's unverified claim.
        identity = TokenIdentity(credential=token)
        log.warning("authorization_bypassed", principal=identity.principal, verb="whoami")
        return identity.principal


def create_authz_http(
    settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.k8s_api_url,
        transport=transport,
        verify=settings.k8s_verify_tls,
        timeout=httpx.Timeout(settings.authz_timeout_seconds),
        limits=httpx.Limits(max_connections=settings.authz_max_connections),
    )


# --- Module Notes -----------------------------------------------------------
# No retries here: a failed review surfaces as 500-class so "denied" and
# "couldn't determine" stay distinguishable for callers.

"""
tests.test_access

Verb derivation, access evaluation dispatch and the Kubernetes review client.
"""

from __future__ import annotations

import httpx
import pytest

from modarch_gateway.auth.access import AccessEvaluator, build_access_query, verb_for
from modarch_gateway.auth.models import (
    AccessDecision,
    AccessQuery,
    InternalIdentity,
    TokenIdentity,
    Verb,
)
from modarch_gateway.clients.access_review import (
    AllowAllReviewClient,
    KubernetesAccessReviewClient,
)
from modarch_gateway.errors import AuthorizationServiceUnavailable, Forbidden

from conftest import FakeKubeApi

QUERY = AccessQuery(namespace="ns1", resource="services", verb=Verb.get, resource_name="mr")


@pytest.mark.parametrize(
    ("method", "named", "expected"),
    [
        ("GET", False, Verb.list),
        ("GET", True, Verb.get),
        ("HEAD", True, Verb.get),
        ("OPTIONS", False, Verb.list),
        ("POST", False, Verb.create),
        ("PUT", False, Verb.update),
        ("PATCH", True, Verb.update),
        ("DELETE", True, Verb.delete),
        ("get", True, Verb.get),
    ],
)
def test_method_to_verb_table(method: str, named: bool, expected: Verb) -> None:
    assert verb_for(method, has_resource_name=named) is expected


def test_unknown_method_is_forbidden() -> None:
    with pytest.raises(Forbidden):
        verb_for("TRACE", has_resource_name=False)


def test_access_query_falls_back_to_mandatory_namespace() -> None:
    query = build_access_query(
        method="GET", namespace=None, resource="services", mandatory_namespace="kubeflow"
    )
    assert query == AccessQuery(namespace="kubeflow", resource="services", verb=Verb.list)
    assert not query.cluster_scoped

    explicit = build_access_query(
        method="GET", namespace="ns1", resource="services", mandatory_namespace="kubeflow"
    )
    assert explicit.namespace == "ns1"


def _client(fake: FakeKubeApi) -> tuple[KubernetesAccessReviewClient, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=fake.transport, base_url="https://kube.test")
    return KubernetesAccessReviewClient(http=http, service_account_token="sa-token"), http


@pytest.mark.asyncio
async def test_internal_identity_uses_subject_access_review() -> None:
    fake = FakeKubeApi()
    client, http = _client(fake)
    async with http:
        evaluator = AccessEvaluator(client=client)
        identity = InternalIdentity(principal="alice", groups=frozenset({"team-b", "team-a"}))
        decision = await evaluator.evaluate(identity, QUERY)

    assert decision.allowed is True
    (review,) = fake.reviews
    assert review["kind"] == "SubjectAccessReview"
    assert review["spec"]["user"] == "alice"
    assert review["spec"]["groups"] == ["team-a", "team-b"]
    assert review["spec"]["resourceAttributes"] == {
        "verb": "get",
        "resource": "services",
        "namespace": "ns1",
        "name": "mr",
    }
    # The gateway's own credential authenticates subject reviews.
    assert fake.auth_headers == ["Bearer sa-token"]


@pytest.mark.asyncio
async def test_token_identity_uses_self_access_review_with_caller_token() -> None:
    fake = FakeKubeApi()
    client, http = _client(fake)
    async with http:
        decision = await AccessEvaluator(client=client).evaluate(
            TokenIdentity(credential="bob"), QUERY
        )

    assert decision.allowed is True
    assert fake.reviews[0]["kind"] == "SelfSubjectAccessReview"
    assert "user" not in fake.reviews[0]["spec"]
    assert fake.auth_headers == ["Bearer bob"]


@pytest.mark.asyncio
async def test_denial_is_a_decision_not_an_error() -> None:
    fake = FakeKubeApi(deny={("alice", "get", "services", "ns1")})
    client, http = _client(fake)
    async with http:
        decision = await AccessEvaluator(client=client).evaluate(
            InternalIdentity(principal="alice"), QUERY
        )
    assert decision == AccessDecision(allowed=False, reason="denied by test policy")


@pytest.mark.asyncio
async def test_invalid_token_is_denied_with_invalid_credential() -> None:
    fake = FakeKubeApi(invalid_tokens={"expired"})
    client, http = _client(fake)
    async with http:
        decision = await AccessEvaluator(client=client).evaluate(
            TokenIdentity(credential="expired"), QUERY
        )
    assert decision == AccessDecision(allowed=False, reason="invalid-credential")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        httpx.ConnectError("connection refused"),
        httpx.ReadTimeout("timed out"),
    ],
)
async def test_review_transport_failure_is_unavailable(error: Exception) -> None:
    client, http = _client(FakeKubeApi(fail_with=error))
    async with http:
        with pytest.raises(AuthorizationServiceUnavailable):
            await AccessEvaluator(client=client).evaluate(InternalIdentity(principal="a"), QUERY)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"kind": "Status"}),
        httpx.Response(403, json={"kind": "Status"}),
        httpx.Response(201, json={"status": {}}),
        httpx.Response(201, content=b"not json"),
    ],
)
async def test_subject_review_server_errors_are_unavailable(response: httpx.Response) -> None:
    transport = httpx.MockTransport(lambda request: response)
    async with httpx.AsyncClient(transport=transport, base_url="https://kube.test") as http:
        client = KubernetesAccessReviewClient(http=http, service_account_token="sa")
        with pytest.raises(AuthorizationServiceUnavailable):
            await client.subject_access_review(user="a", groups=frozenset(), query=QUERY)


@pytest.mark.asyncio
async def test_mock_mode_always_allows_without_external_calls() -> None:
    fake = FakeKubeApi(deny={("alice", "get", "services", "ns1")})
    evaluator = AccessEvaluator(client=AllowAllReviewClient())
    for identity in (InternalIdentity(principal="alice"), TokenIdentity(credential="bob")):
        for _ in range(3):
            decision = await evaluator.evaluate(identity, QUERY)
            assert decision.allowed is True
    assert fake.reviews == []


@pytest.mark.asyncio
async def test_cluster_admin_probe_uses_wildcards() -> None:
    fake = FakeKubeApi(deny={("alice", "*", "*", "")})
    client, http = _client(fake)
    async with http:
        evaluator = AccessEvaluator(client=client)
        assert await evaluator.is_cluster_admin(InternalIdentity(principal="alice")) is False
        assert await evaluator.is_cluster_admin(InternalIdentity(principal="root")) is True
    assert "namespace" not in fake.reviews[0]["spec"]["resourceAttributes"]


@pytest.mark.asyncio
async def test_user_id_for_token_comes_from_self_subject_review() -> None:
    fake = FakeKubeApi(usernames={"opaque-token": "oidc:bob@example.com"})
    client, http = _client(fake)
    async with http:
        evaluator = AccessEvaluator(client=client)
        assert await evaluator.user_id(TokenIdentity(credential="opaque-token")) == (
            "oidc:bob@example.com"
        )
        assert await evaluator.user_id(InternalIdentity(principal="alice")) == "alice"

    # Only the token needed a round trip.
    (review,) = fake.reviews
    assert review["kind"] == "SelfSubjectReview"
    assert fake.auth_headers == ["Bearer opaque-token"]


@pytest.mark.asyncio
async def test_rejected_token_fails_user_id_and_cluster_admin_probe() -> None:
    fake = FakeKubeApi(invalid_tokens={"expired"})
    client, http = _client(fake)
    async with http:
        evaluator = AccessEvaluator(client=client)
        with pytest.raises(Forbidden):
            await evaluator.user_id(TokenIdentity(credential="expired"))
        with pytest.raises(Forbidden):
            await evaluator.is_cluster_admin(TokenIdentity(credential="expired"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"kind": "Status"}),
        httpx.Response(201, json={"status": {"userInfo": {}}}),
        httpx.Response(201, content=b"not json"),
    ],
)
async def test_self_subject_review_server_errors_are_unavailable(response: httpx.Response) -> None:
    transport = httpx.MockTransport(lambda request: response)
    async with httpx.AsyncClient(transport=transport, base_url="https://kube.test") as http:
        client = KubernetesAccessReviewClient(http=http, service_account_token="sa")
        with pytest.raises(AuthorizationServiceUnavailable):
            await client.self_subject_review(token="t")


@pytest.mark.asyncio
async def test_mock_mode_user_id_uses_token_claim() -> None:
    evaluator = AccessEvaluator(client=AllowAllReviewClient())
    assert await evaluator.user_id(TokenIdentity(credential="not-a-jwt")) == "token-user"

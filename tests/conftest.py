"""
tests.conftest

Shared fakes for the gateway test-suite.

Responsibilities:
- Build settings with a small, realistic routing table.
- Fake the Kubernetes authorization API and upstream services via httpx.MockTransport.
- Run the app with its lifespan so the pipeline is built.
"""

from __future__ import annotations

import contextlib
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest
from fastapi import FastAPI

from modarch_gateway.routing.upstreams import UpstreamTarget
from modarch_gateway.settings import Settings

UpstreamHandler = Callable[[httpx.Request], Any]

DEFAULT_ROUTES: list[dict[str, Any]] = [
    {"pathPrefix": "/api", "rewritePrefix": "/api", "upstreamName": "legacy-api"},
    {"pathPrefix": "/api/v1", "rewritePrefix": "/api/v1", "upstreamName": "model-registry"},
    {"pathPrefix": "/model-registry/api", "rewritePrefix": "/api", "upstreamName": "model-registry"},
    {"pathPrefix": "/legacy", "rewritePrefix": "", "upstreamName": "legacy-api"},
    {"pathPrefix": "/public", "upstreamName": "docs", "requiresAuthorization": False},
]

DEFAULT_UPSTREAMS: dict[str, dict[str, Any]] = {
    "model-registry": {"host": "model-registry.test", "port": 8080},
    "legacy-api": {"host": "legacy.test", "port": 9000},
    "docs": {"host": "docs.test", "port": 8000, "trusted": True},
}


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "env": "test",
        "log_level": "WARNING",
        "identity_strategy": "internal",
        "upstream_mode": "direct",
        "upstreams": DEFAULT_UPSTREAMS,
        "routes": DEFAULT_ROUTES,
        "k8s_api_url": "https://kube.test",
        "k8s_token": "gateway-sa-token",
        "k8s_token_file": None,
        "namespaces": ("ns1", "ns2"),
    }
    values.update(overrides)
    return Settings(**values)


class ChunkedStream(httpx.AsyncByteStream):
    """
    A response body that is only produced when iterated, like a real socket read.
    """

    def __init__(self, *chunks: bytes) -> None:
        self._chunks = chunks
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def streamed_response(
    status_code: int,
    *,
    json_body: Any = None,
    content: bytes = b"",
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    # `httpx.Response(json=...)` pre-reads its body; upstream bodies must stay streamable.
    out_headers = dict(headers or {})
    if json_body is not None:
        content = json.dumps(json_body).encode()
        out_headers.setdefault("content-type", "application/json")
    return httpx.Response(status_code, headers=out_headers, stream=ChunkedStream(content))


class FakeKubeApi:
    """
    Records every access review and denies the (user, verb, resource, namespace)
    tuples it is told to. For self reviews the bearer token doubles as the user name
    unless `usernames` maps it to another one.
    """

    def __init__(
        self,
        *,
        deny: set[tuple[str, str, str, str]] | None = None,
        invalid_tokens: set[str] | None = None,
        fail_with: Exception | None = None,
        usernames: dict[str, str] | None = None,
    ) -> None:
        self.reviews: list[dict[str, Any]] = []
        self.auth_headers: list[str | None] = []
        self._deny = deny or set()
        self._invalid_tokens = invalid_tokens or set()
        self._fail_with = fail_with
        self._usernames = usernames or {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self._fail_with is not None:
            raise self._fail_with
        body = json.loads(request.content)
        self.reviews.append(body)
        self.auth_headers.append(request.headers.get("authorization"))

        token = (request.headers.get("authorization") or "").removeprefix("Bearer ")
        if body["kind"] in ("SelfSubjectAccessReview", "SelfSubjectReview"):
            if token in self._invalid_tokens:
                return httpx.Response(401, json={"kind": "Status", "code": 401})
        if body["kind"] == "SelfSubjectReview":
            user_info = {"username": self._usernames.get(token, token), "groups": []}
            return httpx.Response(201, json={**body, "status": {"userInfo": user_info}})

        attrs = body["spec"]["resourceAttributes"]
        if body["kind"] == "SelfSubjectAccessReview":
            user = self._usernames.get(token, token)
        else:
            user = body["spec"]["user"]

        key = (user, attrs["verb"], attrs["resource"], attrs.get("namespace", ""))
        status: dict[str, Any] = {"allowed": key not in self._deny}
        if not status["allowed"]:
            status["reason"] = "denied by test policy"
        return httpx.Response(201, json={**body, "status": status})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeUpstreams:
    """
    One MockTransport per upstream name; records the requests each one receives.
    """

    def __init__(self, handlers: dict[str, UpstreamHandler] | None = None) -> None:
        self.requests: dict[str, list[httpx.Request]] = {}
        self._handlers = handlers or {}

    def _default(self, request: httpx.Request) -> httpx.Response:
        return streamed_response(
            200,
            json_body={"path": request.url.path, "query": request.url.query.decode()},
            headers={"x-upstream": "yes"},
        )

    def factory(self, target: UpstreamTarget) -> httpx.AsyncBaseTransport:
        handler = self._handlers.get(target.name, self._default)

        def record(request: httpx.Request) -> Any:
            self.requests.setdefault(target.name, []).append(request)
            return handler(request)

        return httpx.MockTransport(record)


@contextlib.asynccontextmanager
async def running_app(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    # httpx's ASGITransport does not drive lifespan; enter it explicitly.
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://gateway.test") as client:
            yield client


@pytest.fixture
def fake_kube() -> FakeKubeApi:
    return FakeKubeApi()


@pytest.fixture
def fake_upstreams() -> FakeUpstreams:
    return FakeUpstreams()


# --- Module Notes -----------------------------------------------------------
# Helpers are imported directly by test modules (`from conftest import ...`).

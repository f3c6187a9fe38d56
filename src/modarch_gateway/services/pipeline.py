"""
modarch_gateway.services.pipeline

The request authorization-and-proxy pipeline.

Responsibilities:
- Compose identity resolution, routing, access evaluation and proxying as explicit
  sequential stages (no framework middleware ordering).
- Track each request's lifecycle state and reject illegal transitions.
- Enforce the whole-request timeout and propagate caller disconnects as cancellation.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from modarch_gateway.auth.access import (
    INVALID_CREDENTIAL_MESSAGE,
    AccessEvaluator,
    build_access_query,
)
from modarch_gateway.auth.identity import IdentityResolver
from modarch_gateway.auth.models import AccessQuery, Identity
from modarch_gateway.clients.access_review import INVALID_CREDENTIAL
from modarch_gateway.errors import Forbidden, GatewayError, PipelineStateError, RequestTimeout
from modarch_gateway.observability.logging import get_logger
from modarch_gateway.proxy.executor import ForwardedFor, ProxyExecutor, StreamedResponse
from modarch_gateway.routing.table import RouteRule, RoutingTable
from modarch_gateway.routing.upstreams import UpstreamTarget
from modarch_gateway.settings import Settings

log = get_logger(__name__)


class RequestStage(str, Enum):
    received = "received"
    identity_resolved = "identity_resolved"
    routed = "routed"
    access_checked = "access_checked"
    proxied = "proxied"
    completed = "completed"
    failed = "failed"


_TRANSITIONS: dict[RequestStage, frozenset[RequestStage]] = {
    RequestStage.received: frozenset({RequestStage.identity_resolved}),
    RequestStage.identity_resolved: frozenset({RequestStage.routed}),
    RequestStage.routed: frozenset({RequestStage.access_checked, RequestStage.proxied}),
    RequestStage.access_checked: frozenset({RequestStage.proxied}),
    RequestStage.proxied: frozenset({RequestStage.completed}),
    RequestStage.completed: frozenset(),
    RequestStage.failed: frozenset(),
}


@dataclass(slots=True)
class RequestLifecycle:
    stage: RequestStage = RequestStage.received
    rule: RouteRule | None = None
    history: list[RequestStage] = field(default_factory=lambda: [RequestStage.received])

    def advance(self, to: RequestStage) -> None:
        if to not in _TRANSITIONS[self.stage]:
            raise PipelineStateError(f"illegal transition {self.stage.value} -> {to.value}")
        # Skipping the access check is only legal for routes that opt out of it.
        if (
            self.stage is RequestStage.routed
            and to is RequestStage.proxied
            and (self.rule is None or self.rule.requires_authorization)
        ):
            raise PipelineStateError("access check may only be skipped for public routes")
        self.stage = to
        self.history.append(to)

    def fail(self) -> None:
        if self.stage in (RequestStage.completed, RequestStage.failed):
            raise PipelineStateError(f"cannot fail a request in state {self.stage.value}")
        self.stage = RequestStage.failed
        self.history.append(RequestStage.failed)


@dataclass(frozen=True, slots=True)
class GatewayRequest:
    method: str
    path: str
    query: str
    headers: Mapping[str, str]
    raw_headers: tuple[tuple[str, str], ...]
    body: bytes = b""
    namespace: str | None = None
    forwarded: ForwardedFor = ForwardedFor(client_host=None, scheme="http", host=None)


class ClientDisconnected(Exception):
    """The caller went away before a response could be started."""


class GatewayPipeline:
    """
    Received -> IdentityResolved -> Routed -> AccessChecked -> Proxied -> Completed.

    Routing precedes the access check because the query (resource, name) and the
    `requires_authorization` branch both come from the matched rule.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        resolver: IdentityResolver,
        table: RoutingTable,
        targets: Mapping[str, UpstreamTarget],
        evaluator: AccessEvaluator,
        executor: ProxyExecutor,
    ) -> None:
        self._settings = settings
        self._resolver = resolver
        self._table = table
        self._targets = targets
        self._evaluator = evaluator
        self._executor = executor

    async def run(self, request: GatewayRequest) -> StreamedResponse:
        lifecycle = RequestLifecycle()
        principal: str | None = None
        try:
            identity = self._resolver.resolve(request.headers)
            principal = identity.principal
            lifecycle.advance(RequestStage.identity_resolved)

            rule, rewritten_path = self._table.route(request.path)
            lifecycle.rule = rule
            lifecycle.advance(RequestStage.routed)

            try:
                async with asyncio.timeout(self._settings.request_timeout_seconds):
                    response = await self._authorize_and_proxy(
                        lifecycle, request, identity, rule, rewritten_path
                    )
            except TimeoutError as e:
                raise RequestTimeout("Request exceeded the gateway time budget") from e
        except GatewayError as e:
            lifecycle.fail()
            log_failure(e, principal=principal, last_stage=lifecycle.history[-2].value)
            raise

        response.body = self._track(lifecycle, response, response.body, principal)
        return response

    async def _authorize_and_proxy(
        self,
        lifecycle: RequestLifecycle,
        request: GatewayRequest,
        identity: Identity,
        rule: RouteRule,
        path: str,
    ) -> StreamedResponse:
        if rule.requires_authorization:
            query = build_access_query(
                method=request.method,
                namespace=request.namespace,
                resource=rule.resource,
                resource_name=rule.resource_name_for(request.path),
                mandatory_namespace=self._settings.mandatory_namespace,
            )
            decision = await self._evaluator.evaluate(identity, query)
            if not decision.allowed:
                raise Forbidden(_denied_message(query, decision.reason))
            lifecycle.advance(RequestStage.access_checked)

        response = await self._executor.execute(
            target=self._targets[rule.upstream_name],
            method=request.method,
            path=path,
            query=request.query,
            headers=request.raw_headers,
            body=request.body,
            forwarded=request.forwarded,
        )
        lifecycle.advance(RequestStage.proxied)
        return response

    async def _track(
        self,
        lifecycle: RequestLifecycle,
        response: StreamedResponse,
        body: AsyncIterator[bytes],
        principal: str | None,
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in body:
                yield chunk
        except BaseException:
            lifecycle.fail()
            raise
        else:
            lifecycle.advance(RequestStage.completed)
            log.info(
                "proxy_completed",
                upstream=response.upstream_name,
                status=response.status_code,
                principal=principal,
            )
        finally:
            if hasattr(body, "aclose"):
                await body.aclose()
            await response.aclose()


def _denied_message(query: AccessQuery, reason: str | None) -> str:
    if reason == INVALID_CREDENTIAL:
        return INVALID_CREDENTIAL_MESSAGE
    scope = f"in namespace '{query.namespace}'" if query.namespace else "at cluster scope"
    return f"Not permitted to {query.verb.value} {query.resource} {scope}"


def log_failure(err: GatewayError, *, principal: str | None, last_stage: str | None = None) -> None:
    log.warning(
        "pipeline_failed",
        stage=err.stage,
        last_stage=last_stage,
        code=err.code,
        status=err.status_code,
        principal=principal,
        error_message=err.message,
    )


async def _wait_for_disconnect(receive: Callable[[], Awaitable[dict[str, Any]]]) -> None:
    while True:
        message = await receive()
        if message.get("type") == "http.disconnect":
            return


async def run_until_disconnect(
    work: Awaitable[StreamedResponse],
    receive: Callable[[], Awaitable[dict[str, Any]]],
) -> StreamedResponse:
    """
    Race the pipeline against the caller going away. The request body must already
    be consumed, so the only message left on `receive` is the disconnect.
    """

    task = asyncio.ensure_future(work)
    watcher = asyncio.ensure_future(_wait_for_disconnect(receive))
    try:
        done, _ = await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        watcher.cancel()

    if task in done:
        return task.result()

    task.cancel()
    with contextlib.suppress(asyncio.CancelledError, GatewayError):
        result = await task
        # Finished in the same tick as the disconnect: release its upstream connection.
        await result.aclose()
    raise ClientDisconnected()


# --- Module Notes -----------------------------------------------------------
# After the response has started, Starlette's StreamingResponse cancels the body
# iterator on disconnect; `_track` and the executor's stream close the upstream.

"""
modarch_gateway.api.routers.bff

Endpoints the gateway serves itself for the shell frontend.

Responsibilities:
- `/user`: resolved user id plus cluster-admin flag.
- `/namespaces`: namespaces the caller may work in (or the mandatory one).
"""

from __future__ import annotations

import asyncio
from typing import Any, Generic, TypeVar

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from modarch_gateway.api.deps import current_identity, evaluator_from_app, settings_dep
from modarch_gateway.auth.access import AccessEvaluator, reject_invalid_credential
from modarch_gateway.auth.models import AccessQuery, Identity, Verb
from modarch_gateway.errors import GatewayError
from modarch_gateway.services.pipeline import log_failure
from modarch_gateway.settings import Settings

router = APIRouter()

T = TypeVar("T")


class ModArchBody(BaseModel, Generic[T]):
    data: T
    metadata: dict[str, Any] | None = None


class UserSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    cluster_admin: bool = Field(default=False, alias="clusterAdmin")


class Namespace(BaseModel):
    name: str


@router.get(
    "/user",
    response_model=ModArchBody[UserSettings],
    response_model_exclude_none=True,
)
async def get_user(
    identity: Identity = Depends(current_identity),
    evaluator: AccessEvaluator = Depends(evaluator_from_app),
) -> ModArchBody[UserSettings]:
    try:
        user_id = await evaluator.user_id(identity)
        cluster_admin = await evaluator.is_cluster_admin(identity)
    except GatewayError as e:
        log_failure(e, principal=identity.principal)
        raise
    return ModArchBody(data=UserSettings(user_id=user_id, cluster_admin=cluster_admin))


@router.get(
    "/namespaces",
    response_model=ModArchBody[list[Namespace]],
    response_model_exclude_none=True,
)
async def list_namespaces(
    identity: Identity = Depends(current_identity),
    evaluator: AccessEvaluator = Depends(evaluator_from_app),
    settings: Settings = Depends(settings_dep),
) -> ModArchBody[list[Namespace]]:
    # A mandatory namespace disables listing/selection entirely.
    if settings.mandatory_namespace:
        return ModArchBody(data=[Namespace(name=settings.mandatory_namespace)])

    candidates = list(settings.namespaces)
    try:
        decisions = await asyncio.gather(
            *(
                evaluator.evaluate(
                    identity, AccessQuery(namespace=ns, resource="services", verb=Verb.list)
                )
                for ns in candidates
            )
        )
        for decision in decisions:
            reject_invalid_credential(decision)
    except GatewayError as e:
        log_failure(e, principal=identity.principal)
        raise
    return ModArchBody(
        data=[Namespace(name=ns) for ns, d in zip(candidates, decisions) if d.allowed]
    )


# --- Module Notes -----------------------------------------------------------
# Response envelope mirrors what the module frontends expect: {"data": ..., "metadata"?}.

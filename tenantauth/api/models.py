"""Model catalog and per-workspace model routes.

GET  /models                                         Active catalog (?provider, ?category, ?plan).
GET  /models/provider/{provider}                     Active models of one provider.
GET  /models/category/{category}                     Active models of one category.
GET  /models/plan/{plan}                             Active models a plan may use.
GET  /models/free/available                          Free-tier models.
GET  /models/stats/summary                           Catalog counts.
GET  /models/{modelId}                               One catalog model.
GET  /workspaces/{id}/models                         Catalog with enablement + eligibility (?eligibleOnly).
GET  /workspaces/{id}/models/{modelId}/eligibility   One model's eligibility.
POST /workspaces/{id}/models/{modelId}/enable        Admins and owners only.
POST /workspaces/{id}/models/{modelId}/disable       Admins and owners only.
"""

import uuid
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from tenantauth.api.deps import get_client, get_context, get_principal
from tenantauth.api.schemas import CamelModel, OkResponse
from tenantauth.context import AppContext
from tenantauth.db.models import ModelCatalog
from tenantauth.security.principal import ClientInfo, Principal
from tenantauth.services.eligibility import EligibilityResult
from tenantauth.services.models import ModelStatistics

router = APIRouter()
workspace_router = APIRouter()


# ── Pydantic schemas ──────────────────────────


class ModelOut(CamelModel):
    id: uuid.UUID
    name: str
    display_name: str
    provider: str
    category: str
    description: Optional[str] = None
    context_window: Optional[int] = None
    supports_streaming: bool
    required_plan: str
    is_active: bool


class EligibilityOut(CamelModel):
    eligible: bool
    reasons: List[str]
    suggested_plan: Optional[str] = None


class WorkspaceModelOut(ModelOut):
    enabled: bool
    eligibility: EligibilityOut


class ModelStatisticsOut(CamelModel):
    total_models: int
    active_models: int
    streaming_models: int
    local_models: int
    by_plan: Dict[str, int]
    by_provider: Dict[str, int]
    by_category: Dict[str, int]


def _model_fields(model: ModelCatalog) -> dict:
    return {
        "id": model.id,
        "name": model.name,
        "display_name": model.display_name,
        "provider": model.provider,
        "category": model.category.value,
        "description": model.description,
        "context_window": model.context_window,
        "supports_streaming": model.supports_streaming,
        "required_plan": model.required_plan.value,
        "is_active": model.is_active,
    }


def _models_out(models: List[ModelCatalog]) -> List[ModelOut]:
    return [ModelOut(**_model_fields(m)) for m in models]


def _eligibility_out(result: EligibilityResult) -> EligibilityOut:
    return EligibilityOut(
        eligible=result.eligible,
        reasons=list(result.reasons),
        suggested_plan=result.suggested_plan.value if result.suggested_plan else None,
    )


# ── Catalog ───────────────────────────────────


@router.get("", response_model=List[ModelOut])
async def list_catalog(
    provider: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    plan: Optional[str] = Query(None),
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    models = await ctx.models.list_catalog(provider=provider, category=category, plan=plan)
    return _models_out(models)


@router.get("/provider/{provider}", response_model=List[ModelOut])
async def list_by_provider(
    provider: str,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    return _models_out(await ctx.models.list_catalog(provider=provider))


@router.get("/category/{category}", response_model=List[ModelOut])
async def list_by_category(
    category: str,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    return _models_out(await ctx.models.list_catalog(category=category))


@router.get("/plan/{plan}", response_model=List[ModelOut])
async def list_by_plan(
    plan: str,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    return _models_out(await ctx.models.list_catalog(plan=plan))


@router.get("/free/available", response_model=List[ModelOut])
async def list_free_tier(
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    return _models_out(await ctx.models.list_free_tier())


@router.get("/stats/summary", response_model=ModelStatisticsOut)
async def catalog_statistics(
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    stats: ModelStatistics = await ctx.models.get_statistics()
    return ModelStatisticsOut(
        total_models=stats.total_models,
        active_models=stats.active_models,
        streaming_models=stats.streaming_models,
        local_models=stats.local_models,
        by_plan=stats.by_plan,
        by_provider=stats.by_provider,
        by_category=stats.by_category,
    )


@router.get("/{model_id}", response_model=ModelOut)
async def get_model(
    model_id: uuid.UUID,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    return ModelOut(**_model_fields(await ctx.models.get_model(model_id)))


# ── Workspace models ──────────────────────────


@workspace_router.get("/{workspace_id}/models", response_model=List[WorkspaceModelOut])
async def list_workspace_models(
    workspace_id: uuid.UUID,
    eligible_only: bool = Query(False, alias="eligibleOnly"),
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    views = await ctx.models.list_workspace_models(
        principal, workspace_id, eligible_only=eligible_only
    )
    return [
        WorkspaceModelOut(
            **_model_fields(v.model),
            enabled=v.enabled,
            eligibility=_eligibility_out(v.eligibility),
        )
        for v in views
    ]


@workspace_router.get(
    "/{workspace_id}/models/{model_id}/eligibility", response_model=EligibilityOut
)
async def check_eligibility(
    workspace_id: uuid.UUID,
    model_id: uuid.UUID,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    result = await ctx.models.check_eligibility(principal, workspace_id, model_id)
    return _eligibility_out(result)


@workspace_router.post("/{workspace_id}/models/{model_id}/enable", response_model=OkResponse)
async def enable_model(
    workspace_id: uuid.UUID,
    model_id: uuid.UUID,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
    client: ClientInfo = Depends(get_client),
):
    await ctx.models.enable_model(principal, workspace_id, model_id, client)
    return OkResponse()


@workspace_router.post("/{workspace_id}/models/{model_id}/disable", response_model=OkResponse)
async def disable_model(
    workspace_id: uuid.UUID,
    model_id: uuid.UUID,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
    client: ClientInfo = Depends(get_client),
):
    await ctx.models.disable_model(principal, workspace_id, model_id, client)
    return OkResponse()

"""Model catalog, per-workspace enablement and cached eligibility."""

import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Type, TypeVar, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantauth.clock import Clock, utcnow
from tenantauth.db import queries
from tenantauth.db.engine import SessionFactory, transaction
from tenantauth.db.models import ModelCatalog, ModelCategory, Plan, Workspace
from tenantauth.exceptions import NotFoundError, ValidationError
from tenantauth.security.permissions import Permission
from tenantauth.security.principal import ClientInfo, Principal
from tenantauth.services.audit import AuditAction, AuditEvent, AuditSink
from tenantauth.services.cache import EligibilityCache
from tenantauth.services.eligibility import (
    EligibilityResult,
    check_model_eligibility,
    effective_plan,
    filter_eligible_models,
    plan_rank,
)
from tenantauth.services.membership import MembershipAuthority, load_workspace

logger = logging.getLogger(__name__)

KNOWN_PROVIDERS = ("openai", "anthropic", "google", "ollama", "llamacpp", "grok")
LOCAL_PROVIDERS = ("ollama", "llamacpp")

_E = TypeVar("_E", bound=enum.Enum)


def _parse_choice(value: Union[_E, str], enum_cls: Type[_E], field_name: str) -> _E:
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValidationError(
            f"Invalid {field_name}",
            details={"field": field_name, "allowed": [m.value for m in enum_cls]},
        ) from exc


def _parse_provider(provider: str) -> str:
    provider = (provider or "").strip().lower()
    if provider not in KNOWN_PROVIDERS:
        raise ValidationError(
            "Invalid provider",
            details={"field": "provider", "allowed": list(KNOWN_PROVIDERS)},
        )
    return provider


@dataclass
class WorkspaceModelView:
    model: ModelCatalog
    enabled: bool
    eligibility: EligibilityResult


@dataclass
class ModelStatistics:
    """Catalog counts. The breakdowns cover active models only."""

    total_models: int = 0
    active_models: int = 0
    streaming_models: int = 0
    local_models: int = 0
    by_plan: Dict[str, int] = field(default_factory=dict)
    by_provider: Dict[str, int] = field(default_factory=dict)
    by_category: Dict[str, int] = field(default_factory=dict)


class ModelService:
    """Answers "may this workspace use this model" and manages enablement.

    Args:
        session_factory: Database session factory.
        membership: Membership authority.
        cache: Eligibility cache backend.
        audit: Audit sink.
        clock: Time source.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        membership: MembershipAuthority,
        cache: EligibilityCache,
        audit: AuditSink,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._membership = membership
        self._cache = cache
        self._audit = audit
        self._clock = clock

    def use_cache(self, cache: EligibilityCache) -> None:
        self._cache = cache

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def list_catalog(
        self,
        *,
        provider: Optional[str] = None,
        category: Optional[Union[ModelCategory, str]] = None,
        plan: Optional[Union[Plan, str]] = None,
        active_only: bool = True,
    ) -> List[ModelCatalog]:
        """Catalog models, optionally narrowed.

        Args:
            provider: Only models from this provider.
            category: Only models in this category.
            plan: Only models a subscriber on this plan may use.
            active_only: Hide retired models.

        Raises:
            ValidationError: Unknown provider, category or plan.
        """
        stmt = select(ModelCatalog).order_by(ModelCatalog.name)
        if active_only:
            stmt = stmt.where(ModelCatalog.is_active.is_(True))
        if provider is not None:
            stmt = stmt.where(ModelCatalog.provider == _parse_provider(provider))
        if category is not None:
            stmt = stmt.where(
                ModelCatalog.category == _parse_choice(category, ModelCategory, "category")
            )
        if plan is not None:
            rank = plan_rank(_parse_choice(plan, Plan, "plan"))
            stmt = stmt.where(
                ModelCatalog.required_plan.in_([p for p in Plan if plan_rank(p) <= rank])
            )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def list_free_tier(self) -> List[ModelCatalog]:
        return await self.list_catalog(plan=Plan.FREE)

    async def get_model(self, model_id: uuid.UUID) -> ModelCatalog:
        async with self._session_factory() as db:
            model = await queries.get_catalog_model(db, model_id)
        if model is None:
            raise NotFoundError("Model not found", code="MODEL_NOT_FOUND")
        return model

    async def get_statistics(self) -> ModelStatistics:
        active = ModelCatalog.is_active.is_(True)
        async with self._session_factory() as db:
            total = await db.scalar(select(func.count(ModelCatalog.id)))
            active_count = await db.scalar(select(func.count(ModelCatalog.id)).where(active))
            streaming = await db.scalar(
                select(func.count(ModelCatalog.id)).where(
                    active, ModelCatalog.supports_streaming.is_(True)
                )
            )
            by_plan = await self._count_by(db, ModelCatalog.required_plan)
            by_provider = await self._count_by(db, ModelCatalog.provider)
            by_category = await self._count_by(db, ModelCatalog.category)

        return ModelStatistics(
            total_models=total or 0,
            active_models=active_count or 0,
            streaming_models=streaming or 0,
            local_models=sum(by_provider.get(p, 0) for p in LOCAL_PROVIDERS),
            by_plan=by_plan,
            by_provider=by_provider,
            by_category=by_category,
        )

    # ------------------------------------------------------------------
    # Workspace models
    # ------------------------------------------------------------------

    async def list_workspace_models(
        self,
        principal: Principal,
        workspace_id: uuid.UUID,
        *,
        eligible_only: bool = False,
    ) -> List[WorkspaceModelView]:
        """Catalog models with their enablement and eligibility for the workspace.

        With ``eligible_only`` the list keeps just the models the workspace
        may use right now.
        """
        async with self._session_factory() as db:
            workspace = await load_workspace(db, workspace_id, principal.tenant_id)
            await self._membership.require_permission(
                workspace_id, principal.user_id, Permission.MODEL_VIEW, db=db
            )
            plan = await self._effective_plan(db, workspace)
            enabled_ids = await queries.enabled_model_ids(db, workspace_id)
            result = await db.execute(select(ModelCatalog).order_by(ModelCatalog.name))
            models = list(result.scalars().all())

        if eligible_only:
            models = filter_eligible_models(models, plan, enabled_ids)
        return [
            WorkspaceModelView(
                model=m,
                enabled=m.id in enabled_ids,
                eligibility=check_model_eligibility(m, plan, m.id in enabled_ids),
            )
            for m in models
        ]

    async def check_eligibility(
        self, principal: Principal, workspace_id: uuid.UUID, model_id: uuid.UUID
    ) -> EligibilityResult:
        """Eligibility of one model, served from the cache when possible."""
        async with self._session_factory() as db:
            workspace = await load_workspace(db, workspace_id, principal.tenant_id)
            await self._membership.require_member(workspace_id, principal.user_id, db=db)
            plan = await self._effective_plan(db, workspace)

            ws_key, model_key = str(workspace_id), str(model_id)
            generation = await self._cache.generation(ws_key)
            cached = await self._cache.get(ws_key, generation, model_key, plan.value)
            if cached is not None:
                return cached

            model = await queries.get_catalog_model(db, model_id)
            if model is None:
                raise NotFoundError("Model not found", code="MODEL_NOT_FOUND")
            enabled_ids = await queries.enabled_model_ids(db, workspace_id)

        result = check_model_eligibility(model, plan, model.id in enabled_ids)
        await self._cache.set(ws_key, generation, model_key, plan.value, result)
        return result

    async def enable_model(
        self,
        principal: Principal,
        workspace_id: uuid.UUID,
        model_id: uuid.UUID,
        client: Optional[ClientInfo] = None,
    ) -> None:
        await self._set_enabled(principal, workspace_id, model_id, True, client)

    async def disable_model(
        self,
        principal: Principal,
        workspace_id: uuid.UUID,
        model_id: uuid.UUID,
        client: Optional[ClientInfo] = None,
    ) -> None:
        await self._set_enabled(principal, workspace_id, model_id, False, client)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _set_enabled(
        self,
        principal: Principal,
        workspace_id: uuid.UUID,
        model_id: uuid.UUID,
        enabled: bool,
        client: Optional[ClientInfo],
    ) -> None:
        client = client or ClientInfo()
        async with transaction(self._session_factory) as db:
            await load_workspace(db, workspace_id, principal.tenant_id)
            await self._membership.require_permission(
                workspace_id, principal.user_id, Permission.ADMIN_ACCESS, db=db
            )
            model = await queries.get_catalog_model(db, model_id)
            if model is None:
                raise NotFoundError("Model not found", code="MODEL_NOT_FOUND")
            await queries.upsert_workspace_model(
                db,
                workspace_id=workspace_id,
                model_id=model_id,
                enabled=enabled,
                now=self._clock(),
            )

        await self._cache.invalidate_workspace(str(workspace_id))
        action = AuditAction.MODEL_ENABLED if enabled else AuditAction.MODEL_DISABLED
        logger.info(
            "Workspace model %s",
            "enabled" if enabled else "disabled",
            extra={"workspace_id": str(workspace_id), "model_id": str(model_id)},
        )
        await self._audit.emit(
            AuditEvent(
                tenant_id=principal.tenant_id,
                user_id=principal.user_id,
                action=action,
                resource_type="model",
                resource_id=str(model_id),
                details={"workspaceId": str(workspace_id), "model": model.name},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        )

    async def _effective_plan(self, db: AsyncSession, workspace: Workspace) -> Plan:
        tenant = await queries.get_tenant(db, workspace.tenant_id)
        return effective_plan(workspace.plan, tenant.plan if tenant else Plan.FREE)

    @staticmethod
    async def _count_by(db: AsyncSession, column) -> Dict[str, int]:
        result = await db.execute(
            select(column, func.count(ModelCatalog.id))
            .where(ModelCatalog.is_active.is_(True))
            .group_by(column)
        )
        return {
            (key.value if isinstance(key, enum.Enum) else str(key)): count
            for key, count in result.all()
        }

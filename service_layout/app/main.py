"""
Layout service: resolves user-specific UI layouts from directory groups.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import Body, Query
from fastapi.responses import JSONResponse
from pydantic.alias_generators import to_camel

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import LayoutServiceException, NotFoundError, ValidationError
from shared.logging import set_user_context

from .cache.tiers import LayoutCaches
from .persistence.base import LayoutStore
from .persistence.memory import InMemoryLayoutStore
from .persistence.postgres import PostgreSQLLayoutStore
from .resolution.audit import AuditRecorder
from .resolution.engine import LayoutMergeEngine
from .resolution.models import (
    ComputationAuditResponse, ComputationSource, GroupOverride, GroupOverrideRequest,
    GroupOverrideResponse, LayoutComputationRequest, LayoutComputationResponse, Market,
    RoleTemplate, RoleTemplateRequest, RoleTemplateResponse, UserPreference,
    UserPreferenceRequest, UserPreferenceResponse, utcnow
)
from .resolution.parser import extract_environment, extract_function, extract_market, group_hash

SERVICE_NAME = "layout"
SERVICE_PORT = 8011


def camelize(values: Dict[str, Any]) -> Dict[str, Any]:
    return {to_camel(key): value for key, value in values.items()}


def create_store(config: ServiceConfig) -> LayoutStore:
    """Backing store selected by ``config.store_backend``."""
    backend = config.store_backend.lower()
    if backend == "memory":
        return InMemoryLayoutStore()
    if backend == "postgres":
        return PostgreSQLLayoutStore(
            config.postgres_dsn,
            min_size=config.postgres_min_pool_size,
            max_size=config.postgres_max_pool_size,
            command_timeout=config.postgres_command_timeout,
        )
    raise ValueError(f"Unknown store backend: {config.store_backend}")


class LayoutService(BaseService):
    """Layout service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, store: Optional[LayoutStore] = None):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config or get_config(SERVICE_NAME, SERVICE_PORT))

        # Initialize components
        self.store = store or create_store(self.config)
        self.caches = LayoutCaches.from_config(self.config, metrics=self.metrics)
        self.audit_recorder = AuditRecorder(self.store, self.metrics)
        self.preference_ttl = timedelta(hours=self.config.preference_expiry_hours)
        self.engine = LayoutMergeEngine(
            self.store,
            self.caches,
            audit_recorder=self.audit_recorder,
            metrics=self.metrics,
            write_back=self.config.write_back_preferences,
            preference_ttl=self.preference_ttl,
        )
        self._maintenance_task: Optional[asyncio.Task] = None

        self._setup_layout_routes()
        self._setup_template_routes()
        self._setup_override_routes()
        self._setup_preference_routes()
        self._setup_audit_routes()
        self._setup_cache_routes()

    def _setup_layout_routes(self):
        """Set up layout resolution routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Layout Entitlements - Layout Service",
                "version": "1.0.0",
                "capabilities": ["layout_resolution", "caching", "audit", "persistence"]
            }

        @self.app.post("/api/v1/layout/compute", response_model=LayoutComputationResponse)
        async def compute_layout(request: LayoutComputationRequest):
            """Compute the final layout for a user and their groups."""
            set_user_context(request.user_id)
            try:
                layout = await self.engine.resolve(
                    request.user_id,
                    request.group_identifiers,
                    user_email=request.user_email
                )
            except LayoutServiceException as e:
                self.metrics.record_error(e.code)
                response = LayoutComputationResponse(
                    user_id=request.user_id,
                    computation_source=ComputationSource.ERROR.value,
                    computation_time_ms=0,
                    error=e.to_response().model_dump()
                )
                return JSONResponse(
                    status_code=e.status_code,
                    content=response.model_dump(by_alias=True, mode="json")
                )

            self.metrics.record_business_event(f"layout_{layout.cache_status}")
            return LayoutComputationResponse.from_layout(layout)

    def _setup_template_routes(self):
        """Set up role template administration routes."""
        prefix = "/api/v1/data/role-templates"

        @self.app.get(prefix, response_model=List[RoleTemplateResponse])
        async def list_templates(
            market: Optional[str] = Query(None, description="Only templates enabled for this market"),
            environment: Optional[str] = Query(None, description="Only templates enabled for this environment")
        ):
            """List active role templates."""
            return await self.store.list_templates(market=market, environment=environment)

        @self.app.get(f"{prefix}/count")
        async def count_templates():
            """Count active role templates."""
            return {"count": await self.store.count_templates()}

        @self.app.get(f"{prefix}/{{role_name}}", response_model=RoleTemplateResponse)
        async def get_template(
            role_name: str,
            ignore_case: bool = Query(False, alias="ignoreCase")
        ):
            """Get an active role template by name."""
            template = await self.store.get_template(role_name, ignore_case=ignore_case)
            if template is None:
                raise NotFoundError("Role template not found", details={"role_name": role_name})
            return template

        @self.app.post(prefix, response_model=RoleTemplateResponse, status_code=201)
        async def create_template(request: RoleTemplateRequest):
            """Create or replace a role template."""
            if not request.role_name or not request.role_name.strip():
                raise ValidationError("roleName is required")
            saved = await self.store.save_template(self._template_from_request(request.role_name, request))
            self.caches.templates.invalidate(saved.role_name)
            self.logger.info("Role template saved", role_name=saved.role_name)
            return saved

        @self.app.put(f"{prefix}/{{role_name}}", response_model=RoleTemplateResponse)
        async def update_template(role_name: str, request: RoleTemplateRequest):
            """Replace an existing role template."""
            if await self.store.get_template(role_name) is None:
                raise NotFoundError("Role template not found", details={"role_name": role_name})
            saved = await self.store.save_template(self._template_from_request(role_name, request))
            self.caches.templates.invalidate(role_name)
            self.logger.info("Role template updated", role_name=role_name)
            return saved

        @self.app.delete(f"{prefix}/{{role_name}}")
        async def retire_template(role_name: str):
            """Retire a role template."""
            if not await self.store.retire_template(role_name):
                raise NotFoundError("Role template not found", details={"role_name": role_name})
            self.caches.templates.invalidate(role_name)
            self.logger.info("Role template retired", role_name=role_name)
            return {"roleName": role_name, "status": "retired"}

    def _setup_override_routes(self):
        """Set up group override administration routes."""
        prefix = "/api/v1/data/group-overrides"

        @self.app.get(prefix, response_model=List[GroupOverrideResponse])
        async def list_overrides(
            market: Optional[str] = Query(None),
            function: Optional[str] = Query(None),
            environment: Optional[str] = Query(None),
            max_priority: Optional[int] = Query(None, alias="maxPriority", description="Exclusive priority ceiling")
        ):
            """List active overrides ordered by priority."""
            return await self.store.list_overrides(
                market=market,
                function=function,
                environment=environment,
                max_priority=max_priority
            )

        @self.app.get(f"{prefix}/count")
        async def count_overrides(market: str = Query(..., description="Market code")):
            """Count active overrides for a market."""
            return {"market": market, "count": await self.store.count_overrides_by_market(market)}

        @self.app.post(f"{prefix}/lookup", response_model=List[GroupOverrideResponse])
        async def lookup_overrides(
            group_identifiers: List[str] = Body(..., alias="groupIdentifiers", embed=True)
        ):
            """Active overrides for a set of group identifiers."""
            return await self.store.find_overrides_by_group_dns(group_identifiers)

        @self.app.get(f"{prefix}/{{override_hash}}", response_model=GroupOverrideResponse)
        async def get_override(override_hash: str):
            """Get an active override by group hash."""
            override = await self.store.get_override(override_hash)
            if override is None:
                raise NotFoundError("Group override not found", details={"group_hash": override_hash})
            return override

        @self.app.post(prefix, response_model=GroupOverrideResponse, status_code=201)
        async def create_override(request: GroupOverrideRequest):
            """Create or replace the override for a group identifier."""
            if not request.group_dn.strip():
                raise ValidationError("groupDn is required")
            saved = await self.store.save_override(self._override_from_request(request))
            self.caches.overrides.invalidate(saved.group_hash)
            self.logger.info("Group override saved", group_dn=saved.group_dn, priority=saved.priority)
            return saved

        @self.app.put(f"{prefix}/{{override_hash}}", response_model=GroupOverrideResponse)
        async def update_override(override_hash: str, request: GroupOverrideRequest):
            """Replace an existing override."""
            if group_hash(request.group_dn) != override_hash:
                raise ValidationError("groupDn does not match group hash", details={"group_hash": override_hash})
            if await self.store.get_override(override_hash) is None:
                raise NotFoundError("Group override not found", details={"group_hash": override_hash})
            saved = await self.store.save_override(self._override_from_request(request))
            self.caches.overrides.invalidate(override_hash)
            self.logger.info("Group override updated", group_dn=saved.group_dn, priority=saved.priority)
            return saved

        @self.app.delete(f"{prefix}/{{override_hash}}")
        async def retire_override(override_hash: str):
            """Retire an override."""
            if not await self.store.retire_override(override_hash):
                raise NotFoundError("Group override not found", details={"group_hash": override_hash})
            self.caches.overrides.invalidate(override_hash)
            self.logger.info("Group override retired", group_hash=override_hash)
            return {"groupHash": override_hash, "status": "retired"}

    def _setup_preference_routes(self):
        """Set up user preference administration routes."""
        prefix = "/api/v1/data/user-preferences"

        @self.app.get(f"{prefix}/stats")
        async def preference_stats():
            """Valid and expired preference counts."""
            valid, expired = await self.store.count_preferences(utcnow())
            return {
                "validPreferences": valid,
                "expiredPreferences": expired,
                "totalPreferences": valid + expired,
                "cachedPreferences": len(self.caches.preferences)
            }

        @self.app.delete(f"{prefix}/expired")
        async def delete_expired_preferences():
            """Bulk delete expired preferences."""
            deleted = await self.store.delete_expired_preferences(utcnow())
            self.caches.preferences.evict_expired()
            self.logger.info("Expired preferences deleted", count=deleted)
            return {"deleted": deleted}

        @self.app.get(f"{prefix}/{{user_id}}", response_model=UserPreferenceResponse)
        async def get_preference(user_id: str):
            """Get the user's preference if it has not expired."""
            preference = await self.store.get_preference(user_id)
            if preference is None or preference.is_expired(utcnow()):
                raise NotFoundError("Valid preference not found", details={"user_id": user_id})
            return preference

        @self.app.post(prefix, response_model=UserPreferenceResponse, status_code=201)
        async def save_preference(request: UserPreferenceRequest):
            """Create or overwrite a user's preference."""
            if not request.user_id.strip():
                raise ValidationError("userId is required")
            now = utcnow()
            preference = UserPreference(
                user_id=request.user_id,
                user_email=request.user_email,
                computed_layout=request.computed_layout,
                market_theme=request.market_theme,
                effective_permissions=request.effective_permissions,
                primary_market=request.primary_market,
                base_roles=list(request.base_roles),
                cache_expiry=now + self.preference_ttl,
                last_computed_at=now,
                computation_source=ComputationSource.API.value,
            )
            saved = await self.store.save_preference(preference)
            self.caches.preferences.invalidate(saved.user_id)
            self.logger.info("User preference saved", user_id=saved.user_id)
            return saved

        @self.app.delete(f"{prefix}/{{user_id}}")
        async def delete_preference(user_id: str):
            """Delete a user's preference."""
            deleted = await self.store.delete_preference(user_id)
            self.caches.preferences.invalidate(user_id)
            if not deleted:
                raise NotFoundError("Preference not found", details={"user_id": user_id})
            return {"userId": user_id, "deleted": True}

    def _setup_audit_routes(self):
        """Set up computation audit routes."""
        prefix = "/api/v1/data/audit/computation"

        @self.app.get(f"{prefix}/user/{{user_id}}", response_model=List[ComputationAuditResponse])
        async def audits_by_user(user_id: str, limit: int = Query(100, ge=1, le=1000)):
            """Most recent audits for a user."""
            return await self.store.list_audits(user_id=user_id, limit=limit)

        @self.app.get(f"{prefix}/user/{{user_id}}/range", response_model=List[ComputationAuditResponse])
        async def audits_by_user_in_range(
            user_id: str,
            start: datetime = Query(..., description="Exclusive lower bound"),
            end: datetime = Query(..., description="Inclusive upper bound"),
            limit: int = Query(100, ge=1, le=1000)
        ):
            """Audits for a user within a time window."""
            if end < start:
                raise ValidationError("end must not be before start")
            return await self.store.list_audits(user_id=user_id, since=start, until=end, limit=limit)

        @self.app.get(f"{prefix}/user/{{user_id}}/count")
        async def count_user_audits(user_id: str):
            """Number of audits recorded for a user."""
            return {"userId": user_id, "count": await self.store.count_audits(user_id)}

        @self.app.get(f"{prefix}/performance")
        async def performance_stats(hours: int = Query(1, ge=1, le=24 * 30)):
            """Timing and cache statistics for a recent window."""
            since = utcnow() - timedelta(hours=hours)
            stats = await self.store.audit_performance_stats(since)
            return {"windowHours": hours, "since": since.isoformat(), **camelize(stats)}

        @self.app.get(f"{prefix}/slowest", response_model=List[ComputationAuditResponse])
        async def slowest_audits(limit: int = Query(10, ge=1, le=100)):
            """Slowest recorded computations."""
            return await self.store.slowest_audits(limit)

        @self.app.get(f"{prefix}/cache-status/{{cache_status}}", response_model=List[ComputationAuditResponse])
        async def audits_by_cache_status(cache_status: str, limit: int = Query(100, ge=1, le=1000)):
            """Audits with a given cache status."""
            return await self.store.list_audits(cache_status=cache_status, limit=limit)

        @self.app.get(f"{prefix}/source/{{computation_source}}", response_model=List[ComputationAuditResponse])
        async def audits_by_source(computation_source: str, limit: int = Query(100, ge=1, le=1000)):
            """Audits with a given computation source."""
            return await self.store.list_audits(computation_source=computation_source, limit=limit)

    def _setup_cache_routes(self):
        """Set up cache management routes."""

        @self.app.get("/api/v1/cache/stats")
        async def cache_stats():
            """Per-tier cache statistics."""
            return {name: camelize(stats) for name, stats in self.caches.stats().items()}

        @self.app.post("/api/v1/cache/evict")
        async def evict_expired():
            """Drop expired entries from every tier."""
            evicted = self.caches.evict_expired()
            self.logger.info("Expired cache entries evicted", **evicted)
            return {"evicted": evicted}

        @self.app.post("/api/v1/cache/clear")
        async def clear_caches():
            """Empty every tier."""
            self.caches.clear()
            self.logger.info("Caches cleared")
            return {"cleared": [tier.name for tier in self.caches.tiers()]}

    @staticmethod
    def _template_from_request(role_name: str, request: RoleTemplateRequest) -> RoleTemplate:
        return RoleTemplate(
            role_name=role_name,
            display_name=request.display_name,
            description=request.description,
            default_columns=request.default_columns,
            available_widgets=request.available_widgets,
            default_actions=request.default_actions,
            settings_access=request.settings_access,
            default_theme=request.default_theme,
            layout_priority=request.layout_priority,
            markets=list(request.markets),
            environments=list(request.environments),
        )

    @staticmethod
    def _override_from_request(request: GroupOverrideRequest) -> GroupOverride:
        """Override record keyed by the identifier hash; unset attributes are parsed from the identifier."""
        group_dn = request.group_dn
        return GroupOverride(
            group_hash=group_hash(group_dn),
            group_dn=group_dn,
            parsed_market=request.parsed_market or extract_market(group_dn) or Market.GLOBAL.value,
            parsed_function=request.parsed_function or extract_function(group_dn),
            parsed_environment=request.parsed_environment or extract_environment(group_dn),
            layout_overrides=request.layout_overrides,
            data_restrictions=request.data_restrictions,
            visual_customizations=request.visual_customizations,
            priority=request.priority,
        )

    async def run_maintenance(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """One maintenance pass: cache eviction, expired preferences, audit retention."""
        now = now or utcnow()
        with self.metrics.time_operation("maintenance_duration_seconds", task="full"):
            evicted = self.caches.evict_expired()
            expired_preferences = await self.store.delete_expired_preferences(now)
            purged_audits = await self.store.delete_audits_older_than(
                now - timedelta(days=self.config.audit_retention_days)
            )

        result = {
            "evicted": evicted,
            "expired_preferences": expired_preferences,
            "purged_audits": purged_audits
        }
        self.logger.info("Maintenance pass completed", **result)
        return result

    async def _maintenance_loop(self):
        """Run maintenance every ``maintenance_interval_seconds`` until cancelled."""
        while True:
            await asyncio.sleep(self.config.maintenance_interval_seconds)
            try:
                await self.run_maintenance()
            except Exception as e:
                self.logger.error("Maintenance pass failed", error=str(e))

    async def _check_dependencies(self):
        """Check layout service dependencies."""
        dependencies = {}

        try:
            if await self.store.health_check():
                dependencies["store"] = "ok"
            else:
                dependencies["store"] = "error"
        except Exception:
            dependencies["store"] = "error"

        return dependencies

    async def start(self):
        """Start layout service components."""
        await self.store.start()

        if self.config.enable_maintenance:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())

        self.logger.info(
            "Layout service started",
            store_backend=self.config.store_backend,
            write_back=self.config.write_back_preferences
        )

    async def stop(self):
        """Stop layout service components."""
        if self._maintenance_task:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None

        await self.store.stop()

        self.logger.info("Layout service stopped")


def create_app(config: Optional[ServiceConfig] = None, store: Optional[LayoutStore] = None):
    """Create layout service application."""
    service = LayoutService(config, store)
    return service.app


if __name__ == "__main__":
    service = LayoutService()
    service.run()

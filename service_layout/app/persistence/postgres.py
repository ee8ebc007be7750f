"""
PostgreSQL persistence layer for the layout service.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from shared.logging import get_logger
from shared.errors import StoreError
from .base import LayoutStore
from ..resolution.models import (
    ComputationAudit, GroupOverride, RecordStatus, RoleTemplate, UserPreference
)


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS role_layout_templates (
        role_name VARCHAR(100) PRIMARY KEY,
        display_name VARCHAR(255) NOT NULL,
        description TEXT,
        default_columns JSONB,
        available_widgets JSONB,
        default_actions JSONB,
        settings_access JSONB,
        default_theme JSONB,
        layout_priority INTEGER NOT NULL DEFAULT 0,
        markets TEXT[] NOT NULL DEFAULT '{}',
        environments TEXT[] NOT NULL DEFAULT '{}',
        status VARCHAR(20) NOT NULL DEFAULT 'active',
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_templates_lower_name ON role_layout_templates(LOWER(role_name))",
    "CREATE INDEX IF NOT EXISTS idx_templates_status ON role_layout_templates(status)",
    """
    CREATE TABLE IF NOT EXISTS group_layout_overrides (
        group_hash VARCHAR(64) PRIMARY KEY,
        group_dn VARCHAR(500) NOT NULL,
        parsed_market VARCHAR(10) NOT NULL,
        parsed_function VARCHAR(50),
        parsed_environment VARCHAR(20),
        layout_overrides JSONB,
        data_restrictions JSONB,
        visual_customizations JSONB,
        priority INTEGER NOT NULL DEFAULT 100,
        status VARCHAR(20) NOT NULL DEFAULT 'active',
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_overrides_group_dn ON group_layout_overrides(group_dn)",
    "CREATE INDEX IF NOT EXISTS idx_overrides_market ON group_layout_overrides(parsed_market)",
    "CREATE INDEX IF NOT EXISTS idx_overrides_priority ON group_layout_overrides(priority ASC, group_hash ASC)",
    """
    CREATE TABLE IF NOT EXISTS user_layout_preferences (
        user_id VARCHAR(255) PRIMARY KEY,
        user_email VARCHAR(255),
        computed_layout JSONB NOT NULL,
        market_theme JSONB,
        effective_permissions JSONB,
        primary_market VARCHAR(10),
        base_roles TEXT[] NOT NULL DEFAULT '{}',
        cache_expiry TIMESTAMP WITH TIME ZONE NOT NULL,
        last_computed_at TIMESTAMP WITH TIME ZONE NOT NULL,
        computation_source VARCHAR(50)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_preferences_expiry ON user_layout_preferences(cache_expiry)",
    """
    CREATE TABLE IF NOT EXISTS layout_computation_audit (
        audit_id BIGSERIAL PRIMARY KEY,
        user_id VARCHAR(255) NOT NULL,
        user_email VARCHAR(255),
        group_identifiers TEXT[] NOT NULL DEFAULT '{}',
        matched_overrides JSONB NOT NULL DEFAULT '[]',
        base_roles TEXT[] NOT NULL DEFAULT '{}',
        computation_steps JSONB,
        conflict_resolutions JSONB,
        final_layout JSONB,
        computation_time_ms BIGINT NOT NULL,
        cache_status VARCHAR(20) NOT NULL,
        computation_source VARCHAR(50),
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_user ON layout_computation_audit(user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_audit_created ON layout_computation_audit(created_at)",
)

ACTIVE = RecordStatus.ACTIVE.value


async def _init_connection(conn):
    """Decode JSONB columns into Python values."""
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog"
    )


class PostgreSQLLayoutStore(LayoutStore):
    """PostgreSQL persistence layer for layout records."""

    def __init__(
        self,
        dsn: str,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 30,
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("layout.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
                init=_init_connection
            )

            await self._create_tables()

            self.logger.info("PostgreSQL persistence started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise StoreError("start", str(e))

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)

    async def _run(self, operation: str, method: str, query: str, *args):
        """Run one query on a pooled connection, wrapping failures."""
        if self.pool is None:
            raise StoreError(operation, "store not started")
        try:
            async with self.pool.acquire() as conn:
                return await getattr(conn, method)(query, *args)
        except Exception as e:
            self.logger.error("Store operation failed", operation=operation, error=str(e))
            raise StoreError(operation, str(e))

    # Role templates

    async def get_template(self, role_name: str, ignore_case: bool = False) -> Optional[RoleTemplate]:
        if ignore_case:
            query = "SELECT * FROM role_layout_templates WHERE LOWER(role_name) = LOWER($1) AND status = $2 ORDER BY role_name LIMIT 1"
        else:
            query = "SELECT * FROM role_layout_templates WHERE role_name = $1 AND status = $2"
        row = await self._run("get_template", "fetchrow", query, role_name, ACTIVE)
        return self._row_to_template(row) if row else None

    async def list_templates(
        self,
        market: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> List[RoleTemplate]:
        conditions = ["status = $1"]
        args: List[Any] = [ACTIVE]
        if market is not None:
            args.append(market)
            conditions.append(f"${len(args)} = ANY(markets)")
        if environment is not None:
            args.append(environment)
            conditions.append(f"${len(args)} = ANY(environments)")

        rows = await self._run(
            "list_templates", "fetch",
            f"SELECT * FROM role_layout_templates WHERE {' AND '.join(conditions)} "
            "ORDER BY layout_priority ASC, role_name ASC",
            *args
        )
        return [self._row_to_template(row) for row in rows]

    async def save_template(self, template: RoleTemplate) -> RoleTemplate:
        row = await self._run(
            "save_template", "fetchrow",
            """
            INSERT INTO role_layout_templates (
                role_name, display_name, description, default_columns, available_widgets,
                default_actions, settings_access, default_theme, layout_priority,
                markets, environments, status, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, NOW())
            ON CONFLICT (role_name) DO UPDATE SET
                display_name = EXCLUDED.display_name,
                description = EXCLUDED.description,
                default_columns = EXCLUDED.default_columns,
                available_widgets = EXCLUDED.available_widgets,
                default_actions = EXCLUDED.default_actions,
                settings_access = EXCLUDED.settings_access,
                default_theme = EXCLUDED.default_theme,
                layout_priority = EXCLUDED.layout_priority,
                markets = EXCLUDED.markets,
                environments = EXCLUDED.environments,
                status = EXCLUDED.status,
                updated_at = NOW()
            RETURNING *
            """,
            template.role_name, template.display_name, template.description,
            template.default_columns, template.available_widgets, template.default_actions,
            template.settings_access, template.default_theme, template.layout_priority,
            list(template.markets), list(template.environments), template.status.value,
            template.created_at
        )
        self.logger.info("Role template saved", role_name=template.role_name)
        return self._row_to_template(row)

    async def retire_template(self, role_name: str) -> bool:
        result = await self._run(
            "retire_template", "execute",
            "UPDATE role_layout_templates SET status = $1, updated_at = NOW() WHERE role_name = $2 AND status = $3",
            RecordStatus.RETIRED.value, role_name, ACTIVE
        )
        return result == "UPDATE 1"

    async def count_templates(self) -> int:
        count = await self._run(
            "count_templates", "fetchval",
            "SELECT COUNT(*) FROM role_layout_templates WHERE status = $1", ACTIVE
        )
        return count or 0

    # Group overrides

    async def get_override(self, group_hash: str) -> Optional[GroupOverride]:
        row = await self._run(
            "get_override", "fetchrow",
            "SELECT * FROM group_layout_overrides WHERE group_hash = $1 AND status = $2",
            group_hash, ACTIVE
        )
        return self._row_to_override(row) if row else None

    async def find_overrides_by_group_dns(self, group_dns: Sequence[str]) -> List[GroupOverride]:
        if not group_dns:
            return []
        rows = await self._run(
            "find_overrides_by_group_dns", "fetch",
            """
            SELECT * FROM group_layout_overrides
            WHERE group_dn = ANY($1::text[]) AND status = $2
            ORDER BY priority ASC, group_hash ASC
            """,
            list(group_dns), ACTIVE
        )
        return [self._row_to_override(row) for row in rows]

    async def list_overrides(
        self,
        market: Optional[str] = None,
        function: Optional[str] = None,
        environment: Optional[str] = None,
        max_priority: Optional[int] = None,
    ) -> List[GroupOverride]:
        conditions = ["status = $1"]
        args: List[Any] = [ACTIVE]
        for column, value in (
            ("parsed_market", market),
            ("parsed_function", function),
            ("parsed_environment", environment),
        ):
            if value is not None:
                args.append(value)
                conditions.append(f"{column} = ${len(args)}")
        if max_priority is not None:
            args.append(max_priority)
            conditions.append(f"priority < ${len(args)}")

        rows = await self._run(
            "list_overrides", "fetch",
            f"SELECT * FROM group_layout_overrides WHERE {' AND '.join(conditions)} "
            "ORDER BY priority ASC, group_hash ASC",
            *args
        )
        return [self._row_to_override(row) for row in rows]

    async def save_override(self, override: GroupOverride) -> GroupOverride:
        row = await self._run(
            "save_override", "fetchrow",
            """
            INSERT INTO group_layout_overrides (
                group_hash, group_dn, parsed_market, parsed_function, parsed_environment,
                layout_overrides, data_restrictions, visual_customizations, priority,
                status, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, NOW())
            ON CONFLICT (group_hash) DO UPDATE SET
                group_dn = EXCLUDED.group_dn,
                parsed_market = EXCLUDED.parsed_market,
                parsed_function = EXCLUDED.parsed_function,
                parsed_environment = EXCLUDED.parsed_environment,
                layout_overrides = EXCLUDED.layout_overrides,
                data_restrictions = EXCLUDED.data_restrictions,
                visual_customizations = EXCLUDED.visual_customizations,
                priority = EXCLUDED.priority,
                status = EXCLUDED.status,
                updated_at = NOW()
            RETURNING *
            """,
            override.group_hash, override.group_dn, override.parsed_market,
            override.parsed_function, override.parsed_environment, override.layout_overrides,
            override.data_restrictions, override.visual_customizations, override.priority,
            override.status.value, override.created_at
        )
        self.logger.info("Group override saved", group_hash=override.group_hash, priority=override.priority)
        return self._row_to_override(row)

    async def retire_override(self, group_hash: str) -> bool:
        result = await self._run(
            "retire_override", "execute",
            "UPDATE group_layout_overrides SET status = $1, updated_at = NOW() WHERE group_hash = $2 AND status = $3",
            RecordStatus.RETIRED.value, group_hash, ACTIVE
        )
        return result == "UPDATE 1"

    async def count_overrides_by_market(self, market: str) -> int:
        count = await self._run(
            "count_overrides_by_market", "fetchval",
            "SELECT COUNT(*) FROM group_layout_overrides WHERE parsed_market = $1 AND status = $2",
            market, ACTIVE
        )
        return count or 0

    # User preferences

    async def get_preference(self, user_id: str) -> Optional[UserPreference]:
        row = await self._run(
            "get_preference", "fetchrow",
            "SELECT * FROM user_layout_preferences WHERE user_id = $1", user_id
        )
        return self._row_to_preference(row) if row else None

    async def save_preference(self, preference: UserPreference) -> UserPreference:
        row = await self._run(
            "save_preference", "fetchrow",
            """
            INSERT INTO user_layout_preferences (
                user_id, user_email, computed_layout, market_theme, effective_permissions,
                primary_market, base_roles, cache_expiry, last_computed_at, computation_source
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (user_id) DO UPDATE SET
                user_email = EXCLUDED.user_email,
                computed_layout = EXCLUDED.computed_layout,
                market_theme = EXCLUDED.market_theme,
                effective_permissions = EXCLUDED.effective_permissions,
                primary_market = EXCLUDED.primary_market,
                base_roles = EXCLUDED.base_roles,
                cache_expiry = EXCLUDED.cache_expiry,
                last_computed_at = EXCLUDED.last_computed_at,
                computation_source = EXCLUDED.computation_source
            RETURNING *
            """,
            preference.user_id, preference.user_email, preference.computed_layout,
            preference.market_theme, preference.effective_permissions, preference.primary_market,
            list(preference.base_roles), preference.cache_expiry, preference.last_computed_at,
            preference.computation_source
        )
        return self._row_to_preference(row)

    async def delete_preference(self, user_id: str) -> bool:
        result = await self._run(
            "delete_preference", "execute",
            "DELETE FROM user_layout_preferences WHERE user_id = $1", user_id
        )
        return result == "DELETE 1"

    async def delete_expired_preferences(self, now: datetime) -> int:
        result = await self._run(
            "delete_expired_preferences", "execute",
            "DELETE FROM user_layout_preferences WHERE cache_expiry <= $1", now
        )
        return _affected_rows(result)

    async def count_preferences(self, now: datetime) -> Tuple[int, int]:
        row = await self._run(
            "count_preferences", "fetchrow",
            """
            SELECT
                COUNT(*) FILTER (WHERE cache_expiry > $1) AS valid,
                COUNT(*) FILTER (WHERE cache_expiry <= $1) AS expired
            FROM user_layout_preferences
            """,
            now
        )
        return row["valid"] or 0, row["expired"] or 0

    # Computation audit

    async def insert_audit(self, audit: ComputationAudit) -> int:
        return await self._run(
            "insert_audit", "fetchval",
            """
            INSERT INTO layout_computation_audit (
                user_id, user_email, group_identifiers, matched_overrides, base_roles,
                computation_steps, conflict_resolutions, final_layout, computation_time_ms,
                cache_status, computation_source, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            RETURNING audit_id
            """,
            audit.user_id, audit.user_email, list(audit.group_identifiers),
            audit.matched_overrides, list(audit.base_roles), audit.computation_steps,
            audit.conflict_resolutions, audit.final_layout, audit.computation_time_ms,
            audit.cache_status, audit.computation_source, audit.created_at
        )

    async def list_audits(
        self,
        user_id: Optional[str] = None,
        cache_status: Optional[str] = None,
        computation_source: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[ComputationAudit]:
        conditions: List[str] = []
        args: List[Any] = []
        for clause, value in (
            ("user_id = ${}", user_id),
            ("cache_status = ${}", cache_status),
            ("computation_source = ${}", computation_source),
            ("created_at > ${}", since),
            ("created_at <= ${}", until),
        ):
            if value is not None:
                args.append(value)
                conditions.append(clause.format(len(args)))

        query = "SELECT * FROM layout_computation_audit"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, audit_id DESC"
        if limit:
            args.append(limit)
            query += f" LIMIT ${len(args)}"

        rows = await self._run("list_audits", "fetch", query, *args)
        return [self._row_to_audit(row) for row in rows]

    async def slowest_audits(self, limit: int = 10) -> List[ComputationAudit]:
        rows = await self._run(
            "slowest_audits", "fetch",
            "SELECT * FROM layout_computation_audit ORDER BY computation_time_ms DESC LIMIT $1",
            limit
        )
        return [self._row_to_audit(row) for row in rows]

    async def count_audits(self, user_id: str) -> int:
        count = await self._run(
            "count_audits", "fetchval",
            "SELECT COUNT(*) FROM layout_computation_audit WHERE user_id = $1", user_id
        )
        return count or 0

    async def delete_audits_older_than(self, before: datetime) -> int:
        result = await self._run(
            "delete_audits_older_than", "execute",
            "DELETE FROM layout_computation_audit WHERE created_at < $1", before
        )
        return _affected_rows(result)

    async def audit_performance_stats(self, since: datetime) -> Dict[str, Any]:
        row = await self._run(
            "audit_performance_stats", "fetchrow",
            """
            SELECT
                COUNT(*) AS total_requests,
                AVG(computation_time_ms) AS avg_computation_time_ms,
                MAX(computation_time_ms) AS max_computation_time_ms,
                MIN(computation_time_ms) AS min_computation_time_ms,
                COUNT(*) FILTER (WHERE cache_status = 'hit') AS cache_hits,
                COUNT(*) FILTER (WHERE cache_status = 'miss') AS cache_misses,
                COUNT(*) FILTER (WHERE cache_status = 'expired') AS cache_expired
            FROM layout_computation_audit
            WHERE created_at > $1
            """,
            since
        )
        stats = dict(row)
        lookups = (stats["cache_hits"] or 0) + (stats["cache_misses"] or 0) + (stats["cache_expired"] or 0)
        stats["avg_computation_time_ms"] = float(stats["avg_computation_time_ms"] or 0.0)
        stats["max_computation_time_ms"] = stats["max_computation_time_ms"] or 0
        stats["min_computation_time_ms"] = stats["min_computation_time_ms"] or 0
        stats["cache_hit_ratio"] = (stats["cache_hits"] or 0) / lookups * 100 if lookups else 0.0
        return stats

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False

    # Row mapping

    def _row_to_template(self, row) -> RoleTemplate:
        return RoleTemplate(
            role_name=row["role_name"],
            display_name=row["display_name"],
            description=row["description"],
            default_columns=row["default_columns"],
            available_widgets=row["available_widgets"],
            default_actions=row["default_actions"],
            settings_access=row["settings_access"],
            default_theme=row["default_theme"],
            layout_priority=row["layout_priority"],
            markets=list(row["markets"] or []),
            environments=list(row["environments"] or []),
            status=RecordStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"]
        )

    def _row_to_override(self, row) -> GroupOverride:
        return GroupOverride(
            group_hash=row["group_hash"],
            group_dn=row["group_dn"],
            parsed_market=row["parsed_market"],
            parsed_function=row["parsed_function"],
            parsed_environment=row["parsed_environment"],
            layout_overrides=row["layout_overrides"],
            data_restrictions=row["data_restrictions"],
            visual_customizations=row["visual_customizations"],
            priority=row["priority"],
            status=RecordStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"]
        )

    def _row_to_preference(self, row) -> UserPreference:
        return UserPreference(
            user_id=row["user_id"],
            user_email=row["user_email"],
            computed_layout=row["computed_layout"],
            market_theme=row["market_theme"],
            effective_permissions=row["effective_permissions"],
            primary_market=row["primary_market"],
            base_roles=list(row["base_roles"] or []),
            cache_expiry=row["cache_expiry"],
            last_computed_at=row["last_computed_at"],
            computation_source=row["computation_source"]
        )

    def _row_to_audit(self, row) -> ComputationAudit:
        return ComputationAudit(
            audit_id=row["audit_id"],
            user_id=row["user_id"],
            user_email=row["user_email"],
            group_identifiers=list(row["group_identifiers"] or []),
            matched_overrides=row["matched_overrides"] or [],
            base_roles=list(row["base_roles"] or []),
            computation_steps=row["computation_steps"] or [],
            conflict_resolutions=row["conflict_resolutions"] or [],
            final_layout=row["final_layout"],
            computation_time_ms=row["computation_time_ms"],
            cache_status=row["cache_status"],
            computation_source=row["computation_source"],
            created_at=row["created_at"]
        )


def _affected_rows(status: str) -> int:
    """Row count from a command tag such as ``DELETE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0

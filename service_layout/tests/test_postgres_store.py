"""
Unit tests for the PostgreSQL layout store with a mocked connection pool.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from shared.errors import StoreError
from service_layout.app.persistence.postgres import PostgreSQLLayoutStore, SCHEMA
from service_layout.app.resolution.models import (
    ComputationAudit, GroupOverride, RecordStatus, RoleTemplate, UserPreference
)

NOW = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)


def template_row(**overrides):
    row = {
        "role_name": "MANAGER",
        "display_name": "Manager",
        "description": None,
        "default_columns": ["id", "status"],
        "available_widgets": None,
        "default_actions": ["approve"],
        "settings_access": None,
        "default_theme": None,
        "layout_priority": 10,
        "markets": ["EMEA"],
        "environments": ["PRODUCTION"],
        "status": "active",
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def preference_row(**overrides):
    row = {
        "user_id": "user-1",
        "user_email": None,
        "computed_layout": {"defaultColumns": ["id"]},
        "market_theme": {"color": "blue"},
        "effective_permissions": None,
        "primary_market": "EMEA",
        "base_roles": ["MANAGER"],
        "cache_expiry": NOW + timedelta(hours=4),
        "last_computed_at": NOW,
        "computation_source": "computation",
    }
    row.update(overrides)
    return row


class TestPostgreSQLLayoutStore:
    """Test cases for PostgreSQLLayoutStore."""

    @pytest.fixture
    def conn(self):
        """Create a mocked connection."""
        return AsyncMock()

    @pytest.fixture
    def store(self, conn):
        """Create a store wired to a mocked pool."""
        store = PostgreSQLLayoutStore("postgres://localhost:5432/layout")
        pool = MagicMock()
        pool.acquire.return_value.__aenter__.return_value = conn
        pool.acquire.return_value.__aexit__.return_value = False
        store.pool = pool
        return store

    @pytest.mark.asyncio
    async def test_start_creates_pool_and_schema(self, conn):
        """Test startup opens the pool and creates tables."""
        pool = MagicMock()
        pool.acquire.return_value.__aenter__.return_value = conn
        pool.acquire.return_value.__aexit__.return_value = False
        store = PostgreSQLLayoutStore("postgres://localhost:5432/layout", min_size=1, max_size=4)

        with patch("service_layout.app.persistence.postgres.asyncpg.create_pool", new=AsyncMock(return_value=pool)) as create_pool:
            await store.start()

        assert create_pool.call_args.kwargs["min_size"] == 1
        assert create_pool.call_args.kwargs["max_size"] == 4
        assert conn.execute.await_count == len(SCHEMA)

    @pytest.mark.asyncio
    async def test_start_failure_raises_store_error(self):
        """Test connection failures surface as StoreError."""
        store = PostgreSQLLayoutStore("postgres://localhost:5432/layout")

        with patch("service_layout.app.persistence.postgres.asyncpg.create_pool", new=AsyncMock(side_effect=OSError("refused"))):
            with pytest.raises(StoreError) as exc_info:
                await store.start()

        assert exc_info.value.operation == "start"

    @pytest.mark.asyncio
    async def test_not_started(self):
        """Test queries before start fail cleanly."""
        store = PostgreSQLLayoutStore("postgres://localhost:5432/layout")

        with pytest.raises(StoreError):
            await store.get_template("MANAGER")

    @pytest.mark.asyncio
    async def test_get_template_exact(self, store, conn):
        """Test exact lookup maps the row."""
        conn.fetchrow.return_value = template_row()

        template = await store.get_template("MANAGER")

        query, *args = conn.fetchrow.call_args.args
        assert "role_name = $1" in query
        assert "LOWER" not in query
        assert args == ["MANAGER", "active"]
        assert template.default_columns == ["id", "status"]
        assert template.status == RecordStatus.ACTIVE
        assert template.markets == ["EMEA"]

    @pytest.mark.asyncio
    async def test_get_template_ignore_case(self, store, conn):
        """Test case-insensitive lookup."""
        conn.fetchrow.return_value = None

        assert await store.get_template("manager", ignore_case=True) is None
        assert "LOWER(role_name) = LOWER($1)" in conn.fetchrow.call_args.args[0]

    @pytest.mark.asyncio
    async def test_save_template(self, store, conn):
        """Test upsert returns the stored row."""
        conn.fetchrow.return_value = template_row(display_name="Team Manager")

        saved = await store.save_template(RoleTemplate(role_name="MANAGER", display_name="Team Manager"))

        assert "ON CONFLICT (role_name)" in conn.fetchrow.call_args.args[0]
        assert saved.display_name == "Team Manager"

    @pytest.mark.asyncio
    async def test_retire_template(self, store, conn):
        """Test retire reports whether a row changed."""
        conn.execute.return_value = "UPDATE 1"
        assert await store.retire_template("MANAGER") is True

        conn.execute.return_value = "UPDATE 0"
        assert await store.retire_template("MANAGER") is False

    @pytest.mark.asyncio
    async def test_find_overrides_by_group_dns(self, store, conn):
        """Test set-membership query and empty input."""
        conn.fetch.return_value = []

        assert await store.find_overrides_by_group_dns([]) == []
        conn.fetch.assert_not_called()

        await store.find_overrides_by_group_dns(["CN=EMEA-Managers"])
        query, dns, status = conn.fetch.call_args.args
        assert "ANY($1::text[])" in query
        assert "ORDER BY priority ASC, group_hash ASC" in query
        assert dns == ["CN=EMEA-Managers"]
        assert status == "active"

    @pytest.mark.asyncio
    async def test_list_overrides_placeholders(self, store, conn):
        """Test filter placeholders are numbered in order."""
        conn.fetch.return_value = []

        await store.list_overrides(market="EMEA", environment="UAT", max_priority=50)

        query, *args = conn.fetch.call_args.args
        assert "parsed_market = $2" in query
        assert "parsed_environment = $3" in query
        assert "priority < $4" in query
        assert args == ["active", "EMEA", "UAT", 50]

    @pytest.mark.asyncio
    async def test_save_override_maps_row(self, store, conn):
        """Test override upsert and row mapping."""
        conn.fetchrow.return_value = {
            "group_hash": "abc",
            "group_dn": "CN=EMEA-Managers",
            "parsed_market": "EMEA",
            "parsed_function": "MANAGEMENT",
            "parsed_environment": "PRODUCTION",
            "layout_overrides": {"view": "compact"},
            "data_restrictions": None,
            "visual_customizations": None,
            "priority": 10,
            "status": "active",
            "created_at": NOW,
            "updated_at": NOW,
        }

        saved = await store.save_override(GroupOverride(group_hash="abc", group_dn="CN=EMEA-Managers", priority=10))

        assert saved.layout_overrides == {"view": "compact"}
        assert saved.sort_key == (10, "abc")

    @pytest.mark.asyncio
    async def test_preferences(self, store, conn):
        """Test preference lookup, expiry purge and counts."""
        conn.fetchrow.return_value = preference_row()
        preference = await store.get_preference("user-1")
        assert preference.base_roles == ["MANAGER"]
        assert not preference.is_expired(NOW)

        conn.execute.return_value = "DELETE 3"
        assert await store.delete_expired_preferences(NOW) == 3

        conn.fetchrow.return_value = {"valid": 5, "expired": 2}
        assert await store.count_preferences(NOW) == (5, 2)

    @pytest.mark.asyncio
    async def test_save_preference(self, store, conn):
        """Test preference upsert arguments."""
        conn.fetchrow.return_value = preference_row()

        await store.save_preference(UserPreference(user_id="user-1", computed_layout={"defaultColumns": ["id"]}))

        args = conn.fetchrow.call_args.args
        assert "ON CONFLICT (user_id)" in args[0]
        assert args[1] == "user-1"
        assert args[3] == {"defaultColumns": ["id"]}

    @pytest.mark.asyncio
    async def test_insert_audit(self, store, conn):
        """Test audit insert returns the generated id."""
        conn.fetchval.return_value = 42
        audit = ComputationAudit(
            user_id="user-1",
            group_identifiers=["CN=EMEA-Managers"],
            cache_status="miss",
            computation_source="computation",
            computation_time_ms=7,
        )

        assert await store.insert_audit(audit) == 42
        assert "RETURNING audit_id" in conn.fetchval.call_args.args[0]

    @pytest.mark.asyncio
    async def test_list_audits_query(self, store, conn):
        """Test audit filters, ordering and limit."""
        conn.fetch.return_value = []

        await store.list_audits(user_id="user-1", since=NOW, limit=20)
        query, *args = conn.fetch.call_args.args
        assert "user_id = $1" in query
        assert "created_at > $2" in query
        assert query.endswith("LIMIT $3")
        assert args == ["user-1", NOW, 20]

        await store.list_audits(limit=0)
        assert "LIMIT" not in conn.fetch.call_args.args[0]

    @pytest.mark.asyncio
    async def test_audit_performance_stats(self, store, conn):
        """Test hit ratio computed from aggregates."""
        conn.fetchrow.return_value = {
            "total_requests": 4,
            "avg_computation_time_ms": 12.5,
            "max_computation_time_ms": 30,
            "min_computation_time_ms": 2,
            "cache_hits": 1,
            "cache_misses": 3,
            "cache_expired": 0,
        }

        stats = await store.audit_performance_stats(NOW - timedelta(hours=1))

        assert stats["total_requests"] == 4
        assert stats["cache_hit_ratio"] == 25.0
        assert stats["avg_computation_time_ms"] == 12.5

    @pytest.mark.asyncio
    async def test_query_failure_wrapped(self, store, conn):
        """Test driver errors become StoreError."""
        conn.fetchval.side_effect = ConnectionError("connection reset")

        with pytest.raises(StoreError) as exc_info:
            await store.count_templates()

        assert exc_info.value.operation == "count_templates"
        assert "connection reset" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_health_check(self, store, conn):
        """Test health check round trip."""
        conn.fetchval.return_value = 1
        assert await store.health_check() is True

        conn.fetchval.side_effect = ConnectionError("down")
        assert await store.health_check() is False

"""
Unit tests for the in-memory layout store.
"""

from datetime import datetime, timedelta, timezone

import pytest

from service_layout.app.persistence.memory import InMemoryLayoutStore
from service_layout.app.resolution.models import (
    ComputationAudit, GroupOverride, RecordStatus, RoleTemplate, UserPreference
)
from service_layout.app.resolution.parser import group_hash

NOW = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)


def make_override(group_dn: str, market: str = "EMEA", priority: int = 100, **kwargs) -> GroupOverride:
    return GroupOverride(
        group_hash=group_hash(group_dn),
        group_dn=group_dn,
        parsed_market=market,
        priority=priority,
        **kwargs
    )


def make_audit(user_id: str, created_at: datetime, cache_status: str = "miss", time_ms: int = 5) -> ComputationAudit:
    return ComputationAudit(
        user_id=user_id,
        group_identifiers=["CN=EMEA-Managers"],
        cache_status=cache_status,
        computation_source="cache" if cache_status == "hit" else "computation",
        computation_time_ms=time_ms,
        created_at=created_at,
    )


class TestTemplates:
    """Test cases for role template storage."""

    @pytest.fixture
    def store(self):
        """Create an in-memory store."""
        return InMemoryLayoutStore()

    @pytest.mark.asyncio
    async def test_save_and_get(self, store):
        """Test saved templates are returned as copies."""
        await store.save_template(RoleTemplate(role_name="MANAGER", display_name="Manager", default_columns=["a"]))

        template = await store.get_template("MANAGER")
        template.default_columns.append("b")

        assert (await store.get_template("MANAGER")).default_columns == ["a"]

    @pytest.mark.asyncio
    async def test_get_is_case_sensitive_unless_requested(self, store):
        """Test exact and case-insensitive lookup."""
        await store.save_template(RoleTemplate(role_name="MANAGER", display_name="Manager"))

        assert await store.get_template("manager") is None
        assert (await store.get_template("manager", ignore_case=True)).role_name == "MANAGER"

    @pytest.mark.asyncio
    async def test_update_preserves_created_at(self, store):
        """Test upsert keeps the original creation time."""
        first = await store.save_template(RoleTemplate(role_name="MANAGER", display_name="Manager"))
        second = await store.save_template(RoleTemplate(role_name="MANAGER", display_name="Team Manager"))

        assert second.created_at == first.created_at
        assert second.display_name == "Team Manager"

    @pytest.mark.asyncio
    async def test_retire(self, store):
        """Test retired templates disappear from reads."""
        await store.save_template(RoleTemplate(role_name="MANAGER", display_name="Manager"))

        assert await store.retire_template("MANAGER") is True
        assert await store.retire_template("MANAGER") is False
        assert await store.get_template("MANAGER") is None
        assert await store.count_templates() == 0
        assert store.templates["MANAGER"].status == RecordStatus.RETIRED

    @pytest.mark.asyncio
    async def test_list_filters(self, store):
        """Test market and environment filters."""
        await store.save_template(RoleTemplate(role_name="A", display_name="A", markets=["EMEA"], environments=["PRODUCTION"]))
        await store.save_template(RoleTemplate(role_name="B", display_name="B", markets=["UK"], environments=["UAT"]))

        assert [t.role_name for t in await store.list_templates(market="EMEA")] == ["A"]
        assert [t.role_name for t in await store.list_templates(environment="UAT")] == ["B"]
        assert len(await store.list_templates()) == 2


class TestOverrides:
    """Test cases for group override storage."""

    @pytest.fixture
    def store(self):
        """Create an in-memory store."""
        return InMemoryLayoutStore()

    @pytest.mark.asyncio
    async def test_find_by_group_dns(self, store):
        """Test set-membership lookup ordered by priority."""
        await store.save_override(make_override("CN=EMEA-Managers", priority=30))
        await store.save_override(make_override("CN=EMEA-Analysts", priority=20))
        await store.save_override(make_override("CN=UK-Agents", market="UK", priority=10))

        found = await store.find_overrides_by_group_dns(["CN=EMEA-Managers", "CN=EMEA-Analysts", "CN=Unknown"])

        assert [o.group_dn for o in found] == ["CN=EMEA-Analysts", "CN=EMEA-Managers"]

    @pytest.mark.asyncio
    async def test_list_filters_and_priority_ceiling(self, store):
        """Test filtered listing with an exclusive priority ceiling."""
        await store.save_override(make_override("CN=EMEA-Managers", priority=30, parsed_function="MANAGEMENT"))
        await store.save_override(make_override("CN=EMEA-Analysts", priority=20, parsed_function="ANALYTICS"))
        await store.save_override(make_override("CN=UK-Agents", market="UK", priority=10))

        assert len(await store.list_overrides(market="EMEA")) == 2
        assert [o.group_dn for o in await store.list_overrides(function="ANALYTICS")] == ["CN=EMEA-Analysts"]
        assert [o.priority for o in await store.list_overrides(max_priority=30)] == [10, 20]
        assert await store.count_overrides_by_market("EMEA") == 2

    @pytest.mark.asyncio
    async def test_retire_override(self, store):
        """Test retired overrides are excluded."""
        saved = await store.save_override(make_override("CN=EMEA-Managers"))

        assert await store.retire_override(saved.group_hash) is True
        assert await store.get_override(saved.group_hash) is None
        assert await store.find_overrides_by_group_dns(["CN=EMEA-Managers"]) == []


class TestPreferences:
    """Test cases for user preference storage."""

    @pytest.fixture
    def store(self):
        """Create an in-memory store."""
        return InMemoryLayoutStore()

    @pytest.mark.asyncio
    async def test_get_returns_expired_rows(self, store):
        """Test point lookup ignores expiry."""
        await store.save_preference(UserPreference(user_id="u1", computed_layout={}, cache_expiry=NOW - timedelta(hours=1)))

        preference = await store.get_preference("u1")

        assert preference.is_expired(NOW)

    @pytest.mark.asyncio
    async def test_delete_and_counts(self, store):
        """Test counts and bulk deletion of expired rows."""
        await store.save_preference(UserPreference(user_id="u1", computed_layout={}, cache_expiry=NOW - timedelta(hours=1)))
        await store.save_preference(UserPreference(user_id="u2", computed_layout={}, cache_expiry=NOW + timedelta(hours=1)))

        assert await store.count_preferences(NOW) == (1, 1)
        assert await store.delete_expired_preferences(NOW) == 1
        assert await store.count_preferences(NOW) == (1, 0)
        assert await store.delete_preference("u2") is True
        assert await store.delete_preference("u2") is False


class TestAudits:
    """Test cases for audit storage."""

    @pytest.fixture
    def store(self):
        """Create an in-memory store."""
        return InMemoryLayoutStore()

    @pytest.mark.asyncio
    async def test_insert_assigns_ids(self, store):
        """Test audit ids increase."""
        first = await store.insert_audit(make_audit("u1", NOW))
        second = await store.insert_audit(make_audit("u1", NOW))

        assert second == first + 1

    @pytest.mark.asyncio
    async def test_list_newest_first_with_filters(self, store):
        """Test ordering and filtering of audit listings."""
        await store.insert_audit(make_audit("u1", NOW - timedelta(hours=2)))
        await store.insert_audit(make_audit("u1", NOW - timedelta(minutes=30), cache_status="hit"))
        await store.insert_audit(make_audit("u2", NOW - timedelta(minutes=10)))

        by_user = await store.list_audits(user_id="u1")
        recent = await store.list_audits(since=NOW - timedelta(hours=1))
        hits = await store.list_audits(cache_status="hit")

        assert [a.created_at for a in by_user] == [NOW - timedelta(minutes=30), NOW - timedelta(hours=2)]
        assert len(recent) == 2
        assert [a.user_id for a in hits] == ["u1"]
        assert len(await store.list_audits(computation_source="computation")) == 2

    @pytest.mark.asyncio
    async def test_performance_stats(self, store):
        """Test window statistics."""
        await store.insert_audit(make_audit("u1", NOW - timedelta(minutes=5), cache_status="hit", time_ms=2))
        await store.insert_audit(make_audit("u1", NOW - timedelta(minutes=4), cache_status="miss", time_ms=10))
        await store.insert_audit(make_audit("u2", NOW - timedelta(minutes=3), cache_status="miss", time_ms=30))
        await store.insert_audit(make_audit("u2", NOW - timedelta(days=2), cache_status="miss", time_ms=999))

        stats = await store.audit_performance_stats(NOW - timedelta(hours=1))

        assert stats["total_requests"] == 3
        assert stats["avg_computation_time_ms"] == 14
        assert stats["max_computation_time_ms"] == 30
        assert stats["min_computation_time_ms"] == 2
        assert stats["cache_hits"] == 1
        assert stats["cache_misses"] == 2
        assert stats["cache_hit_ratio"] == pytest.approx(100 / 3)

    @pytest.mark.asyncio
    async def test_slowest_and_retention(self, store):
        """Test slowest listing and retention purge."""
        await store.insert_audit(make_audit("u1", NOW - timedelta(days=100), time_ms=50))
        await store.insert_audit(make_audit("u1", NOW, time_ms=5))

        slowest = await store.slowest_audits(1)
        removed = await store.delete_audits_older_than(NOW - timedelta(days=90))

        assert slowest[0].computation_time_ms == 50
        assert removed == 1
        assert await store.count_audits("u1") == 1

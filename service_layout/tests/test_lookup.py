"""
Unit tests for cache-first layer lookups.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from service_layout.app.cache.tiers import CacheTier
from service_layout.app.persistence.memory import InMemoryLayoutStore
from service_layout.app.resolution.lookup import OverrideLookup, PreferenceLookup, TemplateLookup
from service_layout.app.resolution.models import (
    CacheStatus, GroupOverride, RoleTemplate, UserPreference
)
from service_layout.app.resolution.parser import group_hash

NOW = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)
EMEA_MANAGERS = "CN=EMEA-Managers,OU=Groups,DC=corp,DC=com"
UK_ANALYSTS = "CN=UK-Analysts,OU=Groups,DC=corp,DC=com"


def make_override(group_dn: str, priority: int = 100, **payload) -> GroupOverride:
    return GroupOverride(group_hash=group_hash(group_dn), group_dn=group_dn, priority=priority, **payload)


class TestOverrideLookup:
    """Test cases for OverrideLookup."""

    @pytest.fixture
    def store(self):
        """Create an in-memory store."""
        return InMemoryLayoutStore()

    @pytest.fixture
    def lookup(self, store):
        """Create the lookup."""
        return OverrideLookup(store, CacheTier("overrides", ttl_seconds=60, max_entries=100))

    @pytest.mark.asyncio
    async def test_results_sorted_by_priority(self, store, lookup):
        """Test ascending priority order regardless of identifier order."""
        await store.save_override(make_override(EMEA_MANAGERS, priority=50))
        await store.save_override(make_override(UK_ANALYSTS, priority=10))

        result = await lookup.find([EMEA_MANAGERS, UK_ANALYSTS])

        assert [o.priority for o in result.items] == [10, 50]
        assert result.store_matches == 2
        assert result.cache_hits == 0

    @pytest.mark.asyncio
    async def test_second_lookup_served_from_cache(self, store, lookup):
        """Test matched overrides are cached by group hash."""
        await store.save_override(make_override(EMEA_MANAGERS))
        await lookup.find([EMEA_MANAGERS])

        store.find_overrides_by_group_dns = AsyncMock(return_value=[])
        result = await lookup.find([EMEA_MANAGERS])

        assert len(result.items) == 1
        assert result.cache_hits == 1
        store.find_overrides_by_group_dns.assert_not_called()

    @pytest.mark.asyncio
    async def test_unmatched_identifiers_skipped(self, store, lookup):
        """Test identifiers without overrides yield nothing."""
        result = await lookup.find(["CN=Readers", "CN=Readers"])

        assert result.items == []
        assert result.requested == ["CN=Readers"]

    @pytest.mark.asyncio
    async def test_retired_overrides_ignored(self, store, lookup):
        """Test retired overrides are not returned."""
        override = await store.save_override(make_override(EMEA_MANAGERS))
        await store.retire_override(override.group_hash)

        result = await lookup.find([EMEA_MANAGERS])

        assert result.items == []


class TestTemplateLookup:
    """Test cases for TemplateLookup."""

    @pytest.fixture
    def store(self):
        """Create an in-memory store."""
        return InMemoryLayoutStore()

    @pytest.fixture
    def lookup(self, store):
        """Create the lookup."""
        return TemplateLookup(store, CacheTier("templates", ttl_seconds=60, max_entries=100))

    @pytest.mark.asyncio
    async def test_templates_in_candidate_order(self, store, lookup):
        """Test results follow role candidate order, not layout priority."""
        await store.save_template(RoleTemplate(role_name="ANALYST", display_name="Analyst", layout_priority=1))
        await store.save_template(RoleTemplate(role_name="MANAGER", display_name="Manager", layout_priority=99))

        result = await lookup.find([UK_ANALYSTS, EMEA_MANAGERS])

        assert [t.role_name for t in result.items] == ["ANALYST", "MANAGER"]

    @pytest.mark.asyncio
    async def test_missing_templates_skipped(self, store, lookup):
        """Test candidates without a template are skipped."""
        await store.save_template(RoleTemplate(role_name="MANAGER", display_name="Manager"))

        result = await lookup.find([UK_ANALYSTS, EMEA_MANAGERS])

        assert result.requested == ["ANALYST", "MANAGER"]
        assert [t.role_name for t in result.items] == ["MANAGER"]

    @pytest.mark.asyncio
    async def test_lookup_is_case_sensitive(self, store, lookup):
        """Test a lower-case role name does not match a hint."""
        await store.save_template(RoleTemplate(role_name="manager", display_name="Manager"))

        result = await lookup.find([EMEA_MANAGERS])

        assert result.items == []

    @pytest.mark.asyncio
    async def test_templates_cached(self, store, lookup):
        """Test a second lookup does not hit the store."""
        await store.save_template(RoleTemplate(role_name="MANAGER", display_name="Manager"))
        await lookup.find([EMEA_MANAGERS])

        store.get_template = AsyncMock(return_value=None)
        result = await lookup.find([EMEA_MANAGERS])

        assert result.cache_hits == 1
        assert [t.role_name for t in result.items] == ["MANAGER"]
        store.get_template.assert_not_called()


class TestPreferenceLookup:
    """Test cases for PreferenceLookup."""

    @pytest.fixture
    def store(self):
        """Create an in-memory store."""
        return InMemoryLayoutStore()

    @pytest.fixture
    def cache(self):
        """Create the preference tier."""
        return CacheTier("preferences", ttl_seconds=4 * 3600, max_entries=100)

    @pytest.fixture
    def lookup(self, store, cache):
        """Create the lookup."""
        return PreferenceLookup(store, cache)

    @pytest.mark.asyncio
    async def test_miss(self, lookup):
        """Test no stored preference is a miss."""
        preference, status = await lookup.find("user-1", NOW)

        assert preference is None
        assert status == CacheStatus.MISS

    @pytest.mark.asyncio
    async def test_hit_from_store_is_cached(self, store, cache, lookup):
        """Test a valid stored preference is a hit and gets cached."""
        await store.save_preference(UserPreference(
            user_id="user-1",
            computed_layout={"defaultColumns": ["a"]},
            cache_expiry=NOW + timedelta(hours=1)
        ))

        preference, status = await lookup.find("user-1", NOW)

        assert status == CacheStatus.HIT
        assert preference.computed_layout == {"defaultColumns": ["a"]}
        assert cache.get("user-1") is not None

    @pytest.mark.asyncio
    async def test_expired_preference(self, store, lookup):
        """Test an expired preference is reported and not returned."""
        await store.save_preference(UserPreference(
            user_id="user-1",
            computed_layout={},
            cache_expiry=NOW
        ))

        preference, status = await lookup.find("user-1", NOW)

        assert preference is None
        assert status == CacheStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_cached_preference_expires(self, cache, lookup):
        """Test a cached preference past its expiry is invalidated."""
        lookup.remember(UserPreference(
            user_id="user-1",
            computed_layout={},
            cache_expiry=NOW + timedelta(minutes=5)
        ), NOW)

        preference, status = await lookup.find("user-1", NOW + timedelta(minutes=5))

        assert preference is None
        assert status == CacheStatus.EXPIRED
        assert len(cache) == 0

    def test_remember_bounded_by_expiry(self, cache, lookup):
        """Test already expired preferences are not cached."""
        lookup.remember(UserPreference(
            user_id="user-1",
            computed_layout={},
            cache_expiry=NOW - timedelta(seconds=1)
        ), NOW)

        assert len(cache) == 0

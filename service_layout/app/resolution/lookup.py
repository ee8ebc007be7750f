"""
Cache-first lookups for the three resolution layers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, List, Optional, Sequence, Tuple, TypeVar

from shared.logging import get_logger
from ..cache.tiers import CacheTier
from ..persistence.base import LayoutStore
from .models import CacheStatus, GroupOverride, RoleTemplate, UserPreference, utcnow
from .parser import group_hash, role_candidates

T = TypeVar("T")


@dataclass
class LookupResult(Generic[T]):
    """Matched records plus where they came from."""
    items: List[T] = field(default_factory=list)
    requested: List[str] = field(default_factory=list)
    cache_hits: int = 0
    store_matches: int = 0


class OverrideLookup:
    """Active group overrides for a set of identifiers, ascending by priority."""

    def __init__(self, store: LayoutStore, cache: CacheTier):
        self.store = store
        self.cache = cache
        self.logger = get_logger("layout.lookup.overrides")

    async def find(self, identifiers: Sequence[str]) -> LookupResult[GroupOverride]:
        result: LookupResult[GroupOverride] = LookupResult()
        matched = {}
        pending: List[str] = []

        for identifier in dict.fromkeys(identifiers):
            result.requested.append(identifier)
            key = group_hash(identifier)
            cached = self.cache.get(key)
            if cached is not None:
                matched[key] = cached
                result.cache_hits += 1
            else:
                pending.append(identifier)

        if pending:
            for override in await self.store.find_overrides_by_group_dns(pending):
                key = group_hash(override.group_dn)
                self.cache.put(key, override)
                matched[key] = override
                result.store_matches += 1

        # Unmatched identifiers are normal and silently skipped
        result.items = sorted(matched.values(), key=lambda o: o.sort_key)
        self.logger.debug(
            "Override lookup",
            requested=len(result.requested),
            matched=len(result.items),
            cache_hits=result.cache_hits
        )
        return result


class TemplateLookup:
    """Active role templates for the role hints found in a set of identifiers.

    Results keep role-candidate order; they are not sorted by layout priority.
    """

    def __init__(self, store: LayoutStore, cache: CacheTier):
        self.store = store
        self.cache = cache
        self.logger = get_logger("layout.lookup.templates")

    async def find(self, identifiers: Sequence[str]) -> LookupResult[RoleTemplate]:
        result: LookupResult[RoleTemplate] = LookupResult(requested=role_candidates(identifiers))

        for role_name in result.requested:
            template = self.cache.get(role_name)
            if template is not None:
                result.cache_hits += 1
            else:
                template = await self.store.get_template(role_name)
                if template is None:
                    continue
                self.cache.put(role_name, template)
                result.store_matches += 1
            result.items.append(template)

        self.logger.debug(
            "Template lookup",
            candidates=result.requested,
            matched=[t.role_name for t in result.items]
        )
        return result


class PreferenceLookup:
    """Cached user preference, classified as hit, miss or expired."""

    def __init__(self, store: LayoutStore, cache: CacheTier):
        self.store = store
        self.cache = cache
        self.logger = get_logger("layout.lookup.preferences")

    async def find(
        self,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> Tuple[Optional[UserPreference], CacheStatus]:
        now = now or utcnow()

        preference = self.cache.get(user_id)
        if preference is None:
            preference = await self.store.get_preference(user_id)
            if preference is None:
                return None, CacheStatus.MISS
            if not preference.is_expired(now):
                self.remember(preference, now)

        if preference.is_expired(now):
            self.cache.invalidate(user_id)
            self.logger.debug("Preference expired", user_id=user_id, cache_expiry=preference.cache_expiry.isoformat())
            return None, CacheStatus.EXPIRED

        return preference, CacheStatus.HIT

    def remember(self, preference: UserPreference, now: Optional[datetime] = None):
        """Cache a preference no longer than its own expiry."""
        remaining = (preference.cache_expiry - (now or utcnow())).total_seconds()
        if remaining > 0:
            self.cache.put(preference.user_id, preference, ttl=min(self.cache.ttl_seconds, remaining))

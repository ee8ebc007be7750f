"""
In-memory store for local runs and tests.
"""

import copy
import itertools
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from shared.logging import get_logger
from .base import LayoutStore
from ..resolution.models import (
    ComputationAudit, GroupOverride, RecordStatus, RoleTemplate, UserPreference, utcnow
)


class InMemoryLayoutStore(LayoutStore):
    """Dict-backed store. Records are copied in and out, like rows."""

    def __init__(self):
        self.logger = get_logger("layout.persistence.memory")
        self.templates: Dict[str, RoleTemplate] = {}
        self.overrides: Dict[str, GroupOverride] = {}
        self.preferences: Dict[str, UserPreference] = {}
        self.audits: List[ComputationAudit] = []
        self._audit_ids = itertools.count(1)

    async def start(self):
        self.logger.info("In-memory store started")

    # Role templates

    async def get_template(self, role_name: str, ignore_case: bool = False) -> Optional[RoleTemplate]:
        if ignore_case:
            wanted = role_name.lower()
            matches = [t for name, t in self.templates.items() if name.lower() == wanted and t.is_active]
            return copy.deepcopy(matches[0]) if matches else None

        template = self.templates.get(role_name)
        if template is None or not template.is_active:
            return None
        return copy.deepcopy(template)

    async def list_templates(
        self,
        market: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> List[RoleTemplate]:
        templates = [
            t for t in self.templates.values()
            if t.is_active
            and (market is None or market in t.markets)
            and (environment is None or environment in t.environments)
        ]
        templates.sort(key=lambda t: (t.layout_priority, t.role_name))
        return copy.deepcopy(templates)

    async def save_template(self, template: RoleTemplate) -> RoleTemplate:
        existing = self.templates.get(template.role_name)
        stored = copy.deepcopy(template)
        if existing is not None:
            stored.created_at = existing.created_at
        stored.updated_at = utcnow()
        self.templates[template.role_name] = stored
        return copy.deepcopy(stored)

    async def retire_template(self, role_name: str) -> bool:
        template = self.templates.get(role_name)
        if template is None or not template.is_active:
            return False
        template.status = RecordStatus.RETIRED
        template.updated_at = utcnow()
        return True

    async def count_templates(self) -> int:
        return sum(1 for t in self.templates.values() if t.is_active)

    # Group overrides

    async def get_override(self, group_hash: str) -> Optional[GroupOverride]:
        override = self.overrides.get(group_hash)
        if override is None or not override.is_active:
            return None
        return copy.deepcopy(override)

    async def find_overrides_by_group_dns(self, group_dns: Sequence[str]) -> List[GroupOverride]:
        wanted = set(group_dns)
        matches = [o for o in self.overrides.values() if o.is_active and o.group_dn in wanted]
        matches.sort(key=lambda o: o.sort_key)
        return copy.deepcopy(matches)

    async def list_overrides(
        self,
        market: Optional[str] = None,
        function: Optional[str] = None,
        environment: Optional[str] = None,
        max_priority: Optional[int] = None,
    ) -> List[GroupOverride]:
        matches = [
            o for o in self.overrides.values()
            if o.is_active
            and (market is None or o.parsed_market == market)
            and (function is None or o.parsed_function == function)
            and (environment is None or o.parsed_environment == environment)
            and (max_priority is None or o.priority < max_priority)
        ]
        matches.sort(key=lambda o: o.sort_key)
        return copy.deepcopy(matches)

    async def save_override(self, override: GroupOverride) -> GroupOverride:
        existing = self.overrides.get(override.group_hash)
        stored = copy.deepcopy(override)
        if existing is not None:
            stored.created_at = existing.created_at
        stored.updated_at = utcnow()
        self.overrides[override.group_hash] = stored
        return copy.deepcopy(stored)

    async def retire_override(self, group_hash: str) -> bool:
        override = self.overrides.get(group_hash)
        if override is None or not override.is_active:
            return False
        override.status = RecordStatus.RETIRED
        override.updated_at = utcnow()
        return True

    async def count_overrides_by_market(self, market: str) -> int:
        return sum(1 for o in self.overrides.values() if o.is_active and o.parsed_market == market)

    # User preferences

    async def get_preference(self, user_id: str) -> Optional[UserPreference]:
        preference = self.preferences.get(user_id)
        return copy.deepcopy(preference) if preference is not None else None

    async def save_preference(self, preference: UserPreference) -> UserPreference:
        self.preferences[preference.user_id] = copy.deepcopy(preference)
        return copy.deepcopy(preference)

    async def delete_preference(self, user_id: str) -> bool:
        return self.preferences.pop(user_id, None) is not None

    async def delete_expired_preferences(self, now: datetime) -> int:
        expired = [uid for uid, p in self.preferences.items() if p.is_expired(now)]
        for user_id in expired:
            del self.preferences[user_id]
        return len(expired)

    async def count_preferences(self, now: datetime) -> Tuple[int, int]:
        expired = sum(1 for p in self.preferences.values() if p.is_expired(now))
        return len(self.preferences) - expired, expired

    # Computation audit

    async def insert_audit(self, audit: ComputationAudit) -> int:
        stored = copy.deepcopy(audit)
        stored.audit_id = next(self._audit_ids)
        self.audits.append(stored)
        return stored.audit_id

    async def list_audits(
        self,
        user_id: Optional[str] = None,
        cache_status: Optional[str] = None,
        computation_source: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[ComputationAudit]:
        matches = [
            a for a in self.audits
            if (user_id is None or a.user_id == user_id)
            and (cache_status is None or a.cache_status == cache_status)
            and (computation_source is None or a.computation_source == computation_source)
            and (since is None or a.created_at > since)
            and (until is None or a.created_at <= until)
        ]
        matches.sort(key=lambda a: (a.created_at, a.audit_id), reverse=True)
        if limit:
            matches = matches[:limit]
        return copy.deepcopy(matches)

    async def slowest_audits(self, limit: int = 10) -> List[ComputationAudit]:
        ordered = sorted(self.audits, key=lambda a: a.computation_time_ms, reverse=True)
        return copy.deepcopy(ordered[:limit])

    async def count_audits(self, user_id: str) -> int:
        return sum(1 for a in self.audits if a.user_id == user_id)

    async def delete_audits_older_than(self, before: datetime) -> int:
        kept = [a for a in self.audits if a.created_at >= before]
        removed = len(self.audits) - len(kept)
        self.audits = kept
        return removed

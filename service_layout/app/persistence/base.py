"""
Backing store interface for the layout service.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..resolution.models import ComputationAudit, GroupOverride, RoleTemplate, UserPreference


class LayoutStore(ABC):
    """Key-value/query provider for templates, overrides, preferences and audits.

    Read methods that take no status argument only return active records.
    Implementations raise ``shared.errors.StoreError`` on any backend failure.
    """

    async def start(self):
        """Open connections."""

    async def stop(self):
        """Release connections."""

    async def health_check(self) -> bool:
        return True

    # Role templates

    @abstractmethod
    async def get_template(self, role_name: str, ignore_case: bool = False) -> Optional[RoleTemplate]:
        """Active template by exact (or case-insensitive) role name."""

    @abstractmethod
    async def list_templates(
        self,
        market: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> List[RoleTemplate]:
        """Active templates ordered by layout priority then role name."""

    @abstractmethod
    async def save_template(self, template: RoleTemplate) -> RoleTemplate:
        """Insert or replace by role name."""

    @abstractmethod
    async def retire_template(self, role_name: str) -> bool:
        """Soft-delete an active template. Returns False if none was active."""

    @abstractmethod
    async def count_templates(self) -> int:
        """Number of active templates."""

    # Group overrides

    @abstractmethod
    async def get_override(self, group_hash: str) -> Optional[GroupOverride]:
        """Active override by group hash."""

    @abstractmethod
    async def find_overrides_by_group_dns(self, group_dns: Sequence[str]) -> List[GroupOverride]:
        """Active overrides whose identifier is in ``group_dns``, by (priority, hash)."""

    @abstractmethod
    async def list_overrides(
        self,
        market: Optional[str] = None,
        function: Optional[str] = None,
        environment: Optional[str] = None,
        max_priority: Optional[int] = None,
    ) -> List[GroupOverride]:
        """Active overrides matching every given filter, by (priority, hash)."""

    @abstractmethod
    async def save_override(self, override: GroupOverride) -> GroupOverride:
        """Insert or replace by group hash."""

    @abstractmethod
    async def retire_override(self, group_hash: str) -> bool:
        """Soft-delete an active override. Returns False if none was active."""

    @abstractmethod
    async def count_overrides_by_market(self, market: str) -> int:
        """Number of active overrides for a market."""

    # User preferences

    @abstractmethod
    async def get_preference(self, user_id: str) -> Optional[UserPreference]:
        """Preference row regardless of expiry."""

    @abstractmethod
    async def save_preference(self, preference: UserPreference) -> UserPreference:
        """Insert or replace by user id."""

    @abstractmethod
    async def delete_preference(self, user_id: str) -> bool:
        """Hard delete. Returns whether a row existed."""

    @abstractmethod
    async def delete_expired_preferences(self, now: datetime) -> int:
        """Remove rows with ``cache_expiry <= now``."""

    @abstractmethod
    async def count_preferences(self, now: datetime) -> Tuple[int, int]:
        """(valid, expired) row counts."""

    # Computation audit

    @abstractmethod
    async def insert_audit(self, audit: ComputationAudit) -> int:
        """Append an audit record and return its id."""

    @abstractmethod
    async def list_audits(
        self,
        user_id: Optional[str] = None,
        cache_status: Optional[str] = None,
        computation_source: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[ComputationAudit]:
        """Audit records matching every given filter, newest first."""

    @abstractmethod
    async def slowest_audits(self, limit: int = 10) -> List[ComputationAudit]:
        """Audit records with the highest computation time."""

    @abstractmethod
    async def count_audits(self, user_id: str) -> int:
        """Number of audit records for a user."""

    @abstractmethod
    async def delete_audits_older_than(self, before: datetime) -> int:
        """Retention purge."""

    async def audit_performance_stats(self, since: datetime) -> Dict[str, Any]:
        """Aggregate timing and cache statistics for audits created after ``since``."""
        audits = await self.list_audits(since=since, limit=0)
        return summarize_audits(audits)


def summarize_audits(audits: Sequence[ComputationAudit]) -> Dict[str, Any]:
    """Count, timing and hit-ratio summary for a set of audits."""
    times = [a.computation_time_ms for a in audits]
    hits = sum(1 for a in audits if a.cache_status == "hit")
    misses = sum(1 for a in audits if a.cache_status == "miss")
    expired = sum(1 for a in audits if a.cache_status == "expired")
    lookups = hits + misses + expired
    return {
        "total_requests": len(audits),
        "avg_computation_time_ms": sum(times) / len(times) if times else 0.0,
        "max_computation_time_ms": max(times) if times else 0,
        "min_computation_time_ms": min(times) if times else 0,
        "cache_hits": hits,
        "cache_misses": misses,
        "cache_expired": expired,
        "cache_hit_ratio": hits / lookups * 100 if lookups else 0.0,
    }

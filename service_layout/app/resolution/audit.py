"""
Audit trail for layout resolutions.
"""

from typing import Any, Dict, Optional, TYPE_CHECKING

from shared.logging import get_logger
from ..persistence.base import LayoutStore
from .models import ComputationAudit, GroupOverride, ResolutionContext

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


def summarize_override(override: GroupOverride) -> Dict[str, Any]:
    return {
        "groupHash": override.group_hash,
        "groupDn": override.group_dn,
        "priority": override.priority,
        "parsedMarket": override.parsed_market,
        "parsedFunction": override.parsed_function,
        "parsedEnvironment": override.parsed_environment,
    }


class AuditRecorder:
    """Writes exactly one audit record per resolution attempt.

    A failed write is logged and dropped; it never propagates to the
    resolution that triggered it and is never retried.
    """

    def __init__(self, store: LayoutStore, metrics: Optional["MetricsCollector"] = None):
        self.store = store
        self.metrics = metrics
        self.logger = get_logger("layout.audit")

    def build(self, context: ResolutionContext) -> ComputationAudit:
        result = context.result
        final_layout = None
        if result is not None:
            final_layout = {
                "sections": result.sections,
                "market": result.market,
                "theme": result.theme,
                "computationSource": result.computation_source,
            }

        return ComputationAudit(
            user_id=context.user_id or "",
            user_email=context.user_email,
            group_identifiers=list(context.group_identifiers),
            matched_overrides=[summarize_override(o) for o in context.matched_overrides],
            base_roles=list(context.base_roles),
            computation_steps=list(context.steps),
            conflict_resolutions=list(context.conflicts),
            final_layout=final_layout,
            computation_time_ms=result.computation_time_ms if result is not None else context.elapsed_ms(),
            cache_status=context.cache_status.value,
            computation_source=context.computation_source.value,
        )

    async def record(self, context: ResolutionContext) -> Optional[int]:
        """Persist the audit for ``context``. Returns the audit id, or None on failure."""
        try:
            audit = self.build(context)
            audit_id = await self.store.insert_audit(audit)
        except Exception as e:
            self.logger.error(
                "Audit write failed",
                user_id=context.user_id,
                error=str(e),
                error_type=type(e).__name__
            )
            if self.metrics:
                self.metrics.increment_counter("audit_write_failures_total", error_type=type(e).__name__)
            return None

        self.logger.debug(
            "Audit recorded",
            audit_id=audit_id,
            user_id=audit.user_id,
            cache_status=audit.cache_status,
            computation_source=audit.computation_source
        )
        return audit_id


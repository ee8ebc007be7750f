"""
Layered layout resolution engine.

A resolution combines three layers for one user:

1. the first role template matched through the role hints in the user's
   group identifiers,
2. every active group override matching one of those identifiers,
3. a still-valid cached user preference, which always wins when present.

Overrides and templates are looked up again on every call, including on a
preference cache hit. Exactly one audit record is written per call,
whether it succeeds or fails.
"""

import copy
import time
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, TYPE_CHECKING

from shared.errors import ComputationError, ValidationError
from shared.logging import get_logger
from ..cache.tiers import LayoutCaches
from ..persistence.base import LayoutStore
from .audit import AuditRecorder
from .lookup import OverrideLookup, PreferenceLookup, TemplateLookup
from .models import (
    CacheStatus, ComputationSource, FinalLayout, GroupOverride, LayoutSection, Market,
    ResolutionContext, RoleTemplate, UserPreference, DEFAULT_PREFERENCE_TTL, utcnow
)
from .parser import parse_group, resolve_market

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


TEMPLATE_SECTIONS = (
    (LayoutSection.DEFAULT_COLUMNS, "default_columns"),
    (LayoutSection.AVAILABLE_WIDGETS, "available_widgets"),
    (LayoutSection.DEFAULT_ACTIONS, "default_actions"),
    (LayoutSection.SETTINGS_ACCESS, "settings_access"),
    (LayoutSection.DEFAULT_THEME, "default_theme"),
)

OVERRIDE_SECTIONS = (
    (LayoutSection.GROUP_LAYOUT_OVERRIDE, "layout_overrides"),
    (LayoutSection.DATA_RESTRICTIONS, "data_restrictions"),
    (LayoutSection.VISUAL_CUSTOMIZATIONS, "visual_customizations"),
)

PREFERENCE_SECTIONS = (
    (LayoutSection.USER_COMPUTED_LAYOUT, "computed_layout"),
    (LayoutSection.USER_MARKET_THEME, "market_theme"),
    (LayoutSection.USER_EFFECTIVE_PERMISSIONS, "effective_permissions"),
)

PERMISSION_SECTIONS = (
    LayoutSection.DEFAULT_ACTIONS.value,
    LayoutSection.SETTINGS_ACCESS.value,
    LayoutSection.DATA_RESTRICTIONS.value,
)

MARKET_THEMES: Dict[str, Dict[str, str]] = {
    Market.EMEA.value: {"name": "emea", "color": "blue", "primary": "#1e3a8a", "secondary": "#3b82f6"},
    Market.UK.value: {"name": "uk", "color": "red", "primary": "#991b1b", "secondary": "#ef4444"},
    Market.US.value: {"name": "us", "color": "green", "primary": "#166534", "secondary": "#22c55e"},
    Market.APAC.value: {"name": "apac", "color": "purple", "primary": "#6b21a8", "secondary": "#a855f7"},
    Market.GLOBAL.value: {"name": "global", "color": "neutral", "primary": "#374151", "secondary": "#9ca3af"},
}


def market_theme(market: str) -> Dict[str, str]:
    """Palette for a market code; unknown codes get the GLOBAL palette."""
    return dict(MARKET_THEMES.get(market, MARKET_THEMES[Market.GLOBAL.value]))


def merge_base_layers(
    templates: Sequence[RoleTemplate],
    overrides: Sequence[GroupOverride],
    context: Optional[ResolutionContext] = None,
) -> Dict[str, Any]:
    """Template defaults with group overrides applied on top.

    Only the first template contributes. ``overrides`` must be ascending by
    (priority, group hash); they are applied in reverse so that the lowest
    priority value is written last and wins every section it sets.
    """
    layout: Dict[str, Any] = {}

    if templates:
        primary = templates[0]
        for section, attr in TEMPLATE_SECTIONS:
            value = getattr(primary, attr)
            if value is not None:
                layout[section.value] = copy.deepcopy(value)
        if context is not None and len(templates) > 1:
            context.add_conflict(
                "template",
                winner=primary.role_name,
                discarded=[t.role_name for t in templates[1:]],
                rule="first matched template only"
            )

    writers: Dict[str, List[str]] = {}
    for override in reversed(overrides):
        for section, attr in OVERRIDE_SECTIONS:
            value = getattr(override, attr)
            if value is not None:
                layout[section.value] = copy.deepcopy(value)
                writers.setdefault(section.value, []).append(override.group_dn)

    if context is not None:
        for section, group_dns in writers.items():
            if len(group_dns) > 1:
                context.add_conflict(
                    section,
                    winner=group_dns[-1],
                    discarded=group_dns[:-1],
                    rule="lowest priority value wins"
                )

    return layout


def layer_preference(layout: Dict[str, Any], preference: Optional[UserPreference]) -> Dict[str, Any]:
    """Copy of ``layout`` with the user's preference sections on top."""
    merged = dict(layout)
    if preference is not None:
        for section, attr in PREFERENCE_SECTIONS:
            value = getattr(preference, attr)
            if value is not None:
                merged[section.value] = copy.deepcopy(value)
    return merged


def build_preference(
    user_id: str,
    layout: Dict[str, Any],
    market: str,
    base_roles: Sequence[str],
    now: datetime,
    ttl: timedelta = DEFAULT_PREFERENCE_TTL,
    user_email: Optional[str] = None,
) -> UserPreference:
    """Preference row for a freshly computed base layout.

    ``layout`` must not contain user sections so preferences never nest.
    """
    permissions = {
        section: copy.deepcopy(layout[section])
        for section in PERMISSION_SECTIONS
        if section in layout
    }
    return UserPreference(
        user_id=user_id,
        user_email=user_email,
        computed_layout=copy.deepcopy(layout),
        market_theme=market_theme(market),
        effective_permissions=permissions,
        primary_market=market,
        base_roles=list(base_roles),
        cache_expiry=now + ttl,
        last_computed_at=now,
        computation_source=ComputationSource.COMPUTATION.value,
    )


class LayoutMergeEngine:
    """Resolves the final layout for a user and a list of group identifiers."""

    def __init__(
        self,
        store: LayoutStore,
        caches: LayoutCaches,
        *,
        audit_recorder: Optional[AuditRecorder] = None,
        metrics: Optional["MetricsCollector"] = None,
        write_back: bool = True,
        preference_ttl: timedelta = DEFAULT_PREFERENCE_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.caches = caches
        self.metrics = metrics
        self.write_back = write_back
        self.preference_ttl = preference_ttl
        self.logger = get_logger("layout.engine")
        self._clock = clock

        self.preference_lookup = PreferenceLookup(store, caches.preferences)
        self.override_lookup = OverrideLookup(store, caches.overrides)
        self.template_lookup = TemplateLookup(store, caches.templates)
        self.audit = audit_recorder or AuditRecorder(store, metrics)

    async def resolve(
        self,
        user_id: Optional[str],
        group_identifiers: Optional[Sequence[str]],
        user_email: Optional[str] = None,
    ) -> FinalLayout:
        """Compute the final layout.

        Raises ``ValidationError`` for a missing user id or group list and
        ``ComputationError`` when any lookup fails. No partial layout is ever
        returned.
        """
        context = ResolutionContext(
            user_id=user_id,
            group_identifiers=list(group_identifiers or []),
            user_email=user_email,
        )
        start_time = time.time()
        outcome = "error"

        try:
            self._validate(user_id, group_identifiers)
            self.logger.info(
                "Starting layout computation",
                user_id=user_id,
                user_email=user_email,
                group_count=len(context.group_identifiers)
            )
            layout = await self._compute(context)
            outcome = "success"
            self.logger.info(
                "Layout computation completed",
                user_id=user_id,
                market=layout.market,
                cache_status=layout.cache_status,
                computation_time_ms=layout.computation_time_ms
            )
            return layout

        except ValidationError as e:
            context.computation_source = ComputationSource.ERROR
            context.error = e.message
            context.add_step("validation_failed", reason=e.message)
            self.logger.warning("Rejected layout request", user_id=user_id, reason=e.message)
            raise

        except Exception as e:
            context.computation_source = ComputationSource.ERROR
            context.error = str(e)
            context.result = None
            context.add_step("computation_failed", error=str(e), error_type=type(e).__name__)
            self.logger.error("Error computing layout", user_id=user_id, error=str(e))
            raise ComputationError(
                "Layout computation failed",
                details={"user_id": user_id, "cause": str(e)}
            ) from e

        finally:
            await self.audit.record(context)
            if self.metrics:
                self.metrics.record_resolution(context.cache_status.value, outcome, time.time() - start_time)

    def _validate(self, user_id: Optional[str], group_identifiers: Optional[Sequence[str]]):
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("userId is required")
        if not group_identifiers:
            raise ValidationError("groupIdentifiers must not be empty")
        missing = [i for i, g in enumerate(group_identifiers) if not isinstance(g, str)]
        if missing:
            raise ValidationError("groupIdentifiers must not contain null entries", details={"positions": missing})

    async def _compute(self, context: ResolutionContext) -> FinalLayout:
        now = self._clock()
        user_id = context.user_id
        groups = context.group_identifiers
        context.add_step("input", user_id=user_id, group_identifiers=groups)

        preference, cache_status = await self.preference_lookup.find(user_id, now)
        context.cache_status = cache_status
        if cache_status == CacheStatus.HIT:
            context.computation_source = ComputationSource.CACHE
        context.add_step("preference_lookup", cache_status=cache_status.value)

        context.add_step("group_attributes", groups=[asdict(parse_group(g)) for g in groups])

        overrides = await self.override_lookup.find(groups)
        context.matched_overrides = overrides.items
        context.add_step(
            "override_lookup",
            requested=len(overrides.requested),
            matched=[o.group_dn for o in overrides.items],
            cache_hits=overrides.cache_hits,
            store_matches=overrides.store_matches
        )

        templates = await self.template_lookup.find(groups)
        context.base_roles = [t.role_name for t in templates.items]
        context.add_step(
            "template_lookup",
            candidates=templates.requested,
            matched=context.base_roles,
            cache_hits=templates.cache_hits,
            store_matches=templates.store_matches
        )

        market = resolve_market(groups)
        context.market = market
        context.add_step("market_resolution", market=market)

        base_layout = merge_base_layers(templates.items, overrides.items, context)
        sections = layer_preference(base_layout, preference)
        context.add_step(
            "merge",
            base_sections=sorted(base_layout),
            preference_applied=preference is not None,
            sections=sorted(sections)
        )

        if self.write_back and cache_status != CacheStatus.HIT:
            await self._write_back(context, base_layout, market, now)

        layout = FinalLayout(
            user_id=user_id,
            sections=sections,
            market=market,
            computation_source=context.computation_source.value,
            cache_status=cache_status.value,
            computation_time_ms=context.elapsed_ms(),
            theme=market_theme(market),
        )
        context.result = layout
        return layout

    async def _write_back(self, context: ResolutionContext, base_layout: Dict[str, Any], market: str, now: datetime):
        """Store the fresh base layout as the user's preference. Failures are not fatal."""
        preference = build_preference(
            context.user_id,
            base_layout,
            market,
            context.base_roles,
            now,
            ttl=self.preference_ttl,
            user_email=context.user_email,
        )
        try:
            saved = await self.store.save_preference(preference)
        except Exception as e:
            self.logger.warning("Preference write-back failed", user_id=context.user_id, error=str(e))
            context.add_step("preference_write_back_failed", error=str(e))
            return

        self.preference_lookup.remember(saved, now)
        context.add_step("preference_write_back", cache_expiry=saved.cache_expiry.isoformat())

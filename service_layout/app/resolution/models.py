"""
Layout resolution data models.
"""

import time
from typing import Dict, Any, Optional, List, Union
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# Opaque structured payload (object, array or scalar). The merge engine copies
# these through without interpreting them beyond presence/absence.
JSONDocument = Union[Dict[str, Any], List[Any], str, int, float, bool, None]

DEFAULT_PREFERENCE_TTL = timedelta(hours=4)
DEFAULT_OVERRIDE_PRIORITY = 100


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class Market(str, Enum):
    """Market codes derived from group identifiers."""
    EMEA = "EMEA"
    UK = "UK"
    US = "US"
    APAC = "APAC"
    GLOBAL = "GLOBAL"


class RecordStatus(str, Enum):
    """Lifecycle status of administrator-managed records."""
    ACTIVE = "active"
    RETIRED = "retired"


class CacheStatus(str, Enum):
    """Whether a cached user preference satisfied the request."""
    HIT = "hit"
    MISS = "miss"
    EXPIRED = "expired"


class ComputationSource(str, Enum):
    """Where a layout or preference came from."""
    CACHE = "cache"
    COMPUTATION = "computation"
    FALLBACK = "fallback"
    API = "api"
    ERROR = "error"


class LayoutSection(str, Enum):
    """Named sections of a final layout."""
    DEFAULT_COLUMNS = "defaultColumns"
    AVAILABLE_WIDGETS = "availableWidgets"
    DEFAULT_ACTIONS = "defaultActions"
    SETTINGS_ACCESS = "settingsAccess"
    DEFAULT_THEME = "defaultTheme"
    GROUP_LAYOUT_OVERRIDE = "adGroupLayoutOverride"
    DATA_RESTRICTIONS = "dataRestrictions"
    VISUAL_CUSTOMIZATIONS = "visualCustomizations"
    USER_COMPUTED_LAYOUT = "userComputedLayout"
    USER_MARKET_THEME = "userMarketTheme"
    USER_EFFECTIVE_PERMISSIONS = "userEffectivePermissions"


@dataclass(frozen=True)
class GroupAttributes:
    """Attributes parsed out of a single group identifier."""
    identifier: str
    market: str
    function: Optional[str] = None
    environment: Optional[str] = None
    role_hint: Optional[str] = None


@dataclass
class RoleTemplate:
    """Base layout for a role."""
    role_name: str
    display_name: str
    description: Optional[str] = None
    default_columns: JSONDocument = None
    available_widgets: JSONDocument = None
    default_actions: JSONDocument = None
    settings_access: JSONDocument = None
    default_theme: JSONDocument = None
    layout_priority: int = 0
    markets: List[str] = field(default_factory=list)
    environments: List[str] = field(default_factory=list)
    status: RecordStatus = RecordStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == RecordStatus.ACTIVE


@dataclass
class GroupOverride:
    """Group-scoped patch applied on top of a role template."""
    group_hash: str
    group_dn: str
    parsed_market: str = Market.GLOBAL.value
    parsed_function: Optional[str] = None
    parsed_environment: Optional[str] = None
    layout_overrides: JSONDocument = None
    data_restrictions: JSONDocument = None
    visual_customizations: JSONDocument = None
    priority: int = DEFAULT_OVERRIDE_PRIORITY
    status: RecordStatus = RecordStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == RecordStatus.ACTIVE

    @property
    def sort_key(self):
        """Ascending priority, ties broken by group hash."""
        return (self.priority, self.group_hash)


@dataclass
class UserPreference:
    """Previously computed per-user layout."""
    user_id: str
    computed_layout: JSONDocument
    user_email: Optional[str] = None
    market_theme: JSONDocument = None
    effective_permissions: JSONDocument = None
    primary_market: Optional[str] = None
    base_roles: List[str] = field(default_factory=list)
    cache_expiry: datetime = field(default_factory=lambda: utcnow() + DEFAULT_PREFERENCE_TTL)
    last_computed_at: datetime = field(default_factory=utcnow)
    computation_source: str = ComputationSource.COMPUTATION.value

    def __post_init__(self):
        if self.cache_expiry is None:
            self.cache_expiry = self.last_computed_at + DEFAULT_PREFERENCE_TTL

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.cache_expiry <= (now or utcnow())


@dataclass
class ComputationAudit:
    """Append-only record of one resolution attempt."""
    user_id: str
    group_identifiers: List[str]
    cache_status: str
    computation_source: str
    computation_time_ms: int
    user_email: Optional[str] = None
    matched_overrides: List[Dict[str, Any]] = field(default_factory=list)
    base_roles: List[str] = field(default_factory=list)
    computation_steps: List[Dict[str, Any]] = field(default_factory=list)
    conflict_resolutions: List[Dict[str, Any]] = field(default_factory=list)
    final_layout: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    audit_id: Optional[int] = None


@dataclass
class FinalLayout:
    """Fully merged, user-specific layout."""
    user_id: str
    sections: Dict[str, Any]
    market: str
    computation_source: str
    cache_status: str
    computation_time_ms: int
    theme: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ResolutionContext:
    """Mutable state of one in-flight resolution, handed to the audit recorder."""
    user_id: Optional[str]
    group_identifiers: List[str]
    user_email: Optional[str] = None
    cache_status: CacheStatus = CacheStatus.MISS
    computation_source: ComputationSource = ComputationSource.COMPUTATION
    market: Optional[str] = None
    matched_overrides: List[GroupOverride] = field(default_factory=list)
    base_roles: List[str] = field(default_factory=list)
    steps: List[Dict[str, Any]] = field(default_factory=list)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)
    result: Optional[FinalLayout] = None
    error: Optional[str] = None
    started_at: float = field(default_factory=time.perf_counter)

    def add_step(self, name: str, **details):
        self.steps.append({"step": len(self.steps) + 1, "name": name, "details": details})

    def add_conflict(self, section: str, winner: str, discarded: List[str], rule: str):
        self.conflicts.append({
            "section": section,
            "winner": winner,
            "discarded": discarded,
            "rule": rule,
        })

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started_at) * 1000)


# API models

class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class LayoutComputationRequest(ApiModel):
    """Request model for layout computation."""
    user_id: Optional[str] = Field(None, description="User ID")
    group_identifiers: Optional[List[Optional[str]]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("groupIdentifiers", "group_identifiers", "adGroups"),
        description="Ordered group identifiers (directory DNs)"
    )
    user_email: Optional[str] = Field(None, description="User email, recorded in the audit trail")


class LayoutComputationResponse(ApiModel):
    """Response model for layout computation."""
    user_id: Optional[str] = None
    layout: Dict[str, Any] = Field(default_factory=dict)
    theme: Optional[Dict[str, Any]] = None
    market: Optional[str] = None
    computation_source: str
    cache_status: Optional[str] = None
    computation_time_ms: int = 0
    timestamp: datetime = Field(default_factory=utcnow)
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def from_layout(cls, layout: FinalLayout) -> "LayoutComputationResponse":
        return cls(
            user_id=layout.user_id,
            layout=layout.sections,
            theme=layout.theme,
            market=layout.market,
            computation_source=layout.computation_source,
            cache_status=layout.cache_status,
            computation_time_ms=layout.computation_time_ms,
            timestamp=layout.timestamp,
        )


class RoleTemplateRequest(ApiModel):
    """Request model for creating or replacing a role template."""
    role_name: Optional[str] = Field(None, description="Unique role name")
    display_name: str = Field(..., description="Display name")
    description: Optional[str] = None
    default_columns: Any = None
    available_widgets: Any = None
    default_actions: Any = None
    settings_access: Any = None
    default_theme: Any = None
    layout_priority: int = 0
    markets: List[str] = Field(default_factory=list)
    environments: List[str] = Field(default_factory=list)


class RoleTemplateResponse(ApiModel):
    """Response model for role template operations."""
    role_name: str
    display_name: str
    description: Optional[str]
    default_columns: Any
    available_widgets: Any
    default_actions: Any
    settings_access: Any
    default_theme: Any
    layout_priority: int
    markets: List[str]
    environments: List[str]
    status: RecordStatus
    created_at: datetime
    updated_at: datetime


class GroupOverrideRequest(ApiModel):
    """Request model for creating or replacing a group override."""
    group_dn: str = Field(..., description="Raw group identifier")
    parsed_market: Optional[str] = None
    parsed_function: Optional[str] = None
    parsed_environment: Optional[str] = None
    layout_overrides: Any = None
    data_restrictions: Any = None
    visual_customizations: Any = None
    priority: int = DEFAULT_OVERRIDE_PRIORITY


class GroupOverrideResponse(ApiModel):
    """Response model for group override operations."""
    group_hash: str
    group_dn: str
    parsed_market: str
    parsed_function: Optional[str]
    parsed_environment: Optional[str]
    layout_overrides: Any
    data_restrictions: Any
    visual_customizations: Any
    priority: int
    status: RecordStatus
    created_at: datetime
    updated_at: datetime


class UserPreferenceRequest(ApiModel):
    """Request model for storing a user preference."""
    user_id: str
    computed_layout: Any
    user_email: Optional[str] = None
    market_theme: Any = None
    effective_permissions: Any = None
    primary_market: Optional[str] = None
    base_roles: List[str] = Field(default_factory=list)


class UserPreferenceResponse(ApiModel):
    """Response model for user preference operations."""
    user_id: str
    user_email: Optional[str]
    computed_layout: Any
    market_theme: Any
    effective_permissions: Any
    primary_market: Optional[str]
    base_roles: List[str]
    cache_expiry: datetime
    last_computed_at: datetime
    computation_source: str


class ComputationAuditResponse(ApiModel):
    """Response model for audit entries."""
    audit_id: Optional[int]
    user_id: str
    user_email: Optional[str]
    group_identifiers: List[str]
    matched_overrides: List[Dict[str, Any]]
    base_roles: List[str]
    computation_steps: List[Dict[str, Any]]
    conflict_resolutions: List[Dict[str, Any]]
    final_layout: Optional[Dict[str, Any]]
    computation_time_ms: int
    cache_status: str
    computation_source: str
    created_at: datetime

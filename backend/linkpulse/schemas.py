from enum import Enum
from typing import Any, Dict, List, Optional, Union
from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class LinkState(str, Enum):
    """Lifecycle state of a link. VIRAL is display-only and never gates redirects."""

    ACTIVE = "active"
    PAUSED = "paused"
    EXPIRED = "expired"
    DEAD = "dead"
    VIRAL = "viral"


class DeviceClass(str, Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"
    BOT = "bot"


class ContextField(str, Enum):
    """Attributes of a RedirectContext that rule conditions may reference."""

    COUNTRY = "country"
    LANGUAGE = "language"
    HOUR = "hour"
    DAY_OF_WEEK = "day_of_week"
    DEVICE = "device"
    OS = "os"
    BROWSER = "browser"
    CAMPAIGN = "campaign"
    REFERRER = "referrer"

    @classmethod
    def _missing_(cls, value):
        # Rules authored from the dashboard use camelCase
        if value == "dayOfWeek":
            return cls.DAY_OF_WEEK
        return None


class RuleOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    IN = "in"
    NIN = "nin"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"


class ScriptAction(str, Enum):
    REDIRECT = "redirect"
    PAUSE = "pause"
    NOTIFY = "notify"
    SWITCH_TARGET = "switch_target"


class ScriptTrigger(str, Enum):
    CLICK = "click"
    THRESHOLD = "threshold"
    SCHEDULE = "schedule"


class RedirectContext(BaseModel):
    """
    Normalized view of an inbound redirect request.
    Every field is optional: None means unknown, never false.
    """

    country: Optional[str] = None
    language: Optional[str] = None
    hour: Optional[int] = None
    day_of_week: Optional[int] = None
    device: Optional[DeviceClass] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    campaign: Optional[str] = None
    referrer: Optional[str] = None

    def value_of(self, field: ContextField) -> Union[str, int, None]:
        """Return the plain value for a context field (enums unwrapped)."""
        value = getattr(self, field.value)
        if isinstance(value, Enum):
            return value.value
        return value


class RuleCondition(BaseModel):
    field: ContextField
    operator: RuleOperator
    value: Union[int, float, str, List[str]]


class RedirectRule(BaseModel):
    id: str
    priority: int = 0
    conditions: List[RuleCondition] = Field(default_factory=list)
    target_url: str
    active: bool = True


class LinkLimits(BaseModel):
    max_clicks: Optional[int] = None
    max_clicks_per_day: Optional[int] = None
    expires_at: Optional[datetime] = None
    valid_from: Optional[datetime] = None
    allowed_countries: List[str] = Field(default_factory=list)
    blocked_countries: List[str] = Field(default_factory=list)

    @field_validator("allowed_countries", "blocked_countries")
    @classmethod
    def upper_country_codes(cls, v):
        return [code.upper() for code in v]


class LinkScript(BaseModel):
    id: str
    trigger: ScriptTrigger = ScriptTrigger.CLICK
    condition: str
    action: ScriptAction
    action_params: Dict[str, Any] = Field(default_factory=dict)


class LinkSnapshot(BaseModel):
    """Read-only view of a link, consistent enough for a single redirect decision."""

    id: int
    short_code: str
    original_url: str
    default_target_url: str
    owner_id: Optional[str] = None
    state: LinkState = LinkState.ACTIVE
    health_score: int = 100
    trust_score: int = 100
    rules: List[RedirectRule] = Field(default_factory=list)
    scripts: List[LinkScript] = Field(default_factory=list)
    limits: LinkLimits = Field(default_factory=LinkLimits)
    total_clicks: int = 0
    unique_clicks: int = 0
    clicks_today: int = 0
    last_click_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class GeoLocation(BaseModel):
    country: Optional[str] = None
    city: Optional[str] = None


class FraudAnalysis(BaseModel):
    is_bot: bool
    is_suspicious: bool
    fraud_score: int
    reasons: List[str]
    fingerprint: str


class ResolvedTarget(BaseModel):
    """
    Outcome of the redirect engine.
    `denied` carries the reason code when the link state or a limit blocked
    the real destination; it is None for rule matches and the default target.
    """

    url: str
    rule_id: Optional[str] = None
    denied: Optional[str] = None


class ScriptResult(BaseModel):
    script_id: str
    action: ScriptAction
    params: Dict[str, Any] = Field(default_factory=dict)


class ClickEventData(BaseModel):
    """Everything needed to append one click event."""

    link_id: int
    ip: str
    ip_hash: str
    user_agent: str = ""
    fingerprint: str
    country: Optional[str] = None
    city: Optional[str] = None
    device: str = "unknown"
    os: str = "unknown"
    browser: str = "unknown"
    language: Optional[str] = None
    referrer: Optional[str] = None
    is_bot: bool = False
    is_suspicious: bool = False
    fraud_score: int = 0
    fraud_reasons: List[str] = Field(default_factory=list)
    redirected_to: str
    rule_applied: Optional[str] = None
    response_time_ms: int = 0


class LinkPreviewResponse(BaseModel):
    """Response schema for link preview."""

    short_code: str
    target_url: str
    state: LinkState
    total_clicks: int
    created_at: Optional[datetime] = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: bool
    redis: bool
    version: str

import uuid
from datetime import datetime
from enum import Enum
from typing import NamedTuple
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from consentvault.core.clock import as_utc
from consentvault.core.config import settings

class ConsentStatus(str, Enum):
    NEVER_GIVEN = "NEVER_GIVEN"
    ACTIVE = "ACTIVE"
    EXPIRING = "EXPIRING"
    GRACE = "GRACE"
    EXPIRED = "EXPIRED"
    WITHDRAWN = "WITHDRAWN"

class RenewalUrgency(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

class ReminderOffset(str, Enum):
    # declaration order is the order reminders fire in
    DAYS_30 = "30d"
    DAYS_14 = "14d"
    DAYS_7 = "7d"
    DAYS_1 = "1d"
    GRACE_ENTRY = "grace_entry"
    GRACE_EXPIRY = "grace_expiry"

class ConsentVersion(NamedTuple):
    """The fields a transition must see unchanged before it may write."""
    expires_at: datetime | None
    withdrawn_at: datetime | None
    renewal_count: int

# ---- Engine inputs ----

class ConsentRecord(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: uuid.UUID | None = None
    given: bool = False
    given_at: datetime | None = None
    expires_at: datetime | None = None
    withdrawn_at: datetime | None = None
    withdrawal_reason: str | None = None
    duration_months: int | None = None
    auto_renew: bool = False
    renewed_at: datetime | None = None
    renewal_count: int = Field(default=0, ge=0)
    last_reminder_offset: ReminderOffset | None = None
    clause_version: str | None = None

    @field_validator("given_at", "expires_at", "withdrawn_at", "renewed_at")
    @classmethod
    def _utc(cls, v: datetime | None):
        return as_utc(v) if v is not None else None

    @model_validator(mode="after")
    def _expiry_requires_grant(self):
        if self.expires_at is not None and not self.given:
            raise ValueError("expires_at may only be set on a given consent")
        return self

    @property
    def version(self) -> ConsentVersion:
        return ConsentVersion(self.expires_at, self.withdrawn_at, self.renewal_count)

class ConsentPolicy(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    grace_period_days: int = Field(default=settings.CONSENT_DEFAULT_GRACE_PERIOD_DAYS, ge=0)
    default_consent_duration: int = Field(default=12, ge=1)
    min_consent_duration: int = Field(default=1, ge=1)
    max_consent_duration: int = Field(default=60, ge=1)
    allow_auto_renewal: bool = False

    @model_validator(mode="after")
    def _range(self):
        if self.min_consent_duration > self.max_consent_duration:
            raise ValueError("min_consent_duration must not exceed max_consent_duration")
        return self

# ---- Engine outputs ----

class StatusView(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: ConsentStatus
    is_accessible: bool
    days_remaining: int | None
    expires_at: datetime | None
    grace_period_ends_at: datetime | None
    can_renew: bool
    renewal_urgency: RenewalUrgency
    message: str

class StatusBadge(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    color: str = Field(..., pattern="^(green|yellow|orange|red|gray)$")
    icon: str = Field(..., pattern="^(check|clock|alert|x|minus)$")

# ---- Templates ----

class ConsentTemplateCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    grace_period_days: int = Field(default=settings.CONSENT_DEFAULT_GRACE_PERIOD_DAYS, ge=0)
    default_consent_duration: int = Field(default=12, ge=1)
    min_consent_duration: int = Field(default=1, ge=1)
    max_consent_duration: int = Field(default=60, ge=1)
    allow_auto_renewal: bool = False

    @model_validator(mode="after")
    def _range(self):
        if not (self.min_consent_duration <= self.default_consent_duration <= self.max_consent_duration):
            raise ValueError("default_consent_duration must lie within [min_consent_duration, max_consent_duration]")
        return self

class ConsentTemplateOut(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    title: str
    grace_period_days: int
    default_consent_duration: int
    min_consent_duration: int
    max_consent_duration: int
    allow_auto_renewal: bool

    class Config:
        from_attributes = True

# ---- Consents ----

class ConsentCreate(BaseModel):
    patient_id: uuid.UUID
    template_id: uuid.UUID
    given: bool = True
    duration_months: int | None = Field(default=None, ge=1)
    auto_renew: bool = False
    clause_version: str | None = Field(default=None, max_length=64)

class ConsentOut(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    patient_id: uuid.UUID
    template_id: uuid.UUID
    given: bool
    given_at: datetime | None
    expires_at: datetime | None
    withdrawn_at: datetime | None
    withdrawal_reason: str | None
    duration_months: int | None
    auto_renew: bool
    renewed_at: datetime | None
    renewal_count: int
    clause_version: str | None
    view: StatusView
    badge: StatusBadge

class ConsentWithdraw(BaseModel):
    reason: str | None = Field(default=None, max_length=500)

class ConsentRenew(BaseModel):
    duration_months: int | None = None

class ConsentRenewalOut(BaseModel):
    id: uuid.UUID
    consent_id: uuid.UUID
    renewed_at: datetime
    previous_expires_at: datetime | None
    new_expires_at: datetime
    renewed_by: str
    duration_months: int

    class Config:
        from_attributes = True

class ConsentEventOut(BaseModel):
    id: uuid.UUID
    event_type: str
    occurred_at: datetime
    status: str  # pending | processing | sent
    payload: dict

    class Config:
        from_attributes = True

class ConsentSummary(BaseModel):
    patient_id: uuid.UUID
    total: int
    by_status: dict[ConsentStatus, int]
    accessible: int
    urgent_renewals: int
    earliest_expiry: datetime | None

# ---- Jobs ----

class JobItem(BaseModel):
    consent_id: uuid.UUID
    applied: bool
    detail: str | None = None
    previous_expires_at: datetime | None = None
    new_expires_at: datetime | None = None
    offset: ReminderOffset | None = None

class JobReport(BaseModel):
    dry_run: bool
    processed: int
    applied: int
    failed: int
    items: list[JobItem]

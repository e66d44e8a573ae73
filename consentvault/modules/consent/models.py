import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Boolean, Integer, ForeignKey, Index
from consentvault.core.base import Base, TimestampedTenantMixin, UTCDateTime

class ConsentTemplate(Base, TimestampedTenantMixin):
    # consent configuration of a form template; read-only to the engine
    title: Mapped[str] = mapped_column(String(200))
    grace_period_days: Mapped[int] = mapped_column(Integer, default=30)
    default_consent_duration: Mapped[int] = mapped_column(Integer, default=12)  # months
    min_consent_duration: Mapped[int] = mapped_column(Integer, default=1)
    max_consent_duration: Mapped[int] = mapped_column(Integer, default=60)
    allow_auto_renewal: Mapped[bool] = mapped_column(Boolean, default=False)

class Consent(Base, TimestampedTenantMixin):
    __table_args__ = (Index("ix_consent_org_patient", "org_id", "patient_id"),)

    patient_id: Mapped[uuid.UUID] = mapped_column()
    template_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("consenttemplate.id"))
    clause_version: Mapped[str | None] = mapped_column(String(64), nullable=True)

    given: Mapped[bool] = mapped_column(Boolean, default=False)
    given_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    withdrawn_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)  # never cleared
    withdrawal_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    duration_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=False)
    renewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    renewal_count: Mapped[int] = mapped_column(Integer, default=0)
    last_reminder_offset: Mapped[str | None] = mapped_column(String(16), nullable=True)  # 30d | 14d | 7d | 1d | grace_entry | grace_expiry

class ConsentRenewal(Base, TimestampedTenantMixin):
    consent_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("consent.id"), index=True)
    renewed_at: Mapped[datetime] = mapped_column(UTCDateTime())
    previous_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    new_expires_at: Mapped[datetime] = mapped_column(UTCDateTime())
    renewed_by: Mapped[str] = mapped_column(String(16))  # patient | provider | auto
    duration_months: Mapped[int] = mapped_column(Integer)

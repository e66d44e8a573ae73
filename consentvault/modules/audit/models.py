import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String
from consentvault.core.base import Base, TimestampedTenantMixin, UTCDateTime, utcnow

class AuditEvent(Base, TimestampedTenantMixin):
    # who / tenant
    actor_user_id: Mapped[uuid.UUID] = mapped_column()
    # What happened
    action: Mapped[str] = mapped_column(String(24))  # read | capture | renew | withdraw | reminder
    resource_type: Mapped[str] = mapped_column(String(48))  # consent | consent_template
    resource_id: Mapped[str] = mapped_column(String(64))
    purpose: Mapped[str | None] = mapped_column(String(64), nullable=True)
    detail: Mapped[str | None] = mapped_column(String(500), nullable=True)
    success: Mapped[bool] = mapped_column(default=True)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(256), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

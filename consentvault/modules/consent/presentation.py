from typing import assert_never
from consentvault.modules.consent.schemas import ConsentStatus, StatusBadge

def status_badge(status: ConsentStatus) -> StatusBadge:
    # exhaustive: a new ConsentStatus member fails type checking here
    match status:
        case ConsentStatus.ACTIVE:
            return StatusBadge(label="Active", color="green", icon="check")
        case ConsentStatus.EXPIRING:
            return StatusBadge(label="Expiring Soon", color="yellow", icon="clock")
        case ConsentStatus.GRACE:
            return StatusBadge(label="Grace Period", color="orange", icon="alert")
        case ConsentStatus.EXPIRED:
            return StatusBadge(label="Expired", color="red", icon="x")
        case ConsentStatus.WITHDRAWN:
            return StatusBadge(label="Withdrawn", color="gray", icon="x")
        case ConsentStatus.NEVER_GIVEN:
            return StatusBadge(label="No Consent", color="gray", icon="minus")
        case _:
            assert_never(status)

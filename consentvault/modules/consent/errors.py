import uuid

class ConsentError(Exception):
    """Base for recoverable consent lifecycle errors."""

class ConsentNotFound(ConsentError):
    def __init__(self, consent_id: uuid.UUID):
        self.consent_id = consent_id
        super().__init__(f"Consent {consent_id} not found")

class InvalidTransition(ConsentError):
    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Cannot {operation} consent: {reason}")

class DurationOutOfRange(ConsentError):
    def __init__(self, requested: int, minimum: int, maximum: int):
        self.requested = requested
        self.minimum = minimum
        self.maximum = maximum
        super().__init__(
            f"Consent duration of {requested} months is outside the allowed range "
            f"of {minimum} to {maximum} months"
        )

class StaleConsentState(ConsentError):
    def __init__(self, consent_id: uuid.UUID):
        self.consent_id = consent_id
        super().__init__(f"Consent {consent_id} was modified concurrently; refetch and retry")

class TemplateNotFound(ConsentError):
    def __init__(self, template_id: uuid.UUID):
        self.template_id = template_id
        super().__init__(f"Consent template {template_id} not found")

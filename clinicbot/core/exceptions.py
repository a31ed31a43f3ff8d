"""
Domain exceptions.

Every error raised by the core carries a short machine-readable code so
API routes can map it to a response without string matching.
"""


class ClinicBotError(Exception):
    """Base class for domain errors."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(ClinicBotError):
    """Input rejected before any side effect."""
    code = "VALIDATION_ERROR"


class NotFoundError(ClinicBotError):
    """Referenced entity does not exist."""
    code = "NOT_FOUND"


class SlotConflictError(ClinicBotError):
    """The requested slot was booked by someone else."""
    code = "SLOT_TAKEN"


class ProviderConfigError(ClinicBotError):
    """A messaging provider is missing required credentials."""
    code = "PROVIDER_NOT_CONFIGURED"


class SignatureError(ClinicBotError):
    """Webhook signature or token did not verify."""
    code = "INVALID_SIGNATURE"

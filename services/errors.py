# Domain errors raised by the escrow services
# Routers translate these into HTTP responses; provider failures are raised
# as core.payments.ProviderError and pass through unchanged.


class EscrowError(Exception):
    """Base class for escrow workflow errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(EscrowError):
    pass


class Forbidden(EscrowError):
    pass


class InvalidState(EscrowError):
    """The entity is not in a state that allows the requested transition."""


class ValidationFailed(EscrowError):
    """Input rejected before any side effect took place."""

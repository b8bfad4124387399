class TicketServiceError(RuntimeError):
    """Base error for ticket service issues."""


class TicketValidationError(TicketServiceError):
    """Raised when input is missing or malformed."""


class TicketAccessDeniedError(TicketServiceError):
    """Raised when the caller may see a ticket but not perform the action."""


class TicketNotFoundError(TicketServiceError):
    """Raised when a ticket does not exist or is invisible to the caller."""


class BookingNotFoundError(TicketNotFoundError):
    """Raised when a referenced booking does not exist."""


class TicketNumberConflictError(TicketServiceError):
    """Raised when a ticket number is already taken."""


class InvalidTicketTransitionError(TicketServiceError):
    """Raised when attempting to transition to an invalid state."""

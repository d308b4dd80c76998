from .async_utils import error_message, guarded_call
from .cancellation import CancellationToken
from .errors import ExitCancelledError, ExitError
from .fallback import AttemptFailure, FallbackExhaustedError, FallbackOutcome, try_in_order
from .logging import log_event, sanitize_text, sanitize_value

__all__ = [
    "AttemptFailure",
    "CancellationToken",
    "ExitCancelledError",
    "ExitError",
    "FallbackExhaustedError",
    "FallbackOutcome",
    "error_message",
    "guarded_call",
    "log_event",
    "sanitize_text",
    "sanitize_value",
    "try_in_order",
]

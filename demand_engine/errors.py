"""Exception types raised by the demand engine."""

from typing import Optional


class DemandEngineError(Exception):
    """Base class for demand engine errors."""


class InvalidEventType(DemandEngineError, ValueError):
    """Event kind is not one of the known demand signals."""

    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"Unknown event type: {event_type!r}")


class InvalidEvent(DemandEngineError, ValueError):
    """Event is structurally incomplete (missing barcode, voter key, submission id)."""
    pass


class UnknownBarcode(DemandEngineError, LookupError):
    """Read-only query for a barcode that has no demand record."""

    def __init__(self, barcode: str):
        self.barcode = barcode
        super().__init__(f"No demand record for barcode {barcode}")


class DuplicateSubmission(DemandEngineError):
    """Photo contribution replayed with an already-recorded submission id."""

    def __init__(self, barcode: str, submission_id: str):
        self.barcode = barcode
        self.submission_id = submission_id
        super().__init__(f"Submission {submission_id} already recorded for {barcode}")


class ConcurrencyConflict(DemandEngineError, RuntimeError):
    """Optimistic write kept colliding; safe for the caller to retry."""

    def __init__(self, barcode: str, attempts: int, retry_after: Optional[int] = 1):
        self.barcode = barcode
        self.attempts = attempts
        self.retry_after = retry_after
        super().__init__(
            f"Concurrent updates to {barcode} did not settle after {attempts} attempts"
        )


class InvalidStatusTransition(DemandEngineError):
    """Lifecycle transition that skips a state or moves backward."""

    def __init__(self, barcode: str, from_status: str, to_status: str, reason: str = ""):
        self.barcode = barcode
        self.from_status = from_status
        self.to_status = to_status
        message = f"Cannot move {barcode} from {from_status} to {to_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InvalidCorrection(DemandEngineError, ValueError):
    """Administrative value outside its allowed range."""
    pass

from datetime import date


class BookingError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None):
        self.message = message or self.code.replace("_", " ").capitalize()
        super().__init__(self.message)


class ValidationFailed(BookingError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidDateRange(BookingError):
    code = "INVALID_DATE_RANGE"
    status_code = 400


class NotFound(BookingError):
    code = "NOT_FOUND"
    status_code = 404


class CapacityUnavailable(BookingError):
    code = "CAPACITY_UNAVAILABLE"
    status_code = 400

    def __init__(self, day: date, message: str | None = None):
        self.date = day
        super().__init__(message or f"No availability on {day.isoformat()}")


class InvalidState(BookingError):
    code = "INVALID_STATE"
    status_code = 400


class AlreadyCancelled(BookingError):
    code = "ALREADY_CANCELLED"
    status_code = 400


class NotCancellable(BookingError):
    code = "NOT_CANCELLABLE"
    status_code = 400


class CancellationWindowPassed(BookingError):
    code = "CANCELLATION_WINDOW_PASSED"
    status_code = 400


class AmountMismatch(BookingError):
    code = "AMOUNT_MISMATCH"
    status_code = 400


class SignatureInvalid(BookingError):
    code = "SIGNATURE_INVALID"
    status_code = 400


class PaymentError(BookingError):
    """Processor declined or failed; carries the processor's own code."""

    code = "PAYMENT_ERROR"
    status_code = 402

    def __init__(self, message: str, processor_code: str | None = None):
        self.processor_code = processor_code
        super().__init__(message)

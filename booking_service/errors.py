class BookingError(Exception):
    """Base for failures the booking core reports to its callers."""

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(BookingError):
    status_code = 404

    def __init__(self, what: str):
        super().__init__(f"{what} not found")
        self.what = what


class ConflictError(BookingError):
    status_code = 409

    def __init__(self, detail: str = "slot already booked"):
        super().__init__(detail)


class PaymentNotCompleted(BookingError):
    status_code = 402

    def __init__(self, detail: str = "payment has not been completed"):
        super().__init__(detail)


class ForbiddenError(BookingError):
    status_code = 403


class InvalidSlotError(BookingError):
    status_code = 400


class InvalidTransitionError(BookingError):
    status_code = 409


class PaymentGatewayError(BookingError):
    """Transient gateway failure; the client may retry with the same reservation."""

    status_code = 502


class CatalogUnavailableError(BookingError):
    status_code = 502


class InvalidRequestError(BookingError):
    status_code = 400

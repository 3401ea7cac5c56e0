class FinanceError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(FinanceError, ValueError):
    status_code = 400


class Conflict(InvalidInput):
    pass


class Forbidden(FinanceError):
    status_code = 403


class NotFound(FinanceError, ValueError):
    status_code = 404


class StoreUnavailable(FinanceError):
    status_code = 503

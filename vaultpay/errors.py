"""Error kinds raised by the payment workflow.

Every failure the service surfaces is one of four kinds. Callers branch on
the class (or ``kind``); the message is for humans.
"""


class PaymentError(Exception):
    kind = "payment_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def with_prefix(self, step: str) -> "PaymentError":
        """Return a copy of this error whose message names the failed step."""
        error = self.__class__.__new__(self.__class__)
        error.__dict__.update(self.__dict__)
        error.message = f"{step} failed: {self.message}"
        error.args = (error.message,)
        return error


class ValidationError(PaymentError):
    kind = "validation"
    status_code = 400


class NotFoundError(PaymentError):
    kind = "not_found"
    status_code = 404


class GatewayError(PaymentError):
    kind = "gateway"
    status_code = 502

    def __init__(self, message: str, upstream_status: int = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class PersistenceError(PaymentError):
    kind = "persistence"
    status_code = 500

    def __init__(self, message: str, conflict: bool = False):
        super().__init__(message)
        self.conflict = conflict
        if conflict:
            self.status_code = 409

"""Domain errors raised by the service layer.

Every error carries an HTTP status and a stable machine-readable code.
The app factory turns them into JSON responses:

    {"ok": false, "error": "<reason>", "code": "<CODE>"}
"""


class ServiceError(Exception):
    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message, code=None, status_code=None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"ok": False, "error": self.message, "code": self.code}


class ValidationError(ServiceError):
    status_code = 400
    code = "VALIDATION_ERROR"


class ForbiddenError(ServiceError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(ServiceError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Time-based conflicts (hold contention) are worth retrying later."""

    status_code = 409
    code = "CONFLICT"


class GoneError(ServiceError):
    status_code = 410
    code = "GONE"


class PaymentGatewayError(ServiceError):
    status_code = 502
    code = "PAYMENT_GATEWAY_ERROR"

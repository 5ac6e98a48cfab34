"""
Error taxonomy shared by every component.

Services raise these; the API layer renders them as {"message": ...}
with the matching status code.
"""


class ApiError(Exception):
    status_code = 500
    default_message = "Internal server error"
    retryable = False

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self):
        body = {"message": self.message}
        if self.retryable:
            body["retryable"] = True
        return body


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(ApiError):
    status_code = 403
    default_message = "Forbidden"


class NotAuthorized(Forbidden):
    """Valid token, but the operator record is missing, inactive or not mfg."""
    default_message = "Operator not authorized"


class NotFound(ApiError):
    status_code = 404
    default_message = "Not found"


class BadRequest(ApiError):
    status_code = 400
    default_message = "Bad request"


class NoAllowedFields(BadRequest):
    default_message = "No allowed fields to update"


class Conflict(ApiError):
    status_code = 409
    default_message = "Conflict"


class DispatchNumberConflict(Conflict):
    """Two issuers computed the same dispatch number; the caller may retry."""
    default_message = "Dispatch number already exists"
    retryable = True


class Internal(ApiError):
    status_code = 500
    default_message = "Internal server error"

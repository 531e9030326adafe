"""
Error taxonomy for the ticket desk.

Every caller-visible failure is an ``EventPassError`` carrying the HTTP status
it maps to and a stable ``kind`` string that ends up in the response body.
Nothing here is retried internally.
"""
from __future__ import annotations


class EventPassError(Exception):
    status_code = 500
    kind = "InternalError"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"success": False, "error": self.kind, "message": self.message}


class NotFound(EventPassError):
    status_code = 404
    kind = "NotFound"


class ValidationError(EventPassError):
    status_code = 400
    kind = "ValidationError"


class RegistrationClosed(EventPassError):
    status_code = 400
    kind = "RegistrationClosed"


class Conflict(EventPassError):
    status_code = 400
    kind = "Conflict"


class AlreadyRegistered(Conflict):
    kind = "AlreadyRegistered"


class AlreadyFinalized(Conflict):
    kind = "AlreadyFinalized"


class SecurityError(EventPassError):
    status_code = 400
    kind = "SecurityError"


class InvalidSignature(SecurityError):
    kind = "InvalidSignature"


class UpstreamError(EventPassError):
    status_code = 500
    kind = "UpstreamError"


class InternalError(EventPassError):
    status_code = 500
    kind = "InternalError"


# raised to check-in consumers of issued credentials
class InvalidCredential(EventPassError):
    status_code = 400
    kind = "InvalidCredential"


class ExpiredCredential(InvalidCredential):
    kind = "ExpiredCredential"


class DispatchError(Exception):
    pass


class ConfigError(Exception):
    pass

"""Base error type shared by the generation pipeline services."""
from typing import Optional


class AppError(Exception):
    """
    Base exception for the SOW pipeline.

    error_code is the stable category recorded on a FAILED record and in
    audit metadata; status_code is the HTTP mapping used by the routes.
    """
    error_code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code

    def to_dict(self):
        return {"error_code": self.error_code, "message": self.message}


class NotFound(AppError):
    error_code = "NOT_FOUND"
    status_code = 404


class Forbidden(AppError):
    error_code = "FORBIDDEN"
    status_code = 403

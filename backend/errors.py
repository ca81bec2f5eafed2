# errors.py - Error taxonomy with GRC-{DOMAIN}-{NUMBER} codes
#
# Every failure surfaced to API callers is one of five conditions
# (Unauthorized, Forbidden, NotFound, PreconditionFailed, InternalError),
# plus BadRequest and Conflict for malformed or clashing input.
# Each is an HTTPException so FastAPI renders it; main.py adds the code and
# request id to the response body.
from typing import Optional

from fastapi import HTTPException


ERROR_CATALOGUE = {
    # Authentication & Authorisation
    "GRC-AUTH-001": {"message": "Authentication required", "http_status": 401},
    "GRC-AUTH-002": {"message": "Token expired or invalid", "http_status": 401},
    "GRC-AUTH-003": {"message": "Insufficient permissions", "http_status": 403},
    "GRC-AUTH-004": {"message": "Account locked after too many failed attempts", "http_status": 429},
    "GRC-AUTH-005": {"message": "Invalid verification code", "http_status": 400},
    "GRC-AUTH-006": {"message": "Multi-factor authentication required", "http_status": 412},

    # Requests
    "GRC-REQ-001": {"message": "Bad request", "http_status": 400},

    # Database
    "GRC-DB-002": {"message": "Record not found", "http_status": 404},
    "GRC-DB-003": {"message": "Unique constraint violation", "http_status": 409},

    # Billing
    "GRC-BILL-001": {"message": "Plan does not include this feature", "http_status": 412},

    # System
    "GRC-SYS-001": {"message": "Internal server error", "http_status": 500},
    "GRC-SYS-004": {"message": "Request validation failed", "http_status": 422},
}


class GRCError(HTTPException):
    """Base for the fixed error taxonomy"""
    status_code = 500
    code = "GRC-SYS-001"

    def __init__(self, detail: Optional[str] = None, code: Optional[str] = None, headers: Optional[dict] = None):
        self.code = code or self.code
        super().__init__(
            status_code=self.status_code,
            detail=detail or ERROR_CATALOGUE[self.code]["message"],
            headers=headers,
        )


class Unauthorized(GRCError):
    status_code = 401
    code = "GRC-AUTH-001"

    def __init__(self, detail: Optional[str] = None, code: Optional[str] = None):
        super().__init__(detail, code, headers={"WWW-Authenticate": "Bearer"})


class Forbidden(GRCError):
    status_code = 403
    code = "GRC-AUTH-003"


class BadRequest(GRCError):
    status_code = 400
    code = "GRC-REQ-001"


class NotFound(GRCError):
    status_code = 404
    code = "GRC-DB-002"


class Conflict(GRCError):
    status_code = 409
    code = "GRC-DB-003"


class PreconditionFailed(GRCError):
    status_code = 412
    code = "GRC-AUTH-006"


class InternalError(GRCError):
    status_code = 500
    code = "GRC-SYS-001"

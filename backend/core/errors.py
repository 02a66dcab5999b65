"""Lifecycle error taxonomy.

Every rejection raised by the engines carries a human-readable message and
maps to one HTTP status. Out-of-scope lookups raise ``NotFound`` exactly like
missing rows so that other tenants' data cannot be probed.
"""

from fastapi import Request
from fastapi.responses import JSONResponse


class LifecycleError(Exception):
    status_code = 500
    code = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(LifecycleError):
    status_code = 400
    code = "validation"


class NotAuthorized(LifecycleError):
    status_code = 403
    code = "authorization"


class NotFound(LifecycleError):
    status_code = 404
    code = "not_found"


class StateConflict(LifecycleError):
    status_code = 409
    code = "state_conflict"


class DuplicateEntity(LifecycleError):
    status_code = 409
    code = "duplicate"


class VerificationFailed(LifecycleError):
    status_code = 400
    code = "verification_failed"


async def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "code": exc.code},
    )

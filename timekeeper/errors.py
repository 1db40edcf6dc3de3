from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class AlreadyActive(ApiError):
    def __init__(self, message: str = "You are already clocked in today."):
        super().__init__(409, "ALREADY_ACTIVE", message)


class NoActiveSession(ApiError):
    def __init__(self, message: str = "No active session. Clock in first."):
        super().__init__(409, "NO_ACTIVE_SESSION", message)


class BreakAlreadyOpen(ApiError):
    def __init__(self, message: str = "You are already on break."):
        super().__init__(409, "BREAK_ALREADY_OPEN", message)


class NoOpenBreak(ApiError):
    def __init__(self, message: str = "No active break to end."):
        super().__init__(409, "NO_OPEN_BREAK", message)


class InsufficientBalance(ApiError):
    def __init__(self, message: str = "Insufficient leave balance."):
        super().__init__(400, "INSUFFICIENT_BALANCE", message)


class SessionExists(ApiError):
    def __init__(self, message: str = "A time entry already exists for this user on this date."):
        super().__init__(409, "SESSION_EXISTS", message)


class InvalidState(ApiError):
    def __init__(self, message: str = "Invalid state."):
        super().__init__(400, "INVALID_STATE", message)


class NotAuthorized(ApiError):
    def __init__(self, message: str = "Insufficient permissions."):
        super().__init__(403, "NOT_AUTHORIZED", message)


class NotFound(ApiError):
    def __init__(self, message: str = "Not found."):
        super().__init__(404, "NOT_FOUND", message)


class ValidationFailed(ApiError):
    def __init__(self, message: str):
        super().__init__(422, "VALIDATION_FAILED", message)


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)

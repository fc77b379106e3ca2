from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Standard error payload returned by every endpoint:
    {
        "error": "rate_limit_exceeded",
        "message": "Message limit exceeded. Please sign up to continue.",
        "code": 429,
        "details": {...}
    }
    """

    error: str = Field(..., description="Machine-readable error type")
    message: str = Field(..., description="Human-readable error message")
    code: int = Field(..., description="HTTP status code for this error")
    details: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional structured error details"
    )


def http_error(
    status_code: int,
    *,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> HTTPException:
    """
    Helper to create an HTTPException with a standardised error body.
    """
    payload = ErrorResponse(
        error=error,
        message=message,
        code=status_code,
        details=details,
    )
    return HTTPException(status_code=status_code, detail=payload.model_dump(), headers=headers)


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_400_BAD_REQUEST, error="bad_request", message=message, details=details
    )


def unauthorized(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_401_UNAUTHORIZED,
        error="unauthorized",
        message=message,
        details=details,
        headers={"WWW-Authenticate": "Bearer"},
    )


def forbidden(
    message: str, *, error: str = "forbidden", details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    return http_error(
        status.HTTP_403_FORBIDDEN, error=error, message=message, details=details
    )


def not_found(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_404_NOT_FOUND, error="not_found", message=message, details=details
    )


def conflict(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_409_CONFLICT, error="conflict", message=message, details=details
    )


def too_many_requests(
    message: str,
    *,
    retry_after: int | None = None,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    headers = {"Retry-After": str(max(0, retry_after))} if retry_after is not None else None
    return http_error(
        status.HTTP_429_TOO_MANY_REQUESTS,
        error="rate_limit_exceeded",
        message=message,
        details=details,
        headers=headers,
    )


__all__ = [
    "ErrorResponse",
    "bad_request",
    "conflict",
    "forbidden",
    "http_error",
    "not_found",
    "too_many_requests",
    "unauthorized",
]

"""
Standardized response envelope for API endpoints.

Every JSON response has the shape:

    {"status_code": int, "message": str, "data": Any, "error": {"code", "message"} | None}

On errors, `data` carries the exception details (e.g. the id of the
operation holding a lock, or the precondition violations) so clients can act
on them without parsing messages.
"""

from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from custody.shared.exceptions import AppException


def success_response(
    status_code: int,
    message: str,
    data: Any = None
) -> dict:
    """
    Create a success response.

    Example:
        >>> success_response(200, "Delete requested", {"outcome": "sweep_required", "balance": "120"})
    """
    return {
        "status_code": status_code,
        "message": message,
        "data": data,
        "error": None
    }


def error_response(
    status_code: int,
    message: str,
    error_code: str,
    error_message: str,
    data: Optional[Dict[str, Any]] = None
) -> dict:
    """
    Create an error response.

    Example:
        >>> error_response(409, "Request rejected", "OPERATION_IN_PROGRESS",
        ...                "Another lifecycle operation is in progress", {"operation_id": "..."})
    """
    return {
        "status_code": status_code,
        "message": message,
        "data": data,
        "error": {
            "code": error_code,
            "message": error_message
        }
    }


def error_json_response(exc: AppException, message: str = "Request failed") -> JSONResponse:
    """Wrap an AppException in the envelope with its HTTP status."""
    response = error_response(
        status_code=exc.status_code,
        message=message,
        error_code=exc.code,
        error_message=exc.message,
        data=exc.details or None,
    )
    return JSONResponse(status_code=exc.status_code, content=response)

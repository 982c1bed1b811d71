"""
Translate automation domain errors into HTTP responses.
"""

from __future__ import annotations

from fastapi import HTTPException

from ..core.errors import AutomationError


STATUS_BY_CODE = {
    "VALIDATION_ERROR": 422,
    "CONFIRMATION_REQUIRED": 409,
    "PROVIDER_NOT_READY": 409,
    "NOT_FOUND": 404,
}


def http_error(exc: AutomationError) -> HTTPException:
    return HTTPException(status_code=STATUS_BY_CODE.get(exc.code, 400), detail=exc.to_dict())

"""
Error types and logging helpers shared across the automation backend.
"""

from __future__ import annotations

import logging
from typing import Any, Optional


def log_exception(
    logger: logging.Logger,
    message: str,
    *,
    exc: Optional[BaseException] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """Log an unexpected failure with traceback and structured context."""
    if extra:
        context = " ".join(f"{key}={value}" for key, value in extra.items())
        message = f"{message} ({context})"
    if exc is not None:
        logger.error("%s: %s", message, exc, exc_info=(type(exc), exc, exc.__traceback__))
    else:
        logger.exception(message)


def error_details(exc: BaseException) -> dict[str, Any]:
    return {"name": type(exc).__name__, "message": str(exc)}


class AutomationError(Exception):
    """Base class for automation errors surfaced to rule authors."""

    code = "AUTOMATION_ERROR"

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class RuleValidationError(AutomationError):
    code = "VALIDATION_ERROR"


class ConfirmationRequiredError(AutomationError):
    code = "CONFIRMATION_REQUIRED"


class ProviderNotReadyError(AutomationError):
    code = "PROVIDER_NOT_READY"


class RuleNotFoundError(AutomationError):
    code = "NOT_FOUND"


class ActionExecutionError(AutomationError):
    """Raised inside an action handler; recorded on the step, never propagated."""

    code = "ACTION_FAILED"


class MissingJobReferenceError(ActionExecutionError):
    code = "JOB_REFERENCE_MISSING"


class CommunicationError(ActionExecutionError):
    code = "COMMUNICATION_FAILED"

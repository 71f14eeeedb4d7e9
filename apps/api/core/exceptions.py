"""
Custom exception classes and error handling.

Two families live here:
- API exceptions: consistent HTTP error responses for the routers.
- Engine exceptions: raised by the habit store command surface when a
  command cannot apply. Rules-engine functions never raise for transient
  I/O or generator failures; those are caught at their boundary.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ValidationError(APIException):
    """Validation error."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            error_code=error_code
        )


class UnauthorizedError(APIException):
    """Authentication required."""

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="UNAUTHORIZED",
            headers={"WWW-Authenticate": "Bearer"}
        )


class ConflictError(APIException):
    """Resource conflict (e.g., stale batch)."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="CONFLICT"
        )


# ---------------------------------------------------------------------------
# Engine exceptions
# ---------------------------------------------------------------------------

class HabitEngineError(Exception):
    """Base class for habit engine command failures."""


class OnboardingRequiredError(HabitEngineError):
    """Command needs an identity and habit set that do not exist yet."""


class RecoveryOptionUnavailableError(HabitEngineError):
    """Chosen recovery remedy cannot apply (e.g. no shield left)."""


class NoPendingReviewError(HabitEngineError):
    """Weekly review command issued with no drafted review."""


class StagePromotionError(HabitEngineError):
    """Suggested stage promotion cannot be accepted."""


class RemoteStoreError(Exception):
    """Transient remote persistence failure (unreachable, rejected batch)."""


class StaleWriteError(RemoteStoreError):
    """Batch rejected because the remote replica is newer."""


class GenerationError(Exception):
    """Generative content call failed or returned a malformed payload."""

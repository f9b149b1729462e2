from typing import NoReturn

from fastapi import HTTPException, status

from src.core.automation import (
    AutomationConcurrencyError,
    AutomationRuleNotFoundError,
    AutomationStateConflictError,
    AutomationValidationError,
    RuleDeletionNotAllowedError,
    StorageError,
)
from src.core.common.async_calls import CollaboratorTimeoutError

_HTTP_422 = getattr(
    status, "HTTP_422_UNPROCESSABLE_CONTENT", status.HTTP_422_UNPROCESSABLE_ENTITY
)


def raise_automation_http_exception(exc: Exception) -> NoReturn:
    if isinstance(exc, AutomationRuleNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(
        exc,
        (AutomationConcurrencyError, AutomationStateConflictError, RuleDeletionNotAllowedError),
    ):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AutomationValidationError):
        raise HTTPException(status_code=_HTTP_422, detail=str(exc)) from exc
    if isinstance(exc, (StorageError, CollaboratorTimeoutError)):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
    raise exc

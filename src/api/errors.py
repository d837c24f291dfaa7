"""
Translation of alerting domain errors into HTTP errors.
"""

from fastapi import HTTPException, status

from src.alerts.errors import (
    AlertingError,
    AlreadyResolved,
    AlreadyTerminal,
    ConfigurationInvalid,
    InvalidReading,
    NotFound,
)

_STATUS_BY_ERROR: list[tuple[type[AlertingError], int]] = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (AlreadyResolved, status.HTTP_409_CONFLICT),
    (AlreadyTerminal, status.HTTP_409_CONFLICT),
    (ConfigurationInvalid, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidReading, status.HTTP_422_UNPROCESSABLE_ENTITY),
]


def http_error(exc: AlertingError) -> HTTPException:
    """Map a domain error to an HTTPException carrying its message."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=str(exc),
    )

"""Translate reward engine errors into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException

from spinloyal_api.services.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    RaceLostError,
    RewardEngineError,
    ValidationError,
)


_STATUS_BY_ERROR: tuple[tuple[type[RewardEngineError], int], ...] = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConfigurationError, 403),
    (ConflictError, 409),
    (RaceLostError, 409),
)


def http_error_for(exc: RewardEngineError) -> HTTPException:
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
        400,
    )
    detail = {"code": exc.code, "message": str(exc), **exc.context()}
    return HTTPException(status_code=status_code, detail=detail)


__all__ = ["http_error_for"]

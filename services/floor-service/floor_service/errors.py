from __future__ import annotations

import sqlite3
from typing import Optional

import psycopg


class ServiceError(Exception):
    """Base for every error a floor-service operation surfaces to its caller."""

    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        context: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context
        self.detail = detail


class ValidationError(ServiceError):
    """Raised for malformed or contradictory input."""

    status_code = 400


class NotFoundError(ServiceError):
    """Raised when a referenced order, payment or catalog entry is absent."""

    status_code = 404


class ConflictError(ServiceError):
    """Raised when a state-machine rule or invariant would be violated."""

    status_code = 409


class UnexpectedError(ServiceError):
    """Wraps a lower-layer failure such as a database driver exception."""

    status_code = 500


def handle_error(exc: Exception, context: str) -> ServiceError:
    if isinstance(exc, ServiceError):
        if exc.context is None:
            exc.context = context
        return exc

    if isinstance(exc, (sqlite3.IntegrityError, psycopg.IntegrityError)):
        return ConflictError(
            "Unique constraint violation",
            context=context,
            detail=f"Database operation failed: {exc}",
        )

    return UnexpectedError(
        "An unexpected error occurred",
        context=context,
        detail=str(exc),
    )

"""Domain error taxonomy raised by the dispatch/route core."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException


class DomainError(Exception):
    """Base error carrying a machine-readable kind and a human-readable message."""

    kind = "domain_error"
    http_status = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "error",
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(DomainError):
    kind = "not_found"
    http_status = 404


class ValidationError(DomainError):
    kind = "validation"
    http_status = 422


class InvalidStateError(DomainError):
    kind = "invalid_state"
    http_status = 409


class ConflictError(DomainError):
    kind = "conflict"
    http_status = 409


class PreconditionError(DomainError):
    kind = "precondition_failed"
    http_status = 412


class ForbiddenError(DomainError):
    kind = "forbidden"
    http_status = 403


def to_http_exception(exc: DomainError) -> HTTPException:
    """Translate a domain error into the HTTP error payload used by the routers."""
    return HTTPException(status_code=exc.http_status, detail=exc.to_dict())

"""Translation of domain exceptions into HTTP errors."""
from fastapi import HTTPException

from harmonizer.services.exceptions import (
    ConflictError,
    HarmonizationError,
    NotFoundError,
    PartialHarmonizationFailure,
    PersistenceError,
    ValidationError,
)


def http_error(exc: HarmonizationError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(400, str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(404, str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(409, {"message": str(exc), "existing_id": exc.existing_id})
    if isinstance(exc, PartialHarmonizationFailure):
        return HTTPException(502, {
            "message": str(exc),
            "errors": [{"framework": e.framework, "cause": e.cause} for e in exc.errors],
        })
    if isinstance(exc, PersistenceError):
        return HTTPException(503, str(exc))
    return HTTPException(500, str(exc))

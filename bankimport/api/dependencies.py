"""
Shared dependencies for the API routers.

Authentication happens upstream; the authenticated user id arrives in the
``X-User-Id`` header. Both dependencies are overridden in tests.
"""
import logging
from typing import Optional

from fastapi import Header, HTTPException
from sqlalchemy.engine import Engine

from bankimport.db.session import get_engine
from bankimport.domain.imports.errors import (
    FingerprintConflict,
    ImportFileError,
    ImportStateError,
    InvalidFailureTransition,
    InvalidMappingError,
    InvalidTransactionValues,
    UploadTooLarge,
)

logger = logging.getLogger(__name__)


def get_db_engine() -> Engine:
    return get_engine()


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def to_http_exception(error: Exception, action: str) -> HTTPException:
    """Map a domain exception to the HTTP error returned for it."""
    if isinstance(error, HTTPException):
        return error
    if isinstance(error, LookupError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (ImportStateError, InvalidFailureTransition, FingerprintConflict)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, UploadTooLarge):
        return HTTPException(status_code=413, detail=str(error))
    if isinstance(error, (InvalidMappingError, InvalidTransactionValues)):
        return HTTPException(
            status_code=422,
            detail={"message": str(error), "errors": error.errors, "warnings": getattr(error, "warnings", [])},
        )
    if isinstance(error, ImportFileError):
        return HTTPException(status_code=422, detail=error.message)
    if isinstance(error, ValueError):
        return HTTPException(status_code=422, detail=str(error))

    logger.error(f"Failed to {action}: {error}")
    return HTTPException(status_code=500, detail=f"Failed to {action}: {str(error)}")

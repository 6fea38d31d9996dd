"""HTTP-aware error types and the handler for unexpected persistence failures."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence, Union

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

Loc = Sequence[Union[str, int]]


class NotFoundError(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class ConflictError(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class ForbiddenError(HTTPException):
    def __init__(self, detail: str = "Insufficient permissions") -> None:
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class RequestValidationFailed(HTTPException):
    """422 carrying field-level errors in the same shape FastAPI uses for body validation."""

    def __init__(self, errors: List[Dict[str, Any]]) -> None:
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=errors)
        self.errors = errors


def field_error(loc: Loc, msg: str, error_type: str = "value_error") -> Dict[str, Any]:
    return {"loc": list(loc), "msg": msg, "type": error_type}


def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error."},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Make unexpected persistence failures surface as a generic 500."""

    app.add_exception_handler(SQLAlchemyError, database_error_handler)

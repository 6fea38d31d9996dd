"""Per-service HTTP audit log.

Each request becomes one line in ``<log_dir>/<service>.log`` naming the
caller (the token subject when a bearer token is present), the route and the
outcome. Client errors are logged as warnings and server errors as errors so
booking conflicts and failures stand out when grepping the file.
"""
from __future__ import annotations

import logging
import uuid
from pathlib import Path
from time import perf_counter
from typing import Optional

from fastapi import FastAPI, Request
from jose import JWTError, jwt

from .config import get_settings

REQUEST_ID_HEADER = "X-Request-ID"


def _build_logger(service_name: str) -> logging.Logger:
    logger = logging.getLogger(f"audit.{service_name}")
    if logger.handlers:
        return logger

    log_dir = Path(get_settings().log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.setLevel(logging.INFO)
    handler = logging.FileHandler(log_dir / f"{service_name}.log")
    handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    logger.addHandler(handler)
    return logger


def _token_subject(request: Request) -> Optional[str]:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    try:
        # Only for the log line; authentication itself verifies the signature.
        return jwt.get_unverified_claims(token).get("sub")
    except JWTError:
        return None


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def add_audit_middleware(app: FastAPI, service_name: str) -> None:
    logger = _build_logger(service_name)

    @app.middleware("http")
    async def audit_logger(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        client_ip = request.client.host if request.client else "unknown"
        principal = _token_subject(request) or "anonymous"
        start = perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "%s %s | request=%s | user=%s | client=%s | unhandled error",
                request.method,
                request.url.path,
                request_id,
                principal,
                client_ip,
            )
            raise
        duration_ms = (perf_counter() - start) * 1000
        logger.log(
            _level_for(response.status_code),
            "%s %s | status=%s | request=%s | user=%s | client=%s | duration=%.2fms",
            request.method,
            request.url.path,
            response.status_code,
            request_id,
            principal,
            client_ip,
            duration_ms,
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

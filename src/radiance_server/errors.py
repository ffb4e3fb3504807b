"""Global exception handlers — map SDK exceptions to HTTP status codes.

The SDK's error taxonomy gets dedicated handlers; anything else raised as
a plain ``ValueError`` falls through to a handler that inspects the
message and picks the right HTTP status code.  This keeps route handlers
clean and focused on the happy path.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from radiance_pipeline.errors import (
    PersistenceError,
    PreconditionError,
    UpstreamError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# --- Keyword patterns in ValueError messages and their HTTP status codes ---
# Checked in order; first match wins.
_VALUE_ERROR_PATTERNS: list[tuple[str, int]] = [
    ("not found", 404),
    ("already complete", 409),
    ("required before", 409),
]


# --- Client-safe messages keyed by HTTP status code ---
# Internal details (user_id, session_id, upstream bodies) stay in the
# server log; the client receives only a generic description.
_SAFE_MESSAGES: dict[int, str] = {
    404: "Resource not found",
    409: "Request conflicts with the session state",
    400: "Invalid request",
}


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Map SDK ``ValueError`` to a contextual HTTP error response.

    Inspects the exception message to decide between 404 (not found),
    409 (conflict with session state) or 400 (bad request).

    The raw exception message is logged server-side but **never** sent
    to the client — it may contain user or session identifiers.
    """
    msg = str(exc)
    status = 400  # default
    for pattern, code in _VALUE_ERROR_PATTERNS:
        if pattern in msg.lower():
            status = code
            break

    logger.warning("ValueError [%d] at %s: %s", status, request.url, msg)
    safe_detail = _SAFE_MESSAGES.get(status, "Invalid request")
    return JSONResponse(status_code=status, content={"detail": safe_detail})


async def validation_error_handler(
    request: Request, exc: ValidationError,
) -> JSONResponse:
    """Map input ``ValidationError`` to 422; the message names the bad field."""
    logger.warning("ValidationError at %s: %s", request.url, exc)
    content = {"detail": str(exc)}
    if exc.field:
        content["field"] = exc.field
    return JSONResponse(status_code=422, content=content)


async def precondition_error_handler(
    request: Request, exc: PreconditionError,
) -> JSONResponse:
    """Map ``PreconditionError`` to 409.

    The message names stages only ("X response required before Y"), so
    it is safe to return verbatim.
    """
    logger.warning("PreconditionError at %s: %s", request.url, exc)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


async def upstream_error_handler(request: Request, exc: UpstreamError) -> JSONResponse:
    """Map ``UpstreamError`` to 502 without leaking the upstream body."""
    logger.error("UpstreamError at %s: %s", request.url, exc)
    return JSONResponse(
        status_code=502,
        content={"detail": "Upstream model call failed"},
    )


async def persistence_error_handler(
    request: Request, exc: PersistenceError,
) -> JSONResponse:
    """Map ``PersistenceError`` to 503 — only read paths with no fallback reach here."""
    logger.error("PersistenceError at %s: %s", request.url, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Session storage is unavailable"},
    )


async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions — log full traceback, return 500."""
    logger.exception("Unhandled exception at %s", request.url)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )

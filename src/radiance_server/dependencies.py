"""FastAPI dependency injection — provides the pipeline, extractor and user identity.

The pipeline owns its transaction boundaries (one per store call through
``radiance_db.engine.session_scope``), so routes never handle a database
session directly.
"""

import hmac

from fastapi import Header, HTTPException, Request

from radiance_pipeline.interfaces import ReportTextExtractor
from radiance_pipeline.pipeline import DiagnosisPipeline
from radiance_pipeline.stages import StageProcessor


# ------------------------------------------------------------------
# Pipeline & collaborators — stashed on app.state during lifespan
# ------------------------------------------------------------------

def get_pipeline(request: Request) -> DiagnosisPipeline:
    """Return the pipeline singleton from ``app.state``."""
    return request.app.state.pipeline


def get_processors(request: Request) -> dict[str, StageProcessor]:
    """Return the stage processors built at startup."""
    return request.app.state.processors


def get_extractor(request: Request) -> ReportTextExtractor | None:
    """Return the report text extractor, or ``None`` when none is configured."""
    return getattr(request.app.state, "extractor", None)


# ------------------------------------------------------------------
# User identity — extracted from the X-User-ID header
# ------------------------------------------------------------------

async def get_user_id(
    request: Request,
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    x_proxy_secret: str | None = Header(None, alias="X-Proxy-Secret"),
) -> str:
    """Extract user identity from the ``X-User-ID`` header.

    Returns 401 if the header is missing — every session endpoint
    requires a known caller.

    When ``TRUSTED_PROXY_SECRET`` is configured, the request must also
    carry a matching ``X-Proxy-Secret`` header.  This proves the
    ``X-User-ID`` was injected by a trusted auth gateway and not forged
    by an external client.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-ID header is required")

    # --- Proxy-secret validation (opt-in via TRUSTED_PROXY_SECRET) ---
    expected_secret: str | None = request.app.state.settings.trusted_proxy_secret
    if expected_secret:
        if not x_proxy_secret:
            raise HTTPException(
                status_code=403,
                detail="X-Proxy-Secret header is required",
            )
        # Constant-time comparison
        if not hmac.compare_digest(x_proxy_secret, expected_secret):
            raise HTTPException(status_code=403, detail="Invalid proxy secret")

    return x_user_id

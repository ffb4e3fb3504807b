"""Server configuration — reads settings from environment variables.

All settings have sensible defaults for local development.  In production
the values are typically overridden via env vars or a ``.env`` file.
"""

import os
from dataclasses import dataclass, field

from radiance_pipeline.constants import (
    DEFAULT_API_BASE_URL,
    LLM_TIMEOUT_SECONDS,
    STREAM_SETTLE_SECONDS,
)

# Storage backends accepted by SERVER_STORAGE
STORAGE_DATABASE = "database"
STORAGE_MEMORY = "memory"


@dataclass(frozen=True)
class ServerSettings:
    """Immutable server configuration read from environment at startup."""

    # Network
    host: str = "0.0.0.0"
    port: int = 8080

    # CORS — comma-separated origins, or "*" for wide-open dev mode
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    # Logging
    log_level: str = "INFO"

    # Session storage: "database" (PostgreSQL) or "memory" (process-local)
    storage_backend: str = STORAGE_DATABASE

    # Model endpoint.  No API key selects the demo completion client.
    api_key: str | None = None
    api_base_url: str = DEFAULT_API_BASE_URL
    llm_timeout: float = LLM_TIMEOUT_SECONDS

    # Pause after a streamed stage before the streaming flag clears
    stream_settle_seconds: float = STREAM_SETTLE_SECONDS

    # Trusted proxy secret — when set, every request that carries
    # X-User-ID must also carry X-Proxy-Secret matching this value.
    trusted_proxy_secret: str | None = None


def load_settings() -> ServerSettings:
    """Build settings from ``SERVER_*`` and model-endpoint environment variables."""
    raw_origins = os.getenv("SERVER_CORS_ORIGINS", "*")
    origins = [o.strip() for o in raw_origins.split(",") if o.strip()]

    storage = os.getenv("SERVER_STORAGE", STORAGE_DATABASE).strip().lower()
    if storage not in {STORAGE_DATABASE, STORAGE_MEMORY}:
        raise ValueError(
            f"SERVER_STORAGE must be '{STORAGE_DATABASE}' or '{STORAGE_MEMORY}', got {storage!r}"
        )

    return ServerSettings(
        host=os.getenv("SERVER_HOST", "0.0.0.0"),
        port=int(os.getenv("SERVER_PORT", "8080")),
        cors_origins=origins,
        log_level=os.getenv("SERVER_LOG_LEVEL", "INFO").upper(),
        storage_backend=storage,
        api_key=os.getenv("PERPLEXITY_API_KEY") or None,
        api_base_url=os.getenv("PERPLEXITY_BASE_URL", DEFAULT_API_BASE_URL),
        llm_timeout=float(os.getenv("LLM_TIMEOUT_SECONDS", str(LLM_TIMEOUT_SECONDS))),
        stream_settle_seconds=float(
            os.getenv("STREAM_SETTLE_SECONDS", str(STREAM_SETTLE_SECONDS))
        ),
        trusted_proxy_secret=os.getenv("TRUSTED_PROXY_SECRET") or None,
    )

"""Error taxonomy for the chain-diagnosis SDK.

``ValidationError``, ``PreconditionError`` and ``SessionNotFoundError``
subclass ``ValueError`` so the server's global ``ValueError`` handler
covers them; the server installs more specific handlers on top.
"""

from radiance_pipeline.constants import RAW_EXCERPT_LIMIT


class ValidationError(ValueError):
    """Malformed or missing required input.  Never retried automatically."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class PreconditionError(ValueError):
    """A prerequisite stage response is missing for the requested step."""


class SessionNotFoundError(ValueError):
    """No session with the given id exists (or it belongs to another user)."""


class UpstreamError(Exception):
    """The chat-completion call failed, timed out, or returned non-2xx.

    ``body`` is truncated so that error messages stay loggable.
    """

    def __init__(self, status_code: int | None, body: str = "") -> None:
        self.status_code = status_code
        self.body = (body or "")[:RAW_EXCERPT_LIMIT]
        label = status_code if status_code is not None else "network"
        super().__init__(f"Upstream model call failed ({label}): {self.body}")


class PersistenceError(Exception):
    """The session store could not complete a read or write."""


class CoercionFailure(Exception):
    """Raised inside the coercion ladder when one attempt fails.

    Never escapes :func:`radiance_pipeline.coercion.coerce`.
    """

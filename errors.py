"""Error taxonomy shared by the services and the HTTP layer."""

import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class AhaarError(Exception):
    """Base class for errors the API reports back to the client."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AhaarError):
    status_code = 400


class ForbiddenError(AhaarError):
    status_code = 403


class NotFoundError(AhaarError):
    status_code = 404


class ConflictError(AhaarError):
    status_code = 409


class DependencyError(AhaarError):
    """A side effect failed after the primary mutation was committed.

    Never raised to the client. Repair operations (rating recalculation,
    ledger reconciliation, re-sweeping) restore consistency later.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


def best_effort(description: str, action: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a secondary side effect, logging instead of raising on failure.

    Returns the action's result, or None if it failed.
    """
    try:
        return action(*args, **kwargs)
    except Exception as e:
        err = DependencyError(f"{description} failed: {e}", cause=e)
        logger.error(err.message, exc_info=e)
        return None


def describe(exc) -> str:
    """One-line summary of a pydantic ValidationError."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", ""))
    return "; ".join(parts)

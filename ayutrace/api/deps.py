"""
Dependency injection for API routes.

Services come from the Runtime on app.state; errors raised by them are
translated into HTTP responses here so every route maps them the same way.
"""

from contextlib import contextmanager

from fastapi import HTTPException, Request

from ..core.ledger import NotFoundError, ValidationError
from ..db.store import LockTimeoutError, StorageError
from ..runtime import Runtime

RETRY_AFTER_SECONDS = "1"


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


@contextmanager
def translate_errors():
    """
    Map service errors to HTTP errors.

    NotFoundError -> 404, ValidationError -> 400,
    LockTimeoutError -> 503 with Retry-After, other StorageError -> 503.
    """
    try:
        yield
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LockTimeoutError as e:
        raise HTTPException(
            status_code=503,
            detail=str(e),
            headers={"Retry-After": RETRY_AFTER_SECONDS},
        )
    except StorageError as e:
        raise HTTPException(status_code=503, detail=f"Ledger storage unavailable: {e}")

"""
AyuTrace - Herbal Supply Chain Provenance Ledger

Main application entry point.

Every collection, processing step, lab test and pack is appended to a
per-lot hash chain. Anyone holding a pack can trace it back and check
that the chain is intact.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.routes_ledger import router as ledger_router
from .api.routes_supply import router as supply_router
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    setup_logging,
)
from .runtime import Runtime, build_runtime

logger = get_logger(__name__)

API_VERSION = "0.1.0"

DESCRIPTION = """
## Herbal Supply Chain Provenance Ledger

### Core Principles

- **Append-only**: Events are recorded, never edited or deleted
- **Chained**: Each lot's events form a SHA-256 hash chain
- **Verifiable**: Any lot's chain can be re-verified on demand
- **Evaluated**: Lab results are judged against regulatory thresholds

### Lot Lifecycle

```
Collected → Processing → Approved / Rejected → Packed
```

### Storage Backends

- **InMemoryLedgerStore**: Development/testing (default)
- **PostgresLedgerStore**: Production with full durability

Set `DATABASE_URL` or `DATABASE_HOST` environment variables to use PostgreSQL.
"""


def create_app(runtime: Optional[Runtime] = None, configure_logging: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        runtime: Pre-built services (tests pass their own). If None, one is
                 built from the environment at startup.
        configure_logging: Install the root log handler.
    """
    if configure_logging:
        setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = build_runtime()
        app.state.metrics = app.state.runtime.metrics

        rt: Runtime = app.state.runtime
        logger.info(
            "Application startup complete",
            entry_count=rt.ledger.get_entry_count(),
            store_type=type(rt.ledger.store).__name__,
            external_ledger=rt.ledger.external.name,
            thresholds=len(rt.thresholds),
        )

        yield

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="AyuTrace",
        description=DESCRIPTION,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.metrics = runtime.metrics if runtime is not None else None

    app.add_middleware(RequestContextMiddleware)

    app.include_router(supply_router)
    app.include_router(ledger_router)

    @app.get("/health", tags=["System"])
    def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "ayutrace"}

    @app.get("/health/detailed", tags=["System"])
    def health_detailed(request: Request):
        """
        Detailed health check with ledger verification.

        Checks:
        - Service liveness
        - Ledger store connectivity
        - Chain integrity of a sample of lots

        Returns 200 if healthy, 503 if unhealthy.
        """
        rt: Runtime = request.app.state.runtime
        health_status = check_health(ledger=rt.ledger)

        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    def metrics(request: Request):
        """
        Get application metrics.

        Returns counters and latency percentiles.
        """
        return request.app.state.runtime.metrics.get_summary()

    return app


app = create_app()

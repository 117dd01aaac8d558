"""
FastAPI main application.

Entry point for the custody lifecycle coordinator API.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from custody.config import settings
from custody.config.database import close_mongodb_connection, connect_to_mongodb
from custody.core.dependencies import close_coordinator, get_coordinator
from custody.core.responses import error_json_response
from custody.shared.exceptions import AppException
from custody.utils.cache import close_redis_client, get_redis_client
from custody.utils.logger import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting application...")

    try:
        await connect_to_mongodb()
        await get_redis_client()

        # Operations a dead process left mid-step keep their locks until resumed
        stalled = await get_coordinator().recover_stalled_operations()
        if stalled:
            logger.warning(f"{len(stalled)} lifecycle operations need resume or abandon")

        logger.info("Application started successfully")
    except Exception as e:
        logger.error(f"Failed to start application: {str(e)}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down application...")

    try:
        await close_coordinator()
        await close_mongodb_connection()
        await close_redis_client()
        logger.info("Application shut down successfully")
    except Exception as e:
        logger.error(f"Error during shutdown: {str(e)}")


API_DESCRIPTION = """
## Custody Lifecycle Coordinator API

Moves capital between an external wallet, its custodial agent wallet and the
agent wallet's trading subaccounts without silently losing funds.

### Identity

The caller's external wallet address is passed in the `X-Wallet-Address`
header. Session establishment happens upstream.

### Response Format

```json
{
  "status_code": 200,
  "message": "Operation successful",
  "data": { ... },
  "error": null
}
```

Errors use the same envelope with `error: {code, message}`. A second
operation on a busy bot or wallet is rejected with `409 OPERATION_IN_PROGRESS`
and the blocking operation id in `data`.
"""

# Create FastAPI application
app = FastAPI(
    title="Custody Lifecycle Coordinator API",
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
    return error_json_response(exc)


# Include routers
from custody.modules.bots.router import router as bots_router  # noqa: E402
from custody.modules.capital.router import router as capital_router  # noqa: E402
from custody.modules.lifecycle.router import router as operations_router  # noqa: E402

app.include_router(bots_router, prefix="/api/v1")
app.include_router(operations_router, prefix="/api/v1")
app.include_router(capital_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "custody.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )

"""
FastAPI host for the support agent: builds the service container on startup
and closes it on shutdown.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from support_agent.config import get_settings
from support_agent.infrastructure.observability.logging import get_logger, setup_logging
from support_agent.routes import gmail_webhook, health, responses
from support_agent.services.container import SupportServices

settings = get_settings()

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    try:
        app.state.services = await SupportServices.create(settings)
    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), error_type=type(e).__name__)
        raise

    yield

    logger.info("Application shutting down")
    await app.state.services.aclose()


app = FastAPI(
    title="Support Agent",
    description="Automated first-line customer support for a Gmail mailbox",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(gmail_webhook.router)
app.include_router(responses.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

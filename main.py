"""
AI Proxy Functions

Callable endpoints that forward authenticated client requests to AI vendors
(OpenAI, DeepSeek, Google Vision, Gemini on Vertex AI) and manage Stripe and
App Store subscriptions.

- Callables: POST /callable/{name}, body is the call data, reply {"result": ...}
- Webhooks: POST /webhooks/stripe, POST /webhooks/app-store

Run with:
    uvicorn main:app --reload

Or:
    python main.py
"""

import os
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("functions")

# Import config
from app.core.config import config
from app.core.callable import install_error_handlers

# Import API routers
from app.api.gateway import router as gateway_router, vendor_client, quota_tracker
from app.api.tokens import router as tokens_router
from app.api.billing import router as billing_router, webhook_router as stripe_webhook_router
from app.api.app_store import router as app_store_router


# =============================================================================
# APPLICATION LIFESPAN
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("=" * 60)
    logger.info("AI Proxy Functions starting")
    logger.info(f"   Environment: {config.env.value}")
    logger.info(f"   Quota counter: {'redis' if config.redis_url else 'in-memory'}")
    logger.info("=" * 60)

    yield

    # Cleanup
    logger.info("Shutting down...")
    await vendor_client.close()
    await quota_tracker.close()


# =============================================================================
# CREATE APPLICATION
# =============================================================================

app = FastAPI(
    title="AI Proxy Functions",
    description="Authenticated AI vendor proxies, temporary API tokens and subscription billing.",
    version="1.0.0",
    docs_url=None if config.is_production else "/docs",
    redoc_url=None,
    lifespan=lifespan,
)

install_error_handlers(app)


# =============================================================================
# MIDDLEWARE
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials="*" not in config.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests."""
    start_time = time.time()

    response = await call_next(request)

    duration = time.time() - start_time
    logger.info(
        f"{request.method} {request.url.path} "
        f"- {response.status_code} ({duration*1000:.0f}ms)"
    )

    return response


# =============================================================================
# ROUTES
# =============================================================================

# AI vendor proxies
app.include_router(gateway_router)

# Temporary API tokens
app.include_router(tokens_router)

# Stripe billing callables
app.include_router(billing_router)

# Webhooks
app.include_router(stripe_webhook_router)
app.include_router(app_store_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": config.env.value,
    }


# =============================================================================
# RUN
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=not config.is_production,
        log_level="info",
    )

"""Main entry point for the Anons auth gateway."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from anons_auth.api.v1 import auth_router, member_router
from anons_auth.api.v1.dependencies import get_ledger, get_nonce_registry, get_rate_limiter
from anons_auth.core.errors import AuthError
from anons_auth.core.settings import settings
from anons_auth.services.nonce import NonceSweeper

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Sign-in-with-Agent authentication and on-chain authorization for Anons DAO",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
    expose_headers=settings.cors_expose_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(auth_router, prefix="/api/v1")
app.include_router(member_router, prefix="/api/v1")


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": exc.code},
        headers={**getattr(request.state, "rate_limit_headers", {}), **exc.headers},
    )


@app.on_event("startup")
async def on_startup() -> None:
    if settings.uses_dev_secret:
        logger.warning("JWT_SECRET is not set; using the development secret")
    limiter = get_rate_limiter()
    sweeper = NonceSweeper(get_nonce_registry(), extra_sweeps=[limiter.purge_expired])
    await sweeper.start()
    app.state.nonce_sweeper = sweeper


@app.on_event("shutdown")
async def on_shutdown() -> None:
    sweeper: NonceSweeper | None = getattr(app.state, "nonce_sweeper", None)
    if sweeper:
        await sweeper.stop()
    ledger = get_ledger()
    if ledger is not None:
        await ledger.close()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "domain": settings.api_domain,
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("anons_auth.main:app", host="0.0.0.0", port=8000, reload=settings.debug)

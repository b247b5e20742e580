"""FastAPI application factory.

Learn: App factory pattern: create_app() returns a configured FastAPI
instance. Long-lived collaborators (the credential issuer, the Apple key
cache, the code sender) are built once here and kept on app.state; the
per-request services are assembled from them by route dependencies.
Lifespan manages startup/shutdown (logging, database engine).
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from livlog_auth import __version__
from livlog_auth.api import api_router
from livlog_auth.auth.apple import AppleIdentityVerifier
from livlog_auth.auth.tokens import CredentialIssuer
from livlog_auth.config import Settings, settings
from livlog_auth.log import configure_logging
from livlog_auth.middleware.request_id import RequestIdMiddleware
from livlog_auth.middleware.security import SecurityHeadersMiddleware
from livlog_auth.services.verification import LogCodeSender

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: FastAPI lifespan replaces on_event("startup") / on_event("shutdown").
    Anything before `yield` runs at startup, after `yield` runs at shutdown.
    """
    cfg = app.state.settings
    configure_logging(cfg.log_format, cfg.debug)
    logger.info(
        "livlog_auth.starting",
        version=__version__,
        environment=cfg.environment,
        port=cfg.port,
    )

    yield

    logger.info("livlog_auth.shutdown")

    # Close database engine
    from livlog_auth.db.engine import engine
    await engine.dispose()


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """Build and return the FastAPI application."""
    cfg = app_settings or settings

    app = FastAPI(
        title="Livlog Auth",
        description="Identity, sessions and AI search quota for the Livlog catalog app",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = cfg
    app.state.issuer = CredentialIssuer.from_settings(cfg)
    app.state.apple_verifier = AppleIdentityVerifier(
        cfg.apple_bundle_id,
        keys_url=cfg.apple_keys_url,
        leeway=cfg.token_leeway_seconds,
        min_refetch_interval=cfg.apple_keys_min_refetch_seconds,
    )
    app.state.code_sender = LogCodeSender(reveal_code=cfg.environment == "development")

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → Security → RequestId → handler

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount API routes
    app.include_router(api_router)

    return app


# Default app instance (used by uvicorn: livlog_auth.main:app)
app = create_app()

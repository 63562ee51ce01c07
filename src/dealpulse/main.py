"""FastAPI application factory.

Creates the app with logging middleware, CORS, lifespan events for database
initialization and CRM service wiring, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.dealpulse.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.dealpulse.api.v1.router import router as v1_router
from src.dealpulse.config import Settings, get_settings
from src.dealpulse.core.database import close_db, get_session, init_db


def build_services(settings: Settings) -> dict:
    """Create the repositories and CRM services stored on app.state."""
    from src.dealpulse.deals.crm import (
        AssociationResolver,
        HubSpotClient,
        SyncPipeline,
        TokenLifecycleManager,
    )
    from src.dealpulse.deals.repository import (
        CredentialRepository,
        DealRepository,
        RiskPolicyRepository,
    )

    credentials = CredentialRepository(get_session)
    deals = DealRepository(get_session)
    policies = RiskPolicyRepository(get_session)

    hubspot = HubSpotClient(
        settings.HUBSPOT_CLIENT_ID,
        settings.HUBSPOT_CLIENT_SECRET,
        base_url=settings.HUBSPOT_API_BASE,
        timeout=settings.CRM_HTTP_TIMEOUT_SECONDS,
        batch_limit=settings.CRM_BATCH_READ_LIMIT,
    )
    retry_kwargs = {
        "max_retries": settings.CRM_RETRY_MAX_RETRIES,
        "base_delay": settings.CRM_RETRY_BASE_DELAY_SECONDS,
    }
    token_manager = TokenLifecycleManager(
        credentials,
        hubspot,
        client_id=settings.HUBSPOT_CLIENT_ID,
        redirect_uri=settings.crm_redirect_uri,
        scopes=settings.HUBSPOT_SCOPES,
        authorize_url=settings.HUBSPOT_AUTHORIZE_URL,
        skew_seconds=settings.TOKEN_EXPIRY_SKEW_SECONDS,
        **retry_kwargs,
    )
    sync_pipeline = SyncPipeline(
        credentials,
        deals,
        policies,
        token_manager,
        hubspot,
        AssociationResolver(hubspot, **retry_kwargs),
        page_limit=settings.SYNC_DEAL_PAGE_LIMIT,
        **retry_kwargs,
    )
    return {
        "deal_repository": deals,
        "risk_policy_repository": policies,
        "token_manager": token_manager,
        "sync_pipeline": sync_pipeline,
    }


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and services on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Endpoints answer 503 for anything missing from app.state
    try:
        for name, service in build_services(settings).items():
            setattr(app.state, name, service)
        if not settings.hubspot_configured():
            log.warning("crm.hubspot_not_configured")
        log.info("crm.services_initialized")
    except Exception:
        log.warning("crm.services_init_failed", exc_info=True)

    yield

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="DealPulse API",
        version="0.1.0",
        description="HubSpot deal sync and explainable deal risk scoring",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)

    app.include_router(v1_router, prefix="/v1")

    return app


# Module-level app for uvicorn
app = create_app()

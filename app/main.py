import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import stripe

try:
    import sentry_sdk
except ModuleNotFoundError:  # Sentry optional in local/test envs
    sentry_sdk = None
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware

try:
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
except ModuleNotFoundError:  # Sentry optional during local dev/tests
    FastApiIntegration = None
    LoggingIntegration = None

from app.api.routes import billing, health
from app.clients.identity import SupabaseIdentityClient
from app.clients.stripe_gateway import StripeGateway
from app.config import Settings, settings
from app.core.database import build_engine, create_schema
from app.services.billing.access import AccessGate, ReconciliationMarkers
from app.services.billing.errors import BillingError
from app.services.billing.reconciliation import ReconciliationEngine
from app.services.billing.store import build_entitlement_store

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _init_sentry(config: Settings) -> None:
    if sentry_sdk and FastApiIntegration and LoggingIntegration and config.sentry_dsn:
        sentry_sdk.init(
            dsn=config.sentry_dsn,
            integrations=[
                FastApiIntegration(auto_enabling_instrumentations=False),
                LoggingIntegration(level=logging.INFO),
            ],
            traces_sample_rate=0.1,
            environment=config.environment,
        )
        logger.info("Sentry initialized")


def create_app(
    config: Settings | None = None,
    *,
    stripe_sdk: Any = stripe,
    identity_client: SupabaseIdentityClient | None = None,
) -> FastAPI:
    """Build the FastAPI application; services are constructed once in the lifespan."""
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {config.app_name} v{config.app_version}")
        _init_sentry(config)

        db_engine = build_engine(config)
        if db_engine is not None and config.db_auto_create_schema:
            await create_schema(db_engine)
        store = build_entitlement_store(db_engine)

        gateway: StripeGateway | None = None
        reconciler: ReconciliationEngine | None = None
        if config.stripe_secret_key:
            gateway = StripeGateway(
                config.stripe_secret_key,
                app_base_url=config.app_base_url,
                price_catalog=config.plan_prices,
                timeout=config.provider_timeout_seconds,
                webhook_tolerance=config.stripe_webhook_tolerance_seconds,
                sdk=stripe_sdk,
            )
            reconciler = ReconciliationEngine(
                store,
                gateway,
                store_timeout=config.store_timeout_seconds,
                attempt_ttl=timedelta(seconds=config.checkout_attempt_ttl_seconds),
            )
        else:
            logger.warning("STRIPE_SECRET_KEY not set; payment endpoints are disabled")

        identity = identity_client
        if identity is None and config.supabase_url and config.supabase_anon_key:
            identity = SupabaseIdentityClient(
                config.supabase_url,
                config.supabase_anon_key,
                timeout=config.identity_timeout_seconds,
            )

        markers = ReconciliationMarkers(ttl_seconds=config.checkout_bypass_ttl_seconds)
        app.state.settings = config
        app.state.db_engine = db_engine
        app.state.store = store
        app.state.gateway = gateway
        app.state.reconciler = reconciler
        app.state.markers = markers
        app.state.access_gate = AccessGate(
            store, markers, store_timeout=config.store_timeout_seconds
        )
        app.state.identity = identity

        if reconciler is not None:
            try:
                await reconciler.purge_expired_attempts()
            except BillingError:
                logger.warning("billing.attempts.purge_failed")

        logger.info("Application startup complete")

        yield

        logger.info("Shutting down application")
        if identity is not None and identity_client is None:
            await identity.aclose()
        if db_engine is not None:
            await db_engine.dispose()

    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="Subscription checkout reconciliation and entitlement service",
        lifespan=lifespan,
        debug=config.debug,
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["*"] if config.debug else config.allowed_hosts,
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests."""
        logger.info(f"{request.method} {request.url.path}")
        response = await call_next(request)
        logger.info(f"Response status: {response.status_code}")
        return response

    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(billing.router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": f"Welcome to {config.app_name}",
            "version": config.app_version,
            "environment": config.environment,
        }

    return app


app = create_app()

"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events that build the integration hub services onto ``app.state``,
and the API routers.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.hub.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.hub.api.v1.router import api_router, root_router
from src.hub.config import get_settings
from src.hub.core.database import close_db, get_session, init_db
from src.hub.core.encryption import get_secrets_codec
from src.hub.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.hub.core.rate_limit import RateLimiter
from src.hub.core.redis import close_redis, get_redis_pool

_SERVICE_NAMES = (
    "integration_registry",
    "integration_repository",
    "oauth_manager",
    "hook_dispatcher",
    "inbound_gateway",
    "user_sync",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and hub services; close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # Process-wide, bounded; one instance shared by the inbound endpoints
    app.state.rate_limiter = RateLimiter(
        limit=settings.INBOUND_RATE_LIMIT,
        window_seconds=settings.INBOUND_RATE_WINDOW_SECONDS,
        max_keys=settings.RATE_LIMIT_MAX_KEYS,
    )

    # ── Integration Hub ─────────────────────────────────────────────────
    try:
        from src.hub.integrations.dispatcher import HookDispatcher
        from src.hub.integrations.inbound import InboundWebhookGateway
        from src.hub.integrations.oauth import OAuthConnectionManager
        from src.hub.integrations.oauth_state import OAuthStateSigner
        from src.hub.integrations.registry import get_integration_registry
        from src.hub.integrations.repository import IntegrationRepository
        from src.hub.integrations.retry_queue import HookRetryQueue
        from src.hub.integrations.status_sync import StatusSyncService
        from src.hub.integrations.user_sync import UserSyncOrchestrator

        registry = get_integration_registry()
        repository = IntegrationRepository(session_factory=get_session)
        codec = get_secrets_codec()

        app.state.integration_registry = registry
        app.state.integration_repository = repository
        app.state.oauth_manager = OAuthConnectionManager(
            registry=registry,
            repository=repository,
            codec=codec,
            state_signer=OAuthStateSigner(
                settings.SECRET_KEY,
                ttl_seconds=settings.OAUTH_STATE_TTL_SECONDS,
                algorithm=settings.JWT_ALGORITHM,
            ),
            base_url=settings.BASE_URL,
            workspace_id=settings.WORKSPACE_ID,
        )
        app.state.hook_dispatcher = HookDispatcher(
            registry=registry,
            repository=repository,
            codec=codec,
            retry_queue=HookRetryQueue(get_redis_pool(), settings.HOOK_RETRY_STREAM),
            failure_threshold=settings.HOOK_FAILURE_THRESHOLD,
        )
        app.state.inbound_gateway = InboundWebhookGateway(
            registry=registry,
            repository=repository,
            codec=codec,
            status_sync=StatusSyncService(repository),
        )
        app.state.user_sync = UserSyncOrchestrator(
            registry=registry,
            repository=repository,
            codec=codec,
        )
        log.info("integrations.hub_initialized", integrations=len(registry))
    except Exception:
        log.warning("integrations.hub_init_failed", exc_info=True)
        for name in _SERVICE_NAMES:
            setattr(app.state, name, None)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    dispatcher = getattr(app.state, "hook_dispatcher", None)
    if dispatcher is not None:
        await dispatcher.drain()

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Feedback Integration Hub",
        version="0.1.0",
        description="OAuth connections, outbound event hooks, inbound webhooks and user sync",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(api_router, prefix="/api")
    app.include_router(root_router)

    # Prometheus metrics endpoint (infrastructure route, outside the API router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()

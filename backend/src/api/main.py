"""FastAPI application entry point."""
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from api.routers import events, health, prompts, users
from core.cache_config import load_cache_config
from core.config import Settings, get_settings
from core.lifecycle import RequestLifecycleMiddleware, named_api_routes
from core.rate_limit_config import build_rate_limit_config
from core.rate_limiter import RateLimiter
from core.redis import RedisClient
from core.response_cache import CachePolicyEngine
from db.session import build_engine, build_session_factory
from models import Base
from services.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifespan - startup and shutdown."""
    logging.basicConfig(
        level=app.state.settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Startup: Connect to Redis
    await app.state.redis.connect()

    # Startup: Create tables when the app owns its engine
    engine = app.state.engine
    if engine is not None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    yield

    # Shutdown: Clean up Redis and the engine
    await app.state.redis.close()
    if engine is not None:
        await engine.dispose()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        """Process request and add security headers to response."""
        response = await call_next(request)
        # HSTS: enforce HTTPS for 1 year, including subdomains
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking - API shouldn't be framed
        response.headers["X-Frame-Options"] = "DENY"
        return response


async def storage_unavailable_handler(
    _request: Request, exc: StorageUnavailableError,
) -> JSONResponse:
    """Storage failures surface as 503 so clients know to retry later."""
    logger.error("storage_unavailable", extra={"error": str(exc)})
    return JSONResponse(
        status_code=503,
        content={"detail": "Service temporarily unavailable"},
    )


def create_app(
    settings: Settings | None = None,
    *,
    redis_client: RedisClient | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    """
    Build the application and its request-processing collaborators.

    Rate limit policy, cache rules, the Redis client and the session factory
    are built once here and kept on app.state. A malformed cache rule file
    raises ConfigParseError, so the app never starts with a partial rule set.

    Tests pass their own redis_client and session_factory; the lifespan then
    still connects the client but leaves the database alone.
    """
    settings = settings or get_settings()
    if redis_client is None:
        redis_client = RedisClient(
            url=settings.redis_url,
            enabled=settings.redis_enabled,
            pool_size=settings.redis_pool_size,
            timeout=settings.redis_timeout_seconds,
        )
    engine = None
    if session_factory is None:
        engine = build_engine(settings.database_url)
        session_factory = build_session_factory(engine)

    app = FastAPI(
        title="Mantle API",
        description="Users, events and prompts with rate limiting, response caching "
        "and field-level privacy.",
        version="2.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.redis = redis_client
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.rate_limiter = RateLimiter(
        redis_client,
        build_rate_limit_config(settings),
        fail_open=settings.rate_limit_fail_open,
    )
    app.state.response_cache = CachePolicyEngine(
        load_cache_config(settings.cache_config_path), redis_client,
    )

    app.add_exception_handler(StorageUnavailableError, storage_unavailable_handler)

    # Rate limiting, caching and rate limit headers for /v2/ routes
    app.add_middleware(RequestLifecycleMiddleware)

    # Security headers middleware (runs after CORS, adds headers to responses)
    app.add_middleware(SecurityHeadersMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "Retry-After",
            "X-Cache",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "X-Global-RateLimit-Limit",
            "X-Global-RateLimit-Remaining",
            "X-Global-RateLimit-Reset",
        ],
    )

    routers = (health.router, users.router, events.router, prompts.router)
    for router in routers:
        app.include_router(router)
    # Route names key the per-endpoint limits, resolved before routing
    app.state.api_routes = named_api_routes(routers)
    return app


app = create_app()

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from signdesk.api.routes import health, signatures, webhooks
from signdesk.core.config import Settings, get_settings
from signdesk.core.logging import configure_logging, get_logger
from signdesk.db.session import async_session_factory, init_models
from signdesk.integrations.esignature import ESignatureProvider, build_provider
from signdesk.middleware.correlation import CorrelationIdMiddleware
from signdesk.services.locks import EnvelopeLocks
from signdesk.services.signature_service import SignatureService

logger = get_logger(__name__)


def create_application(
    settings: Settings | None = None,
    *,
    provider: ESignatureProvider | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    redis_client: Redis | None = None,
) -> FastAPI:
    """
    Build the API application.

    Injected collaborators are wired immediately; anything left out is
    resolved from settings when the application starts.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        owned_redis: Redis | None = None
        owned_provider: ESignatureProvider | None = None

        if session_factory is None:
            await init_models()
            application.state.session_factory = async_session_factory
        if provider is None:
            client = redis_client
            if client is None and settings.redis_url:
                client = owned_redis = Redis.from_url(settings.redis_url)
            owned_provider = build_provider(settings)
            application.state.signature_service = SignatureService(owned_provider, EnvelopeLocks(client))

        logger.info(
            "application.startup",
            environment=settings.environment,
            provider=application.state.signature_service.provider.provider_id,
            hardened=settings.hardened,
        )
        try:
            yield
        finally:
            if owned_provider is not None:
                await owned_provider.close()
            if owned_redis is not None:
                await owned_redis.close()
            logger.info("application.shutdown")

    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.state.settings = settings
    if session_factory is not None:
        application.state.session_factory = session_factory
    if provider is not None:
        application.state.signature_service = SignatureService(provider, EnvelopeLocks(redis_client))

    application.include_router(health.router)
    application.include_router(signatures.router)
    application.include_router(webhooks.router)

    application.add_middleware(CorrelationIdMiddleware)
    if settings.allowed_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.allowed_origins],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    return application


app = create_application()

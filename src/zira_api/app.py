import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware

from .core.config import Settings, get_settings
from .core.logging import configure_logging
from .api.v1.router import router as api_v1_router
from .api.errors import register_exception_handlers
from .common.middleware import AccountContextMiddleware, RequestIDMiddleware
from .core.db import get_session, init_engine
from .core.redis import close_redis, get_redis, init_redis
from .modules.mpesa.drafts import MemoryDraftStore, RedisDraftStore
from .modules.mpesa.watcher import StatusWatcher


logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        debug=settings.DEBUG,
        version="1.0.0",
    )

    # Middlewares (order matters: first added = innermost)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(GZipMiddleware)
    app.add_middleware(AccountContextMiddleware, header_name=settings.ACCOUNT_HEADER)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    register_exception_handlers(app)

    # Routers (versioned)
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    # Background status polling for submitted STK pushes
    app.state.status_watcher = StatusWatcher(get_session, settings)

    # Lifespan: initialize and close shared clients
    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - runtime
        init_engine(settings=settings)
        init_redis(settings=settings)
        redis = get_redis()
        app.state.draft_store = RedisDraftStore(redis) if redis is not None else MemoryDraftStore()
        logger.info(
            "Started %s (env=%s, drafts=%s)",
            settings.PROJECT_NAME,
            settings.ENV,
            "redis" if redis is not None else "memory",
        )

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - runtime
        await app.state.status_watcher.close()
        await close_redis()

    return app

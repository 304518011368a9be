from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from backend import RedisBackend
from constants import HEARTBEAT_INTERVAL, HEARTBEAT_TIMEOUT, OUTBOX_SIZE, DEDUP_CACHE_SIZE, LOG_LEVEL, LOG_FILE
from logging_config import get_logger, setup_logging
from realtime.gatekeeper import IdentityProvider, JwtIdentityProvider
from realtime.hub import ChatHub
from routers.messages import messages_router
from routers.realtime import realtime_router

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def create_app(
    store=None,
    identity_provider: Optional[IdentityProvider] = None,
    heartbeat_interval: float = HEARTBEAT_INTERVAL,
    heartbeat_timeout: float = HEARTBEAT_TIMEOUT,
    outbox_size: int = OUTBOX_SIZE,
) -> FastAPI:
    """Build the chat relay application.

    `store` is the Message Store and identity directory (Redis by default);
    `identity_provider` defaults to JWT verification against that directory.
    """
    if store is None:
        store = RedisBackend()
    if identity_provider is None:
        identity_provider = JwtIdentityProvider(store)

    hub = ChatHub(
        identity_provider,
        heartbeat_interval=heartbeat_interval,
        heartbeat_timeout=heartbeat_timeout,
        dedup_cache_size=DEDUP_CACHE_SIZE,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # No store, no service: a failed ping aborts startup
        await run_in_threadpool(store.ping)
        hub.start()
        logger.info("Chat relay ready")
        try:
            yield
        finally:
            await hub.stop()
            logger.info("Chat relay stopped")

    app = FastAPI(title="Chat Relay", lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.hub = hub
    app.state.store = store
    app.state.outbox_size = outbox_size

    app.include_router(realtime_router)
    app.include_router(messages_router)

    logger.info("FastAPI application initialized")
    return app


app = create_app()

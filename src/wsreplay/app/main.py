from __future__ import annotations

import structlog
import uvicorn
from fastapi import FastAPI

from wsreplay.api import router as api_router
from wsreplay.api.routes.replay import router as replay_router
from wsreplay.core.config.settings import AppSettings, settings
from wsreplay.core.logging.setup import configure_logging
from wsreplay.marketdata.replay.jsonl_datasource import JsonlReplayDataSource
from wsreplay.marketdata.subscriptions.mappers import subscription_mappers
from wsreplay.session.registry import SessionRegistry
from wsreplay.session.replay_session import ReplaySession, SessionKey

log = structlog.get_logger()


def create_app(app_settings: AppSettings | None = None) -> FastAPI:
    """
    Application factory.

    This function is the single place where the FastAPI app
    is created and configured. Each app owns its own session registry.
    """
    cfg = app_settings if app_settings is not None else settings

    # Initialize structured logging
    configure_logging(level=cfg.log_level, json=cfg.log_json)

    app = FastAPI(
        title="wsreplay",
        version="0.1.0",
    )

    replay = JsonlReplayDataSource(root=cfg.data_dir)

    def new_session(key: SessionKey) -> ReplaySession:
        return ReplaySession(
            key=key,
            replay=replay,
            start_delay_s=cfg.session_start_delay_ms / 1000,
            backpressure_poll_s=cfg.backpressure_poll_ms / 1000,
            drain_poll_s=cfg.drain_poll_ms / 1000,
        )

    app.state.settings = cfg
    app.state.mappers = subscription_mappers
    app.state.registry = SessionRegistry(factory=new_session)

    @app.on_event("startup")
    async def on_startup() -> None:
        log.info(
            "app.startup",
            environment=cfg.env,
            data_dir=str(cfg.data_dir),
            exchanges=sorted(subscription_mappers),
        )

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        log.info("app.shutdown", active_sessions=len(app.state.registry))
        # Sessions cannot be cancelled, let the running ones close their sockets
        await app.state.registry.wait_idle()

    # Mount API
    app.include_router(api_router, prefix="/api")
    app.include_router(replay_router)

    return app


def main() -> None:
    uvicorn.run(
        "wsreplay.app.main:app",
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


# ASGI entrypoint
app = create_app()


if __name__ == "__main__":
    main()

"""FastAPI application exposing read-only upgrade status."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
import uvicorn

from hostupgrade.utils.logging import setup_logger
from hostupgrade.models.config import UpgradeConfig
from hostupgrade.services.state_manager import StateStore
from hostupgrade.api.routes import router

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 12316


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown hooks.

    Startup:
    - Initialize logger
    - Report any persistent upgrade state (read-only, never repaired here)

    Shutdown:
    - Log shutdown message
    """
    config = UpgradeConfig.from_env()
    logger = setup_logger("hostupgrade", config.log_file, level=logging.INFO)
    logger.info("hostupgrade status API starting up...")

    state = StateStore(config.state_file).peek_state()
    if state:
        logger.info(
            f"Found upgrade state: {state.original_version} -> {state.target_version}, "
            f"stage={state.current_stage.value}, "
            f"done={len(state.completed_upgrades)}/{len(state.upgrade_path)}"
        )
        if state.is_gracefully_degraded():
            logger.warning("Last upgrade was abandoned with graceful degradation")
    else:
        logger.info("No upgrade state found")

    yield

    logger.info("hostupgrade status API shutting down...")


app = FastAPI(
    title="hostupgrade",
    description="Status API for the Ubuntu release upgrade orchestrator",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "hostupgrade", "version": "1.0.0"}


def main(host: str = DEFAULT_HOST, port: int = DEFAULT_PORT):
    """Main entry point for running the server."""
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        access_log=True,
    )


if __name__ == "__main__":
    main()

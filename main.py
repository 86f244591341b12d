# =============================================
#  WB SELLER SYNC - HTTP ENTRYPOINT
# =============================================
#
# Run with:  uvicorn main:create_app --factory --port 8001
#
# The app is built by a factory so importing this module never touches the
# database or the environment.

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import config
from routes import register_sync_routes
from wbsync.registry import SyncSession, build_sync_session

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("main")


def configure_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    """Console logging plus an optional rotating file; no-op if the root logger already has handlers."""
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return
    root_logger.setLevel((level or config.LOG_LEVEL).upper())
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_file = log_file or config.LOG_FILE_PATH
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5_000_000,  # 5 MB
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn").propagate = True
    logging.getLogger("uvicorn.error").propagate = True
    logging.getLogger("uvicorn.access").propagate = True


def create_app(session: Optional[SyncSession] = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title=config.APP_NAME, version=config.APP_VERSION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    session = session or build_sync_session()
    register_sync_routes(app, session)

    @app.get("/health")
    def health() -> dict:
        return {"ok": True, "app": config.APP_NAME, "version": config.APP_VERSION}

    logger.info("[Startup] %s ready (db=%s)", config.APP_NAME, session.ctx.checkpoints.db_path)
    return app


if __name__ == "__main__":
    uvicorn.run(
        "main:create_app",
        factory=True,
        host=os.getenv("WB_SYNC_HOST", "127.0.0.1"),
        port=int(os.getenv("WB_SYNC_PORT", "8001")),
    )

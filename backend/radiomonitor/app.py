from __future__ import annotations

import inspect
import logging
import logging.handlers
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, TextIO, cast

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
import slowapi.extension as slowapi_extension
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from . import __version__
from .api import router as api_router
from .config import AppConfig, parse_log_level
from .state import AppState
from .storage import EventLog

# Work around slowapi using deprecated asyncio.iscoroutinefunction on Python 3.14+.
slowapi_asyncio = cast(Any, getattr(slowapi_extension, "asyncio", None))
if slowapi_asyncio is not None:
    slowapi_asyncio.iscoroutinefunction = inspect.iscoroutinefunction

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class SafeStreamHandler(logging.StreamHandler[TextIO]):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            super().emit(record)
        except ValueError:
            pass


def _has_handler(root: logging.Logger, kind: type[logging.Handler], marker: str) -> bool:
    return any(isinstance(h, kind) and getattr(h, "_radiomonitor", None) == marker for h in root.handlers)


def setup_file_logging(config: AppConfig) -> None:
    """Configure file-based logging with rotation plus a console handler.

    Logs to ``logging.file`` (relative paths are resolved against the
    working directory) with 5MB rotation, 3 backups. The console handler
    uses ``logging.level``. Calling this twice does not add duplicate
    handlers.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if config.logging.file and not _has_handler(root_logger, logging.handlers.RotatingFileHandler, "file"):
        log_file = Path(config.logging.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        # 5MB max, 3 backups = 20MB total max
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        setattr(file_handler, "_radiomonitor", "file")
        root_logger.addHandler(file_handler)
        logging.info("File logging initialized: %s", log_file)

    if not _has_handler(root_logger, SafeStreamHandler, "console"):
        console_handler = SafeStreamHandler()
        console_handler.setLevel(parse_log_level(config.logging.level))
        console_handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
        setattr(console_handler, "_radiomonitor", "console")
        root_logger.addHandler(console_handler)

    # The driver logs every heartbeat at DEBUG
    logging.getLogger("pymongo").setLevel(logging.INFO)


def create_app(
    config: AppConfig,
    config_path: str | None = None,
    event_log: EventLog | None = None,
) -> FastAPI:
    setup_file_logging(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Load registries and start consuming the event log.

        A StartupError (event log unreachable) propagates and aborts startup.
        """
        app_state: AppState = app.state.app_state
        await app_state.start()
        logger.info(
            f"radiomonitor started: {app_state.talkgroups.count} talkgroups, "
            f"{len(app_state.known_systems())} systems"
        )
        try:
            yield
        finally:
            try:
                await app_state.stop()
            except Exception as e:
                logger.warning("Error during shutdown: %s", e)
            logger.info("radiomonitor stopped")

    app = FastAPI(title="radiomonitor", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Configure rate limiting
    limiter = Limiter(key_func=get_remote_address, default_limits=["600/minute"])
    app.state.limiter = limiter
    rate_limit_handler = cast(Callable[[Request, Exception], Response], _rate_limit_exceeded_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

    app.state.app_state = AppState.from_config(config, config_path, log=event_log)

    app.include_router(api_router, prefix="/api/v1")

    @app.get("/")
    def root() -> dict[str, str]:
        return {"message": "radiomonitor API", "docs": "/docs"}

    @app.get("/health")
    @limiter.limit("30/minute")
    def health(request: Request) -> dict[str, str]:
        return {"status": "ok"}

    return app

"""Truth pipeline service: HTTP intake/read APIs plus the recompute worker."""

import asyncio
import contextlib
import logging
from collections.abc import Iterator

import uvicorn

from .config import Config
from .http_server import create_app
from .logging import setup_logging
from .registry import registered_types
from .worker import Worker

# Import handlers to register them
from . import handlers  # noqa: F401


class _EmbeddedServer(uvicorn.Server):
    """Uvicorn without its own signal handling; the worker owns SIGTERM/SIGINT."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def main() -> None:
    config = Config.from_env()
    setup_logging(config.log_format)

    logger = logging.getLogger(__name__)
    logger.info("Truth pipeline starting")
    logger.info("Log format: %s", config.log_format)
    logger.info("HTTP port: %d", config.http_port)
    logger.info("Registered job types: %s", registered_types())
    if not config.oura_webhook_secret:
        logger.warning("OURA_WEBHOOK_SECRET not set; Oura webhooks will be rejected")

    asyncio.run(_run(config))


async def _run(config: Config) -> None:
    logger = logging.getLogger(__name__)

    server = _EmbeddedServer(
        uvicorn.Config(
            create_app(config),
            host="0.0.0.0",
            port=config.http_port,
            log_config=None,
            access_log=False,
        )
    )
    serving = asyncio.create_task(server.serve())
    logger.info("HTTP server started")

    try:
        await Worker(config).run()
    finally:
        server.should_exit = True
        await serving


if __name__ == "__main__":
    main()

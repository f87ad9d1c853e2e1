"""Workout processor entry point: health endpoint plus the job worker."""

import asyncio
import logging

from . import handlers  # noqa: F401  (registers the job handlers)
from .config import Config
from .health import start_health_server
from .logging import setup_logging
from .registry import registered_types
from .worker import Worker

logger = logging.getLogger(__name__)


def main() -> None:
    config = Config.from_env()
    setup_logging(config.log_format)

    logger.info(
        "Workout processor starting (job_types=%s, publishes=%s, other_type_id=%d, "
        "health_port=%d, log_format=%s)",
        registered_types(),
        config.created_job_type,
        config.workout_type_other_id,
        config.health_port,
        config.log_format,
    )
    asyncio.run(_run(config))


async def _run(config: Config) -> None:
    health_server = await start_health_server(config.health_port, config.database_url)
    try:
        await Worker(config).run()
    finally:
        health_server.close()
        await health_server.wait_closed()
        logger.info("Workout processor stopped")


if __name__ == "__main__":
    main()

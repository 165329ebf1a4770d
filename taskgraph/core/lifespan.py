"""Engine lifespan: startup and shutdown of a Container's services."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from taskgraph.core.container import Container
from taskgraph.core.health import set_startup_time
from taskgraph.core.logging import configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def engine_lifespan(container: Container) -> AsyncIterator[Container]:
    """Run the engine for the duration of the ``async with`` block.

    Startup configures logging, records the startup time, connects the cache
    and reconciles executions interrupted by a previous process. Shutdown
    stops running executions and closes the cache.
    """
    settings = container.settings()
    configure_logging(settings)
    set_startup_time()
    logger.info("Starting taskgraph engine")

    cache = container.cache()
    await cache.startup()

    recovered = await container.recovery_sweeper().recover()
    if recovered:
        logger.info("Recovered interrupted executions on startup",
                    count=len(recovered),
                    execution_ids=recovered)

    logger.info("Engine started successfully",
                redis=cache.is_redis_available(),
                default_parallelism=settings.default_parallelism)
    try:
        yield container
    finally:
        await container.executor().shutdown()
        await cache.shutdown()
        logger.info("Engine shutdown complete")

"""Analysis worker process entrypoint."""

import asyncio
import logging
import signal

from config import settings, validate_worker_settings
from services.recovery import run_startup_recovery
from services.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


async def run() -> None:
    validate_worker_settings()
    recovered = await run_startup_recovery()
    logger.info("Startup recovery: %s", recovered)

    pool = WorkerPool()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pool.request_stop)
        except NotImplementedError:
            # Windows event loops do not support signal handlers.
            pass
    await pool.run_forever()


def main():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run())


if __name__ == "__main__":
    main()

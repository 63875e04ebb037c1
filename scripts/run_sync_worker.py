#!/usr/bin/env python3
import asyncio

from notisync.core.config import settings
from notisync.core.logging_config import get_logger
from notisync.core.scheduler import start_scheduler
from notisync.services.sync_service import SyncService

logger = get_logger(__name__)


async def main():
    logger.info("Starting notification sync worker...")
    service = SyncService.build(settings)
    await service.start()
    scheduler = start_scheduler(service)
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        logger.info("Sync worker shutting down.")
    finally:
        scheduler.shutdown(wait=False)
        await service.stop()


if __name__ == "__main__":
    asyncio.run(main())

"""
Storefront client entry point.
Initializes the client core, warms the cache and reports system status.
"""

import asyncio
import json

from loguru import logger

from storefront.core import StorefrontCore
from storefront.services import BatchItem, RequestOptions


async def main() -> None:
    logger.info("Starting storefront client...")
    core = StorefrontCore()

    try:
        await core.initialize(warmup=True)

        outcomes = await core.batch_requests(
            [
                BatchItem("/products", RequestOptions(params={"page": 1})),
                BatchItem("/categories"),
            ]
        )
        for outcome in outcomes:
            if outcome.success:
                logger.info(f"Fetched: {str(outcome.data)[:80]}")
            else:
                logger.warning(f"Request failed: {outcome.error}")

        logger.info(json.dumps(core.get_system_status(), indent=2, default=str))

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        await core.shutdown()
        logger.info("Storefront client stopped")


if __name__ == "__main__":
    asyncio.run(main())

"""Command line interface for running the API server."""
import asyncio
import logging

import uvicorn

from config import settings_conf
from database import init_db, close as db_close

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class UvicornServer:
    """Wrapper for running uvicorn with proper lifecycle management."""

    def __init__(self, app_path: str = "api:app", host: str = "0.0.0.0", port: int = 8000):
        self.config = uvicorn.Config(
            app_path,
            host=host,
            port=port,
            log_level="info"
        )
        self.server = uvicorn.Server(self.config)

    async def run(self):
        """Run the server in a way that can be stopped."""
        await self.server.serve()


async def main():
    """Initialize the database and serve the API until interrupted."""
    logger.info("Initializing database...")
    await init_db()

    server = UvicornServer(
        host=settings_conf['api_host'],
        port=settings_conf['api_port']
    )

    try:
        await server.run()
    finally:
        logger.info("Closing database connections...")
        await db_close()
        logger.info("Cleanup complete.")


if __name__ == "__main__":
    asyncio.run(main())

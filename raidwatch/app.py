import asyncio
import logging
import signal

from .config import WatcherConfig, load_config
from .guilds import MemoryGuildStore, configure_guild
from .warcraftlogs import WarcraftLogsClient
from .watcher import StatsUpdate, Watcher

# Default to INFO until the configured level is applied at startup
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s"
)
LOGGER = logging.getLogger(__name__)


def log_update(update: StatsUpdate):
    LOGGER.info(
        "Update key=%s report=%s live=%s deaths=%s first_deaths=%s",
        update.key,
        update.url,
        update.live,
        [(top.name, top.value) for top in update.top_deaths],
        [(top.name, top.value) for top in update.top_first_deaths],
    )


class WatchService:
    def __init__(self, config: WatcherConfig, client: WarcraftLogsClient | None = None):
        self.config = config
        self.client = client or WarcraftLogsClient(
            config.wcl_client_id, config.wcl_client_secret
        )
        self.store = MemoryGuildStore()
        self.watcher = Watcher(self.client)
        self.watcher.on_update(log_update)

    async def start(self):
        await self.client.start()
        for guild in self.config.guilds:
            configure_guild(self.store, self.watcher, guild)
        LOGGER.info("Watching %s guilds", len(self.watcher.watched_guilds()))

    async def close(self):
        await self.watcher.close()
        await self.client.close()


async def main():
    config = load_config()
    logging.getLogger().setLevel(config.log_level)
    LOGGER.setLevel(config.log_level)

    service = WatchService(config)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await service.start()
        await stop.wait()
        LOGGER.info("Shutting down")
    finally:
        await service.close()


if __name__ == "__main__":
    asyncio.run(main())

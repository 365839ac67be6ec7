# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import asyncio
import contextlib
import signal
from typing import Optional

import discord
import uvicorn

from admin.app import create_app
from common.config import Config, CURRENT_VERSION
from common.logging_setup import configure_app_logging, get_logger
from common.rate_limiter import RateGovernor
from common.websockets import AdminBus, CloneEventRelay
from cloner.discord_client import DiscordWorkspaceClient
from cloner.registry import OperationRegistry

logger = get_logger("cloner.service")


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class CloneService:
    """
    Process entry point: a py-cord bot serving the clone registry through the
    admin API, with clone events relayed to the admin bus.
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self.bot = discord.Bot(intents=discord.Intents.all(), loop=self.loop)
        self.client = DiscordWorkspaceClient(self.bot)
        self.governor = RateGovernor(self.config.MUTATION_INTERVAL_SECONDS)
        self.registry = OperationRegistry(
            self.client, config=self.config, governor=self.governor
        )
        self.bus = AdminBus(
            role="cloner",
            logger=get_logger("cloner.bus").logger,
            admin_ws_url=self.config.ADMIN_WS_URL,
        )
        self.relay = CloneEventRelay(self.registry.events, self.bus)
        self.app = create_app(self.registry)
        self.api: Optional[_EmbeddedServer] = None
        self._api_task: Optional[asyncio.Task] = None
        self._surfaces_started = False
        self._shutting_down = False
        self.bot.event(self.on_ready)

    async def on_ready(self):
        logger.info(
            "[🤖] Logged in as %s; in %d guild(s)", self.bot.user, len(self.bot.guilds)
        )
        if self._surfaces_started:
            return
        self._surfaces_started = True
        self.api = _EmbeddedServer(
            uvicorn.Config(
                self.app,
                host=self.config.API_HOST,
                port=self.config.API_PORT,
                log_config=None,
                lifespan="on",
            )
        )
        self._api_task = asyncio.create_task(self.api.serve(), name="admin-api")
        logger.info(
            "[🌐] Admin API listening on %s:%s", self.config.API_HOST, self.config.API_PORT
        )
        if self.bus.enabled:
            self.relay.start()
            await self.bus.status(running=True, status="Ready", version=CURRENT_VERSION)

    async def _shutdown(self):
        """
        Gracefully shut down:
        1) stop the bus from retrying
        2) cancel active clones (each rolls back its target guild)
        3) stop the API and relay
        4) close the HTTP session and the bot last
        """
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutting down cloner...")

        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self.bus.status(running=False, status="Stopped"), 0.4)
        self.bus.begin_shutdown()

        await self.registry.aclose()
        await self.relay.stop()

        if self.api is not None:
            self.api.should_exit = True
        if self._api_task is not None:
            try:
                await asyncio.wait_for(self._api_task, 5.0)
            except asyncio.TimeoutError:
                self._api_task.cancel()
            except Exception:
                logger.debug("[shutdown] admin API stop failed", exc_info=True)

        try:
            await self.client.close()
        except Exception:
            logger.debug("[shutdown] aiohttp session close failed", exc_info=True)

        if not self.bot.is_closed():
            await self.bot.close()
        logger.info("Shutdown complete.")

    def run(self):
        """Start the bot and block until it stops, shutting down on SIGTERM/SIGINT."""
        configure_app_logging(self.config.LOG_FORMAT, self.config.LOG_LEVEL)
        logger.info("[✨] Starting Copycord Cloner %s", CURRENT_VERSION)
        if not self.config.SERVER_TOKEN:
            logger.error("[⛔] SERVER_TOKEN is not set")
            raise SystemExit(2)

        loop = self.loop
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self._shutdown()))

        try:
            loop.run_until_complete(self.bot.start(self.config.SERVER_TOKEN))
        finally:
            if not self._shutting_down:
                loop.run_until_complete(self._shutdown())
            pending = asyncio.all_tasks(loop=loop)
            for task in pending:
                task.cancel()
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()


def main():
    CloneService().run()


if __name__ == "__main__":
    main()

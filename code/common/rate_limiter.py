# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import asyncio, logging, time
from enum import Enum
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("common.rate_limiter")

DEFAULT_MUTATION_INTERVAL = 1.0


class ActionType(Enum):
    CREATE_GUILD = "create_guild"
    EDIT_GUILD = "edit_guild"
    DELETE_GUILD = "delete_guild"
    ROLE = "role"
    CREATE_CHANNEL = "create_channel"
    EMOJI = "emoji"
    WEBHOOK_CREATE = "webhook_create"
    INVITE = "invite"


class RateGovernor:
    """
    Fixed-delay governor shared by every clone run.

    ``throttle()`` returns once ``min_interval`` seconds have passed since the
    previous call returned. Calls are serialized, so concurrent runs queue up
    behind each other instead of bursting.
    """

    def __init__(
        self,
        min_interval: float = DEFAULT_MUTATION_INTERVAL,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self._min_interval = float(min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_release: Optional[float] = None
        self._calls = 0

    @property
    def min_interval(self) -> float:
        return self._min_interval

    @property
    def calls(self) -> int:
        return self._calls

    async def throttle(self, action: Optional[ActionType] = None) -> None:
        async with self._lock:
            if self._last_release is not None:
                wait = self._last_release + self._min_interval - self._clock()
                if wait > 0:
                    logger.debug(
                        "[⏳] throttle %s: sleeping %.2fs",
                        action.value if action else "-",
                        wait,
                    )
                    await self._sleep(wait)
            self._calls += 1
            self._last_release = self._clock()

    def remaining(self) -> float:
        """Seconds until the next call would pass without waiting."""
        if self._last_release is None:
            return 0.0
        return max(0.0, self._last_release + self._min_interval - self._clock())

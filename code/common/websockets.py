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
import json
import logging
import random
import time
import uuid
from typing import Any, Awaitable, Callable, Optional
import websockets
from websockets.exceptions import (
    ConnectionClosedError,
    ConnectionClosedOK,
    ProtocolError,
)

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[Any]]


def _kind(p: dict | None) -> str:
    try:
        return (p or {}).get("kind") or (p or {}).get("type") or "(none)"
    except Exception:
        return "(?)"


def _json(obj: Any) -> str:
    try:
        return json.dumps(obj, separators=(",", ":"), default=str)
    except Exception as e:
        return f'{{"ok":false,"error":"json-dumps-failed:{e!r}"}}'


def _bytes_len(s: str | bytes) -> int:
    if isinstance(s, bytes):
        return len(s)
    return len(s.encode("utf-8", errors="replace"))


class WebsocketManager:
    """
    Outbound fire-and-forget sender: connect, send one JSON frame, close.

    Retries connection errors with exponential backoff. After
    `begin_shutdown()` retries and timeouts collapse so the process exits
    quickly.
    """

    def __init__(
        self,
        send_url: Optional[str],
        logger: Optional[logging.Logger] = None,
        connect: Optional[Connector] = None,
    ):
        self.send_url = send_url
        self.logger = logger or logging.getLogger("WebsocketManager")
        self._connect = connect or websockets.connect
        self._shutting_down = False

    # ---------- lifecycle ----------
    @property
    def enabled(self) -> bool:
        return bool(self.send_url)

    def begin_shutdown(self) -> None:
        """Mark the manager as shutting down; short-circuit retries/timeouts."""
        self._shutting_down = True

    async def stop(self) -> None:
        self.begin_shutdown()

    async def _close_quietly(self, ws) -> None:
        with contextlib.suppress(
            ConnectionClosedOK, ConnectionClosedError, ProtocolError, RuntimeError, OSError
        ):
            await ws.close()

    async def _sleep_backoff(self, attempt: int, base: float, cap: float, jitter: float) -> None:
        """Exponential backoff with jitter. attempt >= 1"""
        delay = min(cap, base * (2 ** (attempt - 1)))
        j = random.random() * (jitter * delay)
        delay += j
        self.logger.debug("[ws⏳] backoff attempt=%d delay=%.2fs", attempt, delay)
        await asyncio.sleep(delay)

    # ---------- outbound ----------
    async def send_json(self, obj: Any) -> bool:
        """Send `obj` as a JSON object, wrapping non-dicts. Returns success."""
        if isinstance(obj, str):
            try:
                obj = json.loads(obj)
            except ValueError:
                obj = {"type": "(none)", "data": obj}
        if not isinstance(obj, dict):
            obj = {"type": "(none)", "data": obj}
        return await self.send(obj)

    async def send(
        self,
        payload: dict,
        *,
        max_attempts: int = 5,
        base_backoff: float = 0.5,
        backoff_cap: float = 8.0,
        jitter: float = 0.2,
        connect_timeout: float = 5.0,
        send_timeout: float = 5.0,
    ) -> bool:
        if not self.enabled:
            return False

        payload = dict(payload)
        rid = payload.setdefault("rid", str(uuid.uuid4()))
        kind = _kind(payload)

        if self._shutting_down:
            max_attempts = 1
            connect_timeout = min(connect_timeout, 0.25)
            send_timeout = min(send_timeout, 0.25)

        for attempt in range(1, max_attempts + 1):
            try:
                t0 = time.monotonic()
                ws = await asyncio.wait_for(
                    self._connect(self.send_url, max_size=None, ping_interval=None),
                    connect_timeout,
                )
                try:
                    raw = _json(payload)
                    await asyncio.wait_for(ws.send(raw), send_timeout)
                    self.logger.debug(
                        "[ws→] sent kind=%s rid=%s bytes=%d ms=%.1f",
                        kind, rid, _bytes_len(raw), (time.monotonic() - t0) * 1000,
                    )
                finally:
                    await self._close_quietly(ws)
                return True

            except (asyncio.TimeoutError, OSError, ConnectionClosedError) as e:
                last = self._shutting_down or attempt >= max_attempts
                lvl = self.logger.info if last else self.logger.warning
                lvl("[WS] send error attempt %d/%d rid=%s kind=%s: %s",
                    attempt, max_attempts, rid, kind, e)
                if last:
                    break
                await self._sleep_backoff(attempt, base_backoff, backoff_cap, jitter)

            except Exception as e:
                self.logger.error("[⛔] WS send unexpected failure rid=%s kind=%s: %s", rid, kind, e)
                break

        self.logger.info("[WS] send give-up rid=%s kind=%s", rid, kind)
        return False


class AdminBus:
    """
    Publishes envelopes to the admin bus:
    ``{"kind": ..., "role": ..., "payload": {...}}``.
    """

    def __init__(
        self,
        role: str,
        logger: Optional[logging.Logger] = None,
        admin_ws_url: Optional[str] = None,
        manager: Optional[WebsocketManager] = None,
    ):
        self.role = role
        self.logger = logger or logging.getLogger(f"AdminBus[{role}]")
        self.ws = manager or WebsocketManager(send_url=admin_ws_url, logger=self.logger)

    @property
    def enabled(self) -> bool:
        return self.ws.enabled

    def begin_shutdown(self) -> None:
        self.ws.begin_shutdown()

    async def stop(self) -> None:
        await self.ws.stop()

    async def publish(self, kind: str, payload: Any) -> bool:
        if not isinstance(payload, dict):
            payload = {"text": str(payload)}
            kind = kind or "log"
        env = {"kind": kind or "log", "role": self.role, "payload": payload}
        return await self.ws.send_json(env)

    async def status(self, **fields) -> bool:
        return await self.publish("status", fields)

    async def log(self, text: str) -> bool:
        return await self.publish("log", {"text": text})


class CloneEventRelay:
    """
    Forwards every clone event from a registry's firehose channel to the
    admin bus as ``kind="clone"`` envelopes. Stops when the channel closes.
    """

    def __init__(self, events, bus: AdminBus):
        self.events = events
        self.bus = bus
        self._task: Optional[asyncio.Task] = None
        self.forwarded = 0

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="clone-event-relay")
        return self._task

    async def run(self) -> None:
        q = self.events.subscribe()
        try:
            while True:
                ev = await q.get()
                if ev is None:
                    break
                try:
                    if await self.bus.publish("clone", ev.to_dict()):
                        self.forwarded += 1
                except Exception:
                    logger.exception("[⛔] Relay failed for %s event", getattr(ev, "kind", "?"))
        finally:
            self.events.unsubscribe(q)
            logger.debug("[ws] clone relay stopped after %d event(s)", self.forwarded)

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

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
import logging
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Set

from cloner.models import Phase

logger = logging.getLogger("cloner.events")


@dataclass(frozen=True)
class CloneEvent:
    kind: ClassVar[str] = "event"

    operation_id: str
    at: float = field(default_factory=time.time, compare=False)

    @property
    def terminal(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "operation_id": self.operation_id, "at": self.at}


@dataclass(frozen=True)
class ProgressEvent(CloneEvent):
    kind: ClassVar[str] = "progress"

    phase: Phase = Phase.INITIALIZING
    percent: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update(phase=self.phase.value, percent=self.percent, message=self.message)
        return d


@dataclass(frozen=True)
class CompletedEvent(CloneEvent):
    kind: ClassVar[str] = "completed"

    source_id: int = 0
    target_id: int = 0
    name: str = ""
    invite_code: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update(
            source_id=str(self.source_id),
            target_id=str(self.target_id),
            name=self.name,
            invite_code=self.invite_code,
        )
        return d


@dataclass(frozen=True)
class FailedEvent(CloneEvent):
    kind: ClassVar[str] = "failed"

    phase: Phase = Phase.INITIALIZING
    error: str = ""

    @property
    def terminal(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update(phase=self.phase.value, error=self.error)
        return d


@dataclass(frozen=True)
class CancelledEvent(CloneEvent):
    kind: ClassVar[str] = "cancelled"

    phase: Phase = Phase.INITIALIZING

    @property
    def terminal(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update(phase=self.phase.value)
        return d


class EventChannel:
    """
    Fan-out of clone events to any number of subscriber queues.

    Delivery is at-most-once and there is no replay: a queue only sees events
    published after it subscribed. A full queue drops the event for that
    subscriber. ``close()`` pushes ``None`` to every subscriber so readers can
    stop iterating. Events are also forwarded to ``parent`` when given.
    """

    def __init__(
        self,
        *,
        maxsize: int = 256,
        parent: Optional["EventChannel"] = None,
        name: str = "events",
    ):
        self._maxsize = maxsize
        self._parent = parent
        self._subs: Set[asyncio.Queue] = set()
        self._closed = False
        self.name = name

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        if self._closed:
            q.put_nowait(None)
            return q
        self._subs.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subs.discard(q)

    def publish(self, event: CloneEvent) -> int:
        """Deliver to current subscribers; returns how many received it."""
        if self._closed:
            logger.debug("[📣] %s closed; dropping %s", self.name, event.kind)
            return 0
        delivered = 0
        for q in list(self._subs):
            try:
                q.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.debug(
                    "[📣] %s subscriber queue full; dropped %s", self.name, event.kind
                )
        if self._parent is not None:
            self._parent.publish(event)
        return delivered

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for q in list(self._subs):
            try:
                q.put_nowait(None)
            except asyncio.QueueFull:
                # make room for the end marker
                try:
                    q.get_nowait()
                    q.put_nowait(None)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass
        self._subs.clear()

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
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from common.config import Config
from common.rate_limiter import RateGovernor
from cloner.errors import CapacityExceeded, OperationNotFound, Unauthorized
from cloner.events import EventChannel
from cloner.models import CloneOperation, CloneOptions, OperationStatus
from cloner.orchestrator import CloneOrchestrator
from cloner.protocols import WorkspaceClient

logger = logging.getLogger("cloner.registry")

# terminal statuses kept for wait(), independent of the retention window
DONE_HISTORY = 256


@dataclass
class _Run:
    orchestrator: CloneOrchestrator
    channel: EventChannel
    task: Optional[asyncio.Task] = None

    @property
    def operation(self) -> CloneOperation:
        return self.orchestrator.operation


class OperationRegistry:
    """
    Book-keeping for in-flight clone runs.

    Enforces the concurrency ceiling (fail fast, never queue), answers status
    lookups and routes cancel requests to the owning orchestrator. It never
    touches operation state itself.
    """

    def __init__(
        self,
        client: WorkspaceClient,
        *,
        config: Optional[Config] = None,
        governor: Optional[RateGovernor] = None,
        max_concurrent: Optional[int] = None,
        retention_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or Config()
        self.client = client
        self.governor = governor or RateGovernor(self.config.MUTATION_INTERVAL_SECONDS)
        self.max_concurrent = int(
            max_concurrent if max_concurrent is not None else self.config.MAX_CONCURRENT_CLONES
        )
        self.retention_seconds = float(
            retention_seconds
            if retention_seconds is not None
            else self.config.STATUS_RETENTION_SECONDS
        )
        self._clock = clock
        self._active: Dict[str, _Run] = {}
        self._finished: Dict[str, Tuple[float, OperationStatus]] = {}
        self._done: "OrderedDict[str, OperationStatus]" = OrderedDict()
        # every run's events, for relays and dashboards
        self.events = EventChannel(maxsize=self.config.EVENT_QUEUE_SIZE, name="registry")

    @property
    def active_count(self) -> int:
        return len(self._active)

    # ---------- lifecycle ----------
    def start(
        self,
        source_id: int,
        requester_id: int,
        options: Union[CloneOptions, Mapping[str, Any], None] = None,
    ) -> str:
        """Launch a clone run in the background and return its id."""
        if len(self._active) >= self.max_concurrent:
            logger.warning(
                "[🚦] Clone of %s refused: %d/%d runs active",
                source_id,
                len(self._active),
                self.max_concurrent,
            )
            raise CapacityExceeded(self.max_concurrent)

        if not isinstance(options, CloneOptions):
            options = CloneOptions.from_mapping(options)
        op = CloneOperation(
            source_id=int(source_id), requester_id=int(requester_id), options=options
        )
        channel = EventChannel(
            maxsize=self.config.EVENT_QUEUE_SIZE,
            parent=self.events,
            name=f"clone:{op.id[:8]}",
        )
        orchestrator = CloneOrchestrator(
            op,
            client=self.client,
            governor=self.governor,
            channel=channel,
            config=self.config,
        )
        run = _Run(orchestrator=orchestrator, channel=channel)
        coro = self._drive(run)
        try:
            run.task = asyncio.create_task(coro, name=f"clone-{op.id[:8]}")
        except RuntimeError:
            coro.close()
            raise
        self._active[op.id] = run
        run.task.add_done_callback(self._run_done_cb)
        logger.info(
            "[🚀] Clone %s started for guild %s (correlation %s)",
            op.id,
            source_id,
            op.correlation_id,
        )
        return op.id

    async def _drive(self, run: _Run) -> OperationStatus:
        try:
            return await run.orchestrator.run()
        finally:
            self._retire(run)

    def _run_done_cb(self, task: asyncio.Task) -> None:
        """Log anything that escaped the orchestrator."""
        try:
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("[⛔] Clone task %s crashed", task.get_name())

    def _retire(self, run: _Run) -> None:
        op = run.operation
        self._active.pop(op.id, None)
        status = op.status()
        self._done[op.id] = status
        while len(self._done) > DONE_HISTORY:
            self._done.popitem(last=False)
        if self.retention_seconds > 0:
            self._finished[op.id] = (self._clock() + self.retention_seconds, status)
        logger.debug("[🧹] Clone %s retired as %s", op.id, op.phase.value)

    def _prune(self) -> None:
        now = self._clock()
        for op_id in [k for k, (exp, _) in self._finished.items() if exp <= now]:
            self._finished.pop(op_id, None)

    # ---------- queries ----------
    def get_status(self, operation_id: str) -> OperationStatus:
        run = self._active.get(operation_id)
        if run is not None:
            return run.operation.status()
        self._prune()
        kept = self._finished.get(operation_id)
        if kept is not None:
            return kept[1]
        raise OperationNotFound(operation_id)

    def list_active(self) -> List[OperationStatus]:
        return [run.operation.status() for run in self._active.values()]

    def request_cancel(self, operation_id: str, requester_id: int) -> None:
        run = self._active.get(operation_id)
        if run is None:
            raise OperationNotFound(operation_id)
        if run.operation.requester_id != int(requester_id):
            logger.warning(
                "[⚠️] Unauthorized cancel of clone %s by user %s",
                operation_id,
                requester_id,
            )
            raise Unauthorized(operation_id, int(requester_id))
        if run.orchestrator.request_cancel():
            logger.info("[🛑] Clone %s cancel requested by %s", operation_id, requester_id)

    # ---------- events ----------
    def subscribe(self, operation_id: str) -> asyncio.Queue:
        """Live events of one run. Earlier events are not replayed."""
        run = self._active.get(operation_id)
        if run is None:
            raise OperationNotFound(operation_id)
        return run.channel.subscribe()

    def unsubscribe(self, operation_id: str, queue: asyncio.Queue) -> None:
        run = self._active.get(operation_id)
        if run is not None:
            run.channel.unsubscribe(queue)

    async def wait(self, operation_id: str) -> OperationStatus:
        """Wait for a run to reach a terminal phase."""
        run = self._active.get(operation_id)
        if run is not None and run.task is not None:
            await asyncio.wait({run.task})
            return run.operation.status()
        done = self._done.get(operation_id)
        if done is not None:
            return done
        return self.get_status(operation_id)

    async def aclose(self, timeout: float = 30.0) -> None:
        """Cancel every active run (with rollback) and wait for them."""
        runs = list(self._active.values())
        if runs:
            logger.info("[🛑] Cancelling %d active clone(s)", len(runs))
            for run in runs:
                run.orchestrator.request_cancel()
            tasks = {r.task for r in runs if r.task is not None}
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self.events.close()

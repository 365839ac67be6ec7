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
from collections import Counter
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from common.config import Config
from common.logging_setup import bind_operation, get_logger
from common.rate_limiter import ActionType, RateGovernor
from cloner.errors import (
    PHASE_FATAL,
    ClientUnavailable,
    CloneCancelled,
    CloneError,
    CreationFailed,
    EntityCloneFailed,
    PermissionDenied,
    SourceUnavailable,
)
from cloner.events import (
    CancelledEvent,
    CompletedEvent,
    EventChannel,
    FailedEvent,
    ProgressEvent,
)
from cloner.models import (
    PHASE_WEIGHTS,
    ChannelKind,
    ChannelSnapshot,
    ChannelSpec,
    CloneOperation,
    EmojiSnapshot,
    EmojiSpec,
    EntityType,
    OperationStatus,
    Phase,
    RoleSnapshot,
    RoleSpec,
    WebhookSnapshot,
    WebhookSpec,
    WorkspaceSnapshot,
    WorkspaceSpec,
)
from cloner.permissions import translate_overwrites
from cloner.protocols import WorkspaceClient
from cloner.rollback import RollbackManager

T = TypeVar("T")

_PHASE_ACTION = {
    Phase.ROLES: ActionType.ROLE,
    Phase.CHANNELS: ActionType.CREATE_CHANNEL,
    Phase.EMOJIS: ActionType.EMOJI,
    Phase.WEBHOOKS: ActionType.WEBHOOK_CREATE,
}


class CloneOrchestrator:
    """
    Drives one clone run through its phases:

        initializing -> creating -> roles -> channels -> emojis -> webhooks
        -> finalizing -> completed | failed | cancelled

    The orchestrator is the only writer of its ``CloneOperation``. Entity
    failures are logged and skipped; run-level failures and cancellation roll
    the target guild back before the terminal event is published.
    """

    def __init__(
        self,
        operation: CloneOperation,
        *,
        client: WorkspaceClient,
        governor: RateGovernor,
        channel: EventChannel,
        config: Optional[Config] = None,
        rollback: Optional[RollbackManager] = None,
    ):
        self.op = operation
        self.client = client
        self.governor = governor
        self.channel = channel
        self.config = config or Config()
        self.rollback = rollback or RollbackManager(client, governor)
        self.stats: Counter = Counter()
        self.log = get_logger(
            "cloner.orchestrator",
            op_id=operation.id,
            correlation_id=operation.correlation_id,
        )

    @property
    def operation(self) -> CloneOperation:
        return self.op

    def request_cancel(self) -> bool:
        """Flag the run for cancellation; picked up at the next check."""
        if self.op.phase.is_terminal:
            return False
        self.op.cancel_requested = True
        return True

    # ---------- driver ----------
    async def run(self) -> OperationStatus:
        op = self.op
        bind_operation(op.id, op.correlation_id)
        self.log.info(
            "[🚀] Starting clone of guild %s for user %s",
            op.source_id,
            op.requester_id,
            extra={"source_id": op.source_id},
        )
        try:
            snapshot = await self._initialize()
            await self._create_workspace(snapshot)
            if op.options.include_roles:
                await self._clone_roles(snapshot)
            if op.options.include_channels:
                await self._clone_channels(snapshot)
            if op.options.include_emojis:
                await self._clone_emojis(snapshot)
            if op.options.include_webhooks:
                await self._clone_webhooks(snapshot)
            invite = await self._finalize(snapshot)
            self._check_cancel()
            self._complete(snapshot, invite)
        except CloneCancelled as e:
            await self._abort(Phase.CANCELLED, e)
        except CloneError as e:
            await self._abort(Phase.FAILED, e)
        except asyncio.CancelledError:
            await self._abort(
                Phase.CANCELLED, CloneCancelled("Clone task cancelled", op.phase)
            )
            raise
        except Exception as e:
            self.log.exception("[⛔] Unexpected error during %s", op.phase.value)
            await self._abort(Phase.FAILED, CloneError(f"Unexpected error: {e}", op.phase))
        finally:
            self.channel.close()
        return op.status()

    # ---------- state machine helpers ----------
    def _check_cancel(self) -> None:
        if self.op.cancel_requested:
            raise CloneCancelled("Clone cancelled by user", self.op.phase)

    def _publish_progress(self, message: str) -> None:
        self.channel.publish(
            ProgressEvent(
                operation_id=self.op.id,
                phase=self.op.phase,
                percent=self.op.progress,
                message=message,
            )
        )

    def _enter(self, phase: Phase, message: str) -> None:
        self._check_cancel()
        self.op.advance(phase)
        self.op.set_progress(PHASE_WEIGHTS[phase][0])
        self.log.debug(
            "[🧩] Entering %s", phase.value, extra={"phase": phase.value}
        )
        self._publish_progress(message)

    def _report(self, done: int, total: int, message: str) -> None:
        start, end = PHASE_WEIGHTS[self.op.phase]
        if total > 0:
            self.op.set_progress(start + (end - start) * done / total)
        else:
            self.op.set_progress(end)
        self._publish_progress(message)

    def _complete(self, snapshot: WorkspaceSnapshot, invite: Optional[str]) -> None:
        op = self.op
        op.advance(Phase.COMPLETED)
        op.set_progress(100)
        self._publish_progress("Clone completed successfully")
        name = self.config.clone_name_for(snapshot.name, op.options.name)
        self.log.info(
            "[✅] Clone completed: %s -> %s (%s)",
            op.source_id,
            op.target_workspace_id,
            ", ".join(f"{k}={v}" for k, v in sorted(self.stats.items())) or "empty",
            extra={"target_id": op.target_workspace_id},
        )
        self.channel.publish(
            CompletedEvent(
                operation_id=op.id,
                source_id=op.source_id,
                target_id=op.target_workspace_id or 0,
                name=name,
                invite_code=invite,
            )
        )

    async def _abort(self, terminal: Phase, err: CloneError) -> None:
        """Roll back first, then report."""
        op = self.op
        stopped = op.phase
        op.error = err.message
        if terminal is Phase.CANCELLED:
            self.log.info("[🛑] Clone cancelled during %s", stopped.value)
        else:
            self.log.error(
                "[⛔] Clone failed during %s, initiating rollback: %s",
                stopped.value,
                err.message,
            )
        await self.rollback.rollback(op)
        op.advance(terminal)
        if terminal is Phase.CANCELLED:
            event = CancelledEvent(operation_id=op.id, phase=stopped)
        else:
            event = FailedEvent(operation_id=op.id, phase=stopped, error=err.message)
        self.channel.publish(event)

    async def _guarded_entities(
        self,
        entity_type: EntityType,
        items: Sequence[T],
        *,
        label: Callable[[T], str],
        source_id: Callable[[T], int],
        create: Callable[[T], Awaitable[Optional[int]]],
        on_created: Optional[Callable[[T, int], None]] = None,
    ) -> None:
        """
        Create each item in turn. ``create`` returns the new id, or None when
        the item is intentionally skipped.
        """
        op = self.op
        action = _PHASE_ACTION[op.phase]
        total = len(items)
        noun = entity_type.value
        for i, item in enumerate(items, 1):
            self._check_cancel()
            name = label(item)
            try:
                await self.governor.throttle(action)
                target_id = await create(item)
            except PHASE_FATAL:
                raise
            except Exception as e:
                failure = EntityCloneFailed(entity_type, source_id(item), name, e, op.phase)
                self.log.warning("[⚠️] %s", failure.message, extra={"entity": noun})
                self.stats[f"{noun}_failed"] += 1
                self._report(i, total, f"Failed to clone {noun}: {name}")
                continue

            if target_id is None:
                self.stats[f"{noun}_skipped"] += 1
                self._report(i, total, f"Skipped {noun}: {name}")
                continue

            self.rollback.record(op, entity_type, target_id)
            if on_created is not None:
                on_created(item, target_id)
            self.stats[f"{noun}_created"] += 1
            self.log.debug(
                "[🧩] Cloned %s %r %s -> %s",
                noun,
                name,
                source_id(item),
                target_id,
                extra={"entity": noun},
            )
            self._report(i, total, f"Cloned {noun}: {name}")

        if total == 0:
            self._report(0, 0, f"No {noun}s to clone")

    # ---------- phases ----------
    async def _initialize(self) -> WorkspaceSnapshot:
        op = self.op
        self._publish_progress("Fetching source server...")
        try:
            snapshot = await self.client.fetch_snapshot(op.source_id)
        except CloneError:
            raise
        except Exception as e:
            raise SourceUnavailable(
                f"Source server {op.source_id} not found or not accessible: {e}",
                op.phase,
            ) from e
        snapshot.validate()

        if self.config.REQUIRE_SOURCE_ADMIN:
            try:
                is_admin = await self.client.member_is_admin(op.source_id, op.requester_id)
            except ClientUnavailable:
                raise
            except Exception as e:
                raise SourceUnavailable(
                    f"Could not resolve requester {op.requester_id} in source server: {e}",
                    op.phase,
                ) from e
            if not is_admin:
                raise PermissionDenied(
                    "Administrator permissions required to clone server", op.phase
                )

        self.log.info(
            "[🗺️] Source %r: %d roles, %d channels, %d emojis, %d webhooks",
            snapshot.name,
            len(snapshot.roles),
            len(snapshot.channels),
            len(snapshot.emojis),
            len(snapshot.webhooks),
        )
        return snapshot

    async def _create_workspace(self, snapshot: WorkspaceSnapshot) -> None:
        op = self.op
        self._enter(Phase.CREATING, "Creating new server...")
        spec = WorkspaceSpec(
            name=self.config.clone_name_for(snapshot.name, op.options.name),
            icon_url=snapshot.settings.icon_url,
            settings=snapshot.settings,
        )
        try:
            await self.governor.throttle(ActionType.CREATE_GUILD)
            target_id = await self.client.create_workspace(spec)
        except PHASE_FATAL:
            raise
        except Exception as e:
            raise CreationFailed(f"Failed to create new server: {e}", op.phase) from e

        op.target_workspace_id = int(target_id)
        default = snapshot.default_role
        if default is not None:
            op.identity.record_default_role(default.id, op.target_workspace_id)
        self.log.info(
            "[🏗️] Created guild %r (%s)",
            spec.name,
            target_id,
            extra={"target_id": target_id},
        )
        self._report(1, 1, f"Created server: {spec.name}")

    async def _clone_roles(self, snapshot: WorkspaceSnapshot) -> None:
        op = self.op
        target = op.target_workspace_id
        self._enter(Phase.ROLES, "Cloning roles...")

        async def _create(role: RoleSnapshot) -> int:
            return await self.client.create_role(
                target,
                RoleSpec(
                    name=role.name,
                    permissions=role.permissions,
                    color=role.color,
                    hoist=role.hoist,
                    mentionable=role.mentionable,
                    unicode_emoji=role.unicode_emoji,
                    icon_url=role.icon_url,
                ),
            )

        await self._guarded_entities(
            EntityType.ROLE,
            snapshot.clonable_roles(),
            label=lambda r: r.name,
            source_id=lambda r: r.id,
            create=_create,
            on_created=lambda r, tid: op.identity.record_role(r.id, tid),
        )

    async def _clone_channels(self, snapshot: WorkspaceSnapshot) -> None:
        op = self.op
        target = op.target_workspace_id
        self._enter(Phase.CHANNELS, "Cloning channels...")

        async def _create(ch: ChannelSnapshot) -> int:
            parent = op.identity.map_channel(ch.parent_id)
            if ch.parent_id is not None and parent is None:
                self.log.debug(
                    "[🧩] Category %s of %r was not cloned; creating at top level",
                    ch.parent_id,
                    ch.name,
                )
            return await self.client.create_channel(
                target,
                ChannelSpec(
                    name=ch.name,
                    kind=ch.kind,
                    position=ch.position,
                    parent_id=parent,
                    topic=ch.topic,
                    nsfw=ch.nsfw,
                    slowmode_delay=ch.slowmode_delay,
                    bitrate=ch.bitrate,
                    user_limit=ch.user_limit,
                    overwrites=tuple(translate_overwrites(ch.overwrites, op.identity)),
                ),
            )

        await self._guarded_entities(
            EntityType.CHANNEL,
            snapshot.ordered_channels(),
            label=lambda c: c.name,
            source_id=lambda c: c.id,
            create=_create,
            on_created=lambda c, tid: op.identity.record_channel(c.id, tid),
        )

    async def _clone_emojis(self, snapshot: WorkspaceSnapshot) -> None:
        op = self.op
        target = op.target_workspace_id
        self._enter(Phase.EMOJIS, "Cloning emojis...")

        async def _create(emoji: EmojiSnapshot) -> int:
            roles = tuple(
                rid
                for rid in (op.identity.map_role(r) for r in emoji.role_ids)
                if rid is not None
            )
            return await self.client.create_emoji(
                target,
                EmojiSpec(
                    name=emoji.name,
                    url=emoji.url,
                    animated=emoji.animated,
                    role_ids=roles,
                ),
            )

        await self._guarded_entities(
            EntityType.EMOJI,
            list(snapshot.emojis),
            label=lambda e: e.name,
            source_id=lambda e: e.id,
            create=_create,
        )

    async def _clone_webhooks(self, snapshot: WorkspaceSnapshot) -> None:
        op = self.op
        target = op.target_workspace_id
        self._enter(Phase.WEBHOOKS, "Cloning webhooks...")

        async def _create(hook: WebhookSnapshot) -> Optional[int]:
            channel_id = op.identity.map_channel(hook.channel_id)
            if channel_id is None:
                self.log.debug(
                    "[🧩] Webhook %r skipped: channel %s was not cloned",
                    hook.name,
                    hook.channel_id,
                )
                return None
            return await self.client.create_webhook(
                target,
                WebhookSpec(
                    name=hook.name, channel_id=channel_id, avatar_url=hook.avatar_url
                ),
            )

        await self._guarded_entities(
            EntityType.WEBHOOK,
            list(snapshot.webhooks),
            label=lambda w: w.name,
            source_id=lambda w: w.id,
            create=_create,
        )

    async def _finalize(self, snapshot: WorkspaceSnapshot) -> Optional[str]:
        """Copy cosmetic settings and mint an invite. Neither can fail the run."""
        op = self.op
        target = op.target_workspace_id
        self._enter(Phase.FINALIZING, "Finalizing clone...")

        try:
            await self.governor.throttle(ActionType.EDIT_GUILD)
            await self.client.edit_workspace(target, snapshot.settings)
        except ClientUnavailable:
            raise
        except Exception as e:
            self.log.warning("[⚠️] Failed to finalize clone settings: %s", e)

        invite_channel = next(
            (
                cid
                for cid in (
                    op.identity.map_channel(c.id)
                    for c in snapshot.channels_of(ChannelKind.TEXT)
                )
                if cid is not None
            ),
            None,
        )
        if invite_channel is None:
            self.log.info("[🔗] No text channel cloned; skipping invite")
            return None
        try:
            await self.governor.throttle(ActionType.INVITE)
            return await self.client.create_invite(target, invite_channel)
        except ClientUnavailable:
            raise
        except Exception as e:
            self.log.warning("[⚠️] Failed to create invite: %s", e)
            return None

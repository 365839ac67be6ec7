"""
Pytest fixtures: an in-memory Discord stand-in and snapshot builders.

Async code is driven with ``asyncio.run`` from plain test functions.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

import pytest

from common.config import Config
from common.rate_limiter import RateGovernor
from cloner.errors import SourceUnavailable
from cloner.models import (
    ChannelKind,
    ChannelSnapshot,
    ChannelSpec,
    EmojiSnapshot,
    EmojiSpec,
    OverwriteType,
    PermissionOverwrite,
    RoleSnapshot,
    RoleSpec,
    WebhookSnapshot,
    WebhookSpec,
    WorkspaceSettings,
    WorkspaceSnapshot,
    WorkspaceSpec,
)

SOURCE_ID = 100
REQUESTER_ID = 42


@dataclass
class FakeWorkspace:
    id: int
    name: str
    roles: Dict[int, RoleSpec] = field(default_factory=dict)
    channels: Dict[int, ChannelSpec] = field(default_factory=dict)
    emojis: Dict[int, EmojiSpec] = field(default_factory=dict)
    webhooks: Dict[int, WebhookSpec] = field(default_factory=dict)
    settings: Optional[WorkspaceSettings] = None
    invites: List[str] = field(default_factory=list)


class FakeWorkspaceClient:
    """
    In-memory ``WorkspaceClient``.

    ``fail_names`` makes any entity creation whose spec name is listed raise
    ``RuntimeError``. ``before_create`` hooks run before each creation call so
    tests can cancel mid-phase.
    """

    def __init__(
        self,
        snapshots: Optional[Dict[int, WorkspaceSnapshot]] = None,
        admins: Optional[Set[int]] = None,
    ):
        self.snapshots = dict(snapshots or {})
        self.admins = set(admins if admins is not None else {REQUESTER_ID})
        self.workspaces: Dict[int, FakeWorkspace] = {}
        self.deleted: List[int] = []
        self.calls: List[str] = []
        self.fail_names: Set[str] = set()
        self.fail_create_workspace: Optional[Exception] = None
        self.fail_delete: Optional[Exception] = None
        self.fail_edit: Optional[Exception] = None
        self.before_create: List[Callable[[str, object], None]] = []
        self._ids = itertools.count(9000)

    async def _tick(self, name: str) -> None:
        self.calls.append(name)
        await asyncio.sleep(0)

    def _entity(self, target_id: int, kind: str, spec) -> int:
        for hook in self.before_create:
            hook(kind, spec)
        if spec.name in self.fail_names:
            raise RuntimeError(f"cannot create {kind} {spec.name}")
        ws = self.workspaces[target_id]
        new_id = next(self._ids)
        getattr(ws, kind)[new_id] = spec
        return new_id

    async def fetch_snapshot(self, source_id: int) -> WorkspaceSnapshot:
        await self._tick("fetch_snapshot")
        try:
            return self.snapshots[source_id]
        except KeyError:
            raise SourceUnavailable(f"guild {source_id} not visible") from None

    async def member_is_admin(self, source_id: int, user_id: int) -> bool:
        await self._tick("member_is_admin")
        return user_id in self.admins

    async def create_workspace(self, spec: WorkspaceSpec) -> int:
        await self._tick("create_workspace")
        if self.fail_create_workspace is not None:
            raise self.fail_create_workspace
        new_id = next(self._ids)
        self.workspaces[new_id] = FakeWorkspace(id=new_id, name=spec.name)
        return new_id

    async def delete_workspace(self, target_id: int) -> None:
        await self._tick("delete_workspace")
        if self.fail_delete is not None:
            raise self.fail_delete
        self.workspaces.pop(target_id)
        self.deleted.append(target_id)

    async def workspace_exists(self, target_id: int) -> bool:
        await self._tick("workspace_exists")
        return target_id in self.workspaces

    async def create_role(self, target_id: int, spec: RoleSpec) -> int:
        await self._tick("create_role")
        return self._entity(target_id, "roles", spec)

    async def create_channel(self, target_id: int, spec: ChannelSpec) -> int:
        await self._tick("create_channel")
        return self._entity(target_id, "channels", spec)

    async def create_emoji(self, target_id: int, spec: EmojiSpec) -> int:
        await self._tick("create_emoji")
        return self._entity(target_id, "emojis", spec)

    async def create_webhook(self, target_id: int, spec: WebhookSpec) -> int:
        await self._tick("create_webhook")
        return self._entity(target_id, "webhooks", spec)

    async def edit_workspace(self, target_id: int, settings: WorkspaceSettings) -> None:
        await self._tick("edit_workspace")
        if self.fail_edit is not None:
            raise self.fail_edit
        self.workspaces[target_id].settings = settings

    async def create_invite(self, target_id: int, channel_id: int) -> Optional[str]:
        await self._tick("create_invite")
        code = f"inv{channel_id}"
        self.workspaces[target_id].invites.append(code)
        return code


def role(rid: int, name: str, position: int, **kw) -> RoleSnapshot:
    return RoleSnapshot(id=rid, name=name, position=position, **kw)


def everyone(guild_id: int = SOURCE_ID) -> RoleSnapshot:
    return RoleSnapshot(id=guild_id, name="@everyone", position=0, is_default=True)


def role_ow(role_id: int, allow: int = 0, deny: int = 0) -> PermissionOverwrite:
    return PermissionOverwrite(role_id, OverwriteType.ROLE, allow, deny)


def user_ow(user_id: int, allow: int = 0, deny: int = 0) -> PermissionOverwrite:
    return PermissionOverwrite(user_id, OverwriteType.USER, allow, deny)


def scenario_a_snapshot() -> WorkspaceSnapshot:
    """3 roles, one category holding 2 text channels."""
    return WorkspaceSnapshot(
        id=SOURCE_ID,
        name="Source Guild",
        roles=(
            everyone(),
            role(1, "Admin", 3, permissions=8),
            role(2, "Mod", 2),
            role(3, "Member", 1),
            role(4, "SomeBot", 4, managed=True),
        ),
        channels=(
            ChannelSnapshot(id=10, name="General", kind=ChannelKind.CATEGORY, position=0),
            ChannelSnapshot(
                id=11,
                name="chat",
                kind=ChannelKind.TEXT,
                position=0,
                parent_id=10,
                overwrites=(role_ow(SOURCE_ID, deny=1024), role_ow(2, allow=1024)),
            ),
            ChannelSnapshot(
                id=12,
                name="staff",
                kind=ChannelKind.TEXT,
                position=1,
                parent_id=10,
                overwrites=(role_ow(1, allow=1024), role_ow(777, allow=2048), user_ow(55)),
            ),
        ),
        settings=WorkspaceSettings(description="hello", verification_level=1),
    )


def full_snapshot() -> WorkspaceSnapshot:
    base = scenario_a_snapshot()
    return WorkspaceSnapshot(
        id=base.id,
        name=base.name,
        roles=base.roles,
        channels=base.channels
        + (ChannelSnapshot(id=13, name="voice", kind=ChannelKind.VOICE, bitrate=64000),),
        emojis=(
            EmojiSnapshot(id=20, name="wave", url="https://cdn/e/20.png", role_ids=(2, 999)),
        ),
        webhooks=(
            WebhookSnapshot(id=30, name="hook", channel_id=11),
            WebhookSnapshot(id=31, name="orphan", channel_id=999),
        ),
        settings=base.settings,
    )


@pytest.fixture
def config(monkeypatch: pytest.MonkeyPatch) -> Config:
    for key in (
        "MAX_CONCURRENT_CLONES",
        "MUTATION_INTERVAL_SECONDS",
        "STATUS_RETENTION_SECONDS",
        "REQUIRE_SOURCE_ADMIN",
        "CLONE_NAME_SUFFIX",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("MUTATION_INTERVAL_SECONDS", "0")
    return Config()


@pytest.fixture
def governor() -> RateGovernor:
    return RateGovernor(0)


@pytest.fixture
def fake_client() -> FakeWorkspaceClient:
    return FakeWorkspaceClient({SOURCE_ID: scenario_a_snapshot()})

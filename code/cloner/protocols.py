# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""Contract between the clone pipeline and whatever talks to Discord.

The orchestrator only ever calls these coroutines. Implementations raise
``ClientUnavailable`` when they cannot reach the API at all and
``PermissionDenied`` when the bot lacks a guild-wide permission; both abort the
run. Any other exception from an entity call is treated as that entity's
failure and skipped.
"""

from __future__ import annotations

from typing import Optional, Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from cloner.models import (
        ChannelSpec,
        EmojiSpec,
        RoleSpec,
        WebhookSpec,
        WorkspaceSettings,
        WorkspaceSnapshot,
        WorkspaceSpec,
    )


class WorkspaceClient(Protocol):
    async def fetch_snapshot(self, source_id: int) -> "WorkspaceSnapshot":
        """Read the full structure of a guild."""
        ...

    async def member_is_admin(self, source_id: int, user_id: int) -> bool:
        ...

    async def create_workspace(self, spec: "WorkspaceSpec") -> int:
        """Create a guild and return its id. Its @everyone role shares that id."""
        ...

    async def delete_workspace(self, target_id: int) -> None:
        ...

    async def workspace_exists(self, target_id: int) -> bool:
        ...

    async def create_role(self, target_id: int, spec: "RoleSpec") -> int:
        ...

    async def create_channel(self, target_id: int, spec: "ChannelSpec") -> int:
        ...

    async def create_emoji(self, target_id: int, spec: "EmojiSpec") -> int:
        ...

    async def create_webhook(self, target_id: int, spec: "WebhookSpec") -> int:
        ...

    async def edit_workspace(self, target_id: int, settings: "WorkspaceSettings") -> None:
        ...

    async def create_invite(self, target_id: int, channel_id: int) -> Optional[str]:
        ...

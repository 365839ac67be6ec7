# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from common.constants import CLONE_OPTION_DEFAULTS
from cloner.errors import InvalidTransition, SnapshotInvalid
from cloner.identity import IdentityMapper


class Phase(str, Enum):
    INITIALIZING = "initializing"
    CREATING = "creating"
    ROLES = "roles"
    CHANNELS = "channels"
    EMOJIS = "emojis"
    WEBHOOKS = "webhooks"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    def can_advance_to(self, nxt: "Phase") -> bool:
        """
        Forward-only: disabled phases may be skipped, any live phase may stop
        as failed/cancelled, and only finalizing may complete.
        """
        if self.is_terminal:
            return False
        if nxt in (Phase.FAILED, Phase.CANCELLED):
            return True
        if nxt is Phase.COMPLETED:
            return self is Phase.FINALIZING
        return _LINEAR.index(nxt) > _LINEAR.index(self)


_LINEAR = (
    Phase.INITIALIZING,
    Phase.CREATING,
    Phase.ROLES,
    Phase.CHANNELS,
    Phase.EMOJIS,
    Phase.WEBHOOKS,
    Phase.FINALIZING,
    Phase.COMPLETED,
)
_TERMINAL = frozenset({Phase.COMPLETED, Phase.FAILED, Phase.CANCELLED})

# (start, end) percent of each working phase
PHASE_WEIGHTS: Dict[Phase, Tuple[int, int]] = {
    Phase.INITIALIZING: (0, 0),
    Phase.CREATING: (0, 15),
    Phase.ROLES: (15, 40),
    Phase.CHANNELS: (40, 70),
    Phase.EMOJIS: (70, 85),
    Phase.WEBHOOKS: (85, 95),
    Phase.FINALIZING: (95, 100),
}


class EntityType(str, Enum):
    ROLE = "role"
    CHANNEL = "channel"
    EMOJI = "emoji"
    WEBHOOK = "webhook"


class ChannelKind(IntEnum):
    TEXT = 0
    VOICE = 2
    CATEGORY = 4


class OverwriteType(IntEnum):
    ROLE = 0
    USER = 1


# ---------- source snapshot ----------
@dataclass(frozen=True)
class PermissionOverwrite:
    subject_id: int
    subject_type: OverwriteType
    allow: int = 0
    deny: int = 0


@dataclass(frozen=True)
class RoleSnapshot:
    id: int
    name: str
    position: int = 0
    permissions: int = 0
    color: int = 0
    hoist: bool = False
    mentionable: bool = False
    managed: bool = False
    is_default: bool = False
    unicode_emoji: Optional[str] = None
    icon_url: Optional[str] = None


@dataclass(frozen=True)
class ChannelSnapshot:
    id: int
    name: str
    kind: ChannelKind
    position: int = 0
    parent_id: Optional[int] = None
    topic: Optional[str] = None
    nsfw: bool = False
    slowmode_delay: int = 0
    bitrate: Optional[int] = None
    user_limit: Optional[int] = None
    overwrites: Tuple[PermissionOverwrite, ...] = ()


@dataclass(frozen=True)
class EmojiSnapshot:
    id: int
    name: str
    url: str
    animated: bool = False
    role_ids: Tuple[int, ...] = ()


@dataclass(frozen=True)
class WebhookSnapshot:
    id: int
    name: str
    channel_id: int
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class WorkspaceSettings:
    description: Optional[str] = None
    verification_level: Optional[int] = None
    default_notifications: Optional[int] = None
    explicit_content_filter: Optional[int] = None
    preferred_locale: Optional[str] = None
    afk_timeout: Optional[int] = None
    icon_url: Optional[str] = None
    banner_url: Optional[str] = None
    splash_url: Optional[str] = None


@dataclass(frozen=True)
class WorkspaceSnapshot:
    id: int
    name: str
    roles: Tuple[RoleSnapshot, ...] = ()
    channels: Tuple[ChannelSnapshot, ...] = ()
    emojis: Tuple[EmojiSnapshot, ...] = ()
    webhooks: Tuple[WebhookSnapshot, ...] = ()
    settings: WorkspaceSettings = field(default_factory=WorkspaceSettings)

    def validate(self) -> None:
        """Categories are flat and every parent reference points at one."""
        categories = {c.id for c in self.channels if c.kind is ChannelKind.CATEGORY}
        for ch in self.channels:
            if ch.parent_id is None:
                continue
            if ch.kind is ChannelKind.CATEGORY:
                raise SnapshotInvalid(f"Category {ch.name!r} ({ch.id}) is nested")
            if ch.parent_id not in categories:
                raise SnapshotInvalid(
                    f"Channel {ch.name!r} ({ch.id}) references unknown category {ch.parent_id}"
                )

    @property
    def default_role(self) -> Optional[RoleSnapshot]:
        return next((r for r in self.roles if r.is_default), None)

    def clonable_roles(self) -> List[RoleSnapshot]:
        """Roles to recreate, lowest first. @everyone and managed roles are skipped."""
        return sorted(
            (r for r in self.roles if not r.is_default and not r.managed),
            key=lambda r: (r.position, r.id),
        )

    def channels_of(self, kind: ChannelKind) -> List[ChannelSnapshot]:
        return sorted(
            (c for c in self.channels if c.kind is kind),
            key=lambda c: (c.position, c.id),
        )

    def ordered_channels(self) -> List[ChannelSnapshot]:
        """Categories first so that children can be parented on creation."""
        return (
            self.channels_of(ChannelKind.CATEGORY)
            + self.channels_of(ChannelKind.TEXT)
            + self.channels_of(ChannelKind.VOICE)
        )


# ---------- creation payloads ----------
@dataclass(frozen=True)
class WorkspaceSpec:
    name: str
    icon_url: Optional[str] = None
    settings: WorkspaceSettings = field(default_factory=WorkspaceSettings)


@dataclass(frozen=True)
class RoleSpec:
    name: str
    permissions: int = 0
    color: int = 0
    hoist: bool = False
    mentionable: bool = False
    unicode_emoji: Optional[str] = None
    icon_url: Optional[str] = None


@dataclass(frozen=True)
class ChannelSpec:
    name: str
    kind: ChannelKind
    position: int = 0
    parent_id: Optional[int] = None
    topic: Optional[str] = None
    nsfw: bool = False
    slowmode_delay: int = 0
    bitrate: Optional[int] = None
    user_limit: Optional[int] = None
    overwrites: Tuple[PermissionOverwrite, ...] = ()


@dataclass(frozen=True)
class EmojiSpec:
    name: str
    url: str
    animated: bool = False
    role_ids: Tuple[int, ...] = ()


@dataclass(frozen=True)
class WebhookSpec:
    name: str
    channel_id: int
    avatar_url: Optional[str] = None


def _flag(value: Any) -> bool:
    """Option flags arrive as JSON bools or as form strings like "false"."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(value)


# ---------- operation ----------
@dataclass(frozen=True)
class CloneOptions:
    include_roles: bool = CLONE_OPTION_DEFAULTS["include_roles"]
    include_channels: bool = CLONE_OPTION_DEFAULTS["include_channels"]
    include_emojis: bool = CLONE_OPTION_DEFAULTS["include_emojis"]
    include_webhooks: bool = CLONE_OPTION_DEFAULTS["include_webhooks"]
    name: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "CloneOptions":
        data = data or {}
        kwargs: Dict[str, Any] = {
            k: _flag(data.get(k, default)) for k, default in CLONE_OPTION_DEFAULTS.items()
        }
        name = data.get("name")
        kwargs["name"] = str(name).strip() if name else None
        return cls(**kwargs)

    def enabled(self, phase: Phase) -> bool:
        return {
            Phase.ROLES: self.include_roles,
            Phase.CHANNELS: self.include_channels,
            Phase.EMOJIS: self.include_emojis,
            Phase.WEBHOOKS: self.include_webhooks,
        }.get(phase, True)


@dataclass(frozen=True)
class RollbackEntry:
    entity_type: EntityType
    target_id: int


@dataclass(frozen=True)
class OperationStatus:
    operation_id: str
    phase: Phase
    progress: int
    cancel_requested: bool
    source_id: int
    target_workspace_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def active(self) -> bool:
        return not self.phase.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "status": "active" if self.active else self.phase.value,
            "phase": self.phase.value,
            "progress": self.progress,
            "cancel_requested": self.cancel_requested,
            "source_id": str(self.source_id),
            "target_workspace_id": (
                str(self.target_workspace_id) if self.target_workspace_id else None
            ),
            "error": self.error,
        }


@dataclass
class CloneOperation:
    source_id: int
    requester_id: int
    options: CloneOptions = field(default_factory=CloneOptions)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    phase: Phase = Phase.INITIALIZING
    progress: int = 0
    cancel_requested: bool = False
    target_workspace_id: Optional[int] = None
    identity: IdentityMapper = field(default_factory=IdentityMapper)
    rollback_log: List[RollbackEntry] = field(default_factory=list)
    error: Optional[str] = None
    stopped_phase: Optional[Phase] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def role_map(self) -> Mapping[int, int]:
        return self.identity.roles

    @property
    def channel_map(self) -> Mapping[int, int]:
        return self.identity.channels

    def advance(self, nxt: Phase) -> None:
        if not self.phase.can_advance_to(nxt):
            raise InvalidTransition(
                f"Illegal phase transition {self.phase.value} -> {nxt.value}",
                self.phase,
            )
        if nxt.is_terminal:
            self.stopped_phase = self.phase
            self.finished_at = time.time()
        self.phase = nxt

    def set_progress(self, percent: float) -> int:
        """Progress never goes backwards and stays below 100 until completion."""
        ceiling = 100 if self.phase is Phase.COMPLETED else 99
        value = max(0, min(int(percent), ceiling))
        if value > self.progress:
            self.progress = value
        return self.progress

    def status(self) -> OperationStatus:
        return OperationStatus(
            operation_id=self.id,
            phase=self.phase,
            progress=self.progress,
            cancel_requested=self.cancel_requested,
            source_id=self.source_id,
            target_workspace_id=self.target_workspace_id,
            error=self.error,
        )

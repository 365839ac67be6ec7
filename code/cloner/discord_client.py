# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import logging
from typing import Dict, List, Optional, Union

import discord
from discord import CategoryChannel, TextChannel, VoiceChannel
from discord.errors import Forbidden, HTTPException, NotFound

from common.constants import AUDIT_REASON
from cloner.assets import AssetFetcher
from cloner.errors import ClientUnavailable, PermissionDenied, SourceUnavailable
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

logger = logging.getLogger("cloner.discord")

GuildChannel = Union[CategoryChannel, TextChannel, VoiceChannel]


def _asset_url(asset) -> Optional[str]:
    return str(asset.url) if asset else None


def _enum_value(v) -> Optional[int]:
    return None if v is None else int(getattr(v, "value", v))


class DiscordWorkspaceClient:
    """
    ``WorkspaceClient`` over a py-cord bot.

    Guilds created by this client are fresh HTTP objects whose caches fill in
    only after the gateway catches up, so the roles and channels it creates
    are tracked locally and used to build overwrites, parents and webhooks.
    """

    def __init__(
        self,
        bot: discord.Bot,
        assets: Optional[AssetFetcher] = None,
        reason: str = AUDIT_REASON,
    ):
        self.bot = bot
        self.assets = assets or AssetFetcher()
        self.reason = reason
        self._guilds: Dict[int, discord.Guild] = {}
        self._roles: Dict[int, Dict[int, discord.Role]] = {}
        self._channels: Dict[int, Dict[int, GuildChannel]] = {}

    # ---------- helpers ----------
    def _ensure_ready(self) -> None:
        if self.bot.is_closed() or not self.bot.is_ready():
            raise ClientUnavailable("Discord client not available")

    async def _guild(self, guild_id: int) -> discord.Guild:
        self._ensure_ready()
        g = self._guilds.get(guild_id) or self.bot.get_guild(guild_id)
        if g is None:
            g = await self.bot.fetch_guild(guild_id)
        return g

    def _role(self, guild: discord.Guild, role_id: int) -> Optional[discord.Role]:
        if role_id == guild.id:
            return guild.default_role
        return self._roles.get(guild.id, {}).get(role_id) or guild.get_role(role_id)

    def _channel(self, guild: discord.Guild, channel_id: int) -> Optional[GuildChannel]:
        return self._channels.get(guild.id, {}).get(channel_id) or guild.get_channel(
            channel_id
        )

    def _overwrites(self, guild: discord.Guild, overwrites) -> dict:
        out = {}
        for ow in overwrites:
            if ow.subject_type is OverwriteType.ROLE:
                target = self._role(guild, ow.subject_id)
                if target is None:
                    logger.debug("[🔐] Role %s not resolvable in %s", ow.subject_id, guild.id)
                    continue
            else:
                target = guild.get_member(ow.subject_id) or discord.Object(id=ow.subject_id)
            out[target] = discord.PermissionOverwrite.from_pair(
                discord.Permissions(ow.allow), discord.Permissions(ow.deny)
            )
        return out

    def _forget(self, guild_id: int) -> None:
        self._guilds.pop(guild_id, None)
        self._roles.pop(guild_id, None)
        self._channels.pop(guild_id, None)

    # ---------- reads ----------
    async def fetch_snapshot(self, source_id: int) -> WorkspaceSnapshot:
        self._ensure_ready()
        guild = self.bot.get_guild(source_id)
        if guild is None:
            raise SourceUnavailable("Source server not found or not accessible")

        roles = tuple(
            RoleSnapshot(
                id=r.id,
                name=r.name,
                position=r.position,
                permissions=r.permissions.value,
                color=r.color.value,
                hoist=r.hoist,
                mentionable=r.mentionable,
                managed=r.managed,
                is_default=r.is_default(),
                unicode_emoji=getattr(r, "unicode_emoji", None),
                icon_url=_asset_url(getattr(r, "icon", None)),
            )
            for r in guild.roles
        )

        channels: List[ChannelSnapshot] = []
        for ch in guild.channels:
            if isinstance(ch, CategoryChannel):
                kind = ChannelKind.CATEGORY
            elif isinstance(ch, VoiceChannel):
                kind = ChannelKind.VOICE
            elif isinstance(ch, TextChannel):
                kind = ChannelKind.TEXT
            else:
                logger.debug("[🧩] Skipping unsupported channel %s (%s)", ch.name, ch.type)
                continue
            overwrites = tuple(
                PermissionOverwrite(
                    subject_id=target.id,
                    subject_type=(
                        OverwriteType.ROLE
                        if isinstance(target, discord.Role)
                        else OverwriteType.USER
                    ),
                    allow=ow.pair()[0].value,
                    deny=ow.pair()[1].value,
                )
                for target, ow in ch.overwrites.items()
            )
            channels.append(
                ChannelSnapshot(
                    id=ch.id,
                    name=ch.name,
                    kind=kind,
                    position=ch.position,
                    parent_id=None if kind is ChannelKind.CATEGORY else ch.category_id,
                    topic=getattr(ch, "topic", None),
                    nsfw=bool(getattr(ch, "nsfw", False)),
                    slowmode_delay=int(getattr(ch, "slowmode_delay", 0) or 0),
                    bitrate=getattr(ch, "bitrate", None) if kind is ChannelKind.VOICE else None,
                    user_limit=(
                        getattr(ch, "user_limit", None) if kind is ChannelKind.VOICE else None
                    ),
                    overwrites=overwrites,
                )
            )

        emojis = tuple(
            EmojiSnapshot(
                id=e.id,
                name=e.name,
                url=str(e.url),
                animated=e.animated,
                role_ids=tuple(r.id for r in e.roles),
            )
            for e in guild.emojis
        )

        webhooks: tuple = ()
        try:
            webhooks = tuple(
                WebhookSnapshot(
                    id=w.id,
                    name=w.name or "Webhook",
                    channel_id=w.channel_id,
                    avatar_url=_asset_url(w.avatar),
                )
                for w in await guild.webhooks()
                if w.type is discord.WebhookType.incoming and w.channel_id
            )
        except (Forbidden, HTTPException) as e:
            logger.warning("[⚠️] Failed to fetch source webhooks: %s", e)

        settings = WorkspaceSettings(
            description=guild.description,
            verification_level=_enum_value(guild.verification_level),
            default_notifications=_enum_value(guild.default_notifications),
            explicit_content_filter=_enum_value(guild.explicit_content_filter),
            preferred_locale=(
                str(guild.preferred_locale) if guild.preferred_locale else None
            ),
            afk_timeout=guild.afk_timeout,
            icon_url=_asset_url(guild.icon),
            banner_url=_asset_url(guild.banner),
            splash_url=_asset_url(guild.splash),
        )
        return WorkspaceSnapshot(
            id=guild.id,
            name=guild.name,
            roles=roles,
            channels=tuple(channels),
            emojis=emojis,
            webhooks=webhooks,
            settings=settings,
        )

    async def member_is_admin(self, source_id: int, user_id: int) -> bool:
        self._ensure_ready()
        guild = self.bot.get_guild(source_id)
        if guild is None:
            return False
        member = guild.get_member(user_id)
        if member is None:
            try:
                member = await guild.fetch_member(user_id)
            except NotFound:
                return False
        return bool(member.guild_permissions.administrator)

    async def workspace_exists(self, target_id: int) -> bool:
        self._ensure_ready()
        try:
            await self.bot.fetch_guild(target_id)
        except (NotFound, Forbidden):
            return False
        return True

    # ---------- guild lifecycle ----------
    async def create_workspace(self, spec: WorkspaceSpec) -> int:
        self._ensure_ready()
        kwargs = {"name": spec.name}
        icon = await self.assets.fetch_optional(spec.icon_url)
        if icon:
            kwargs["icon"] = icon
        try:
            guild = await self.bot.create_guild(**kwargs)
        except Forbidden as e:
            raise PermissionDenied(f"Bot may not create guilds: {e}") from e
        self._guilds[guild.id] = guild
        self._roles[guild.id] = {}
        self._channels[guild.id] = {}
        return guild.id

    async def delete_workspace(self, target_id: int) -> None:
        guild = await self._guild(target_id)
        try:
            await guild.delete()
        except NotFound:
            logger.debug("[🧹] Guild %s already gone", target_id)
        finally:
            self._forget(target_id)

    async def edit_workspace(self, target_id: int, settings: WorkspaceSettings) -> None:
        guild = await self._guild(target_id)
        kwargs = {"reason": self.reason}
        if settings.description is not None:
            kwargs["description"] = settings.description
        if settings.verification_level is not None:
            kwargs["verification_level"] = discord.VerificationLevel(settings.verification_level)
        if settings.default_notifications is not None:
            kwargs["default_notifications"] = discord.NotificationLevel(
                settings.default_notifications
            )
        if settings.explicit_content_filter is not None:
            kwargs["explicit_content_filter"] = discord.ContentFilter(
                settings.explicit_content_filter
            )
        if settings.afk_timeout is not None:
            kwargs["afk_timeout"] = settings.afk_timeout
        if settings.preferred_locale:
            kwargs["preferred_locale"] = settings.preferred_locale
        await guild.edit(**kwargs)

        # boost-gated; a failure here only loses the artwork
        for field, url in (("banner", settings.banner_url), ("splash", settings.splash_url)):
            data = await self.assets.fetch_optional(url)
            if not data:
                continue
            try:
                await guild.edit(**{field: data, "reason": self.reason})
            except HTTPException as e:
                logger.warning("[⚠️] Failed to set server %s: %s", field, e)

    # ---------- entities ----------
    async def create_role(self, target_id: int, spec: RoleSpec) -> int:
        guild = await self._guild(target_id)
        role = await guild.create_role(
            name=spec.name,
            permissions=discord.Permissions(spec.permissions),
            colour=discord.Colour(spec.color),
            hoist=spec.hoist,
            mentionable=spec.mentionable,
            reason=self.reason,
        )
        self._roles.setdefault(guild.id, {})[role.id] = role
        await self._decorate_role(role, spec)
        return role.id

    async def _decorate_role(self, role: discord.Role, spec: RoleSpec) -> None:
        # role icons are boost-gated; the role itself is kept either way
        if spec.icon_url:
            icon = await self.assets.fetch_optional(spec.icon_url)
            if icon:
                try:
                    await role.edit(icon=icon, reason=self.reason)
                    return
                except HTTPException as e:
                    logger.warning("[⚠️] Failed to set icon on role %s: %s", role.name, e)
        if spec.unicode_emoji:
            try:
                await role.edit(unicode_emoji=spec.unicode_emoji, reason=self.reason)
            except HTTPException as e:
                logger.warning("[⚠️] Failed to set emoji on role %s: %s", role.name, e)

    async def create_channel(self, target_id: int, spec: ChannelSpec) -> int:
        guild = await self._guild(target_id)
        overwrites = self._overwrites(guild, spec.overwrites)
        category = None
        if spec.parent_id is not None:
            category = self._channel(guild, spec.parent_id)

        if spec.kind is ChannelKind.CATEGORY:
            ch = await guild.create_category(
                spec.name,
                overwrites=overwrites,
                position=spec.position,
                reason=self.reason,
            )
        elif spec.kind is ChannelKind.VOICE:
            kwargs = {}
            if spec.bitrate:
                kwargs["bitrate"] = min(int(spec.bitrate), int(guild.bitrate_limit))
            if spec.user_limit is not None:
                kwargs["user_limit"] = spec.user_limit
            ch = await guild.create_voice_channel(
                spec.name,
                category=category,
                position=spec.position,
                overwrites=overwrites,
                reason=self.reason,
                **kwargs,
            )
        else:
            ch = await guild.create_text_channel(
                spec.name,
                category=category,
                position=spec.position,
                topic=spec.topic,
                nsfw=spec.nsfw,
                slowmode_delay=spec.slowmode_delay,
                overwrites=overwrites,
                reason=self.reason,
            )
        self._channels.setdefault(guild.id, {})[ch.id] = ch
        return ch.id

    async def create_emoji(self, target_id: int, spec: EmojiSpec) -> int:
        guild = await self._guild(target_id)
        image = await self.assets.fetch_emoji(spec.url, spec.animated)
        roles = [r for r in (self._role(guild, rid) for rid in spec.role_ids) if r]
        kwargs = {"name": spec.name, "image": image, "reason": self.reason}
        if roles:
            kwargs["roles"] = roles
        emoji = await guild.create_custom_emoji(**kwargs)
        return emoji.id

    async def create_webhook(self, target_id: int, spec: WebhookSpec) -> int:
        guild = await self._guild(target_id)
        channel = self._channel(guild, spec.channel_id)
        if not isinstance(channel, TextChannel):
            raise LookupError(f"Text channel {spec.channel_id} not found in guild {guild.id}")
        avatar = await self.assets.fetch_optional(spec.avatar_url)
        kwargs = {"name": spec.name, "reason": self.reason}
        if avatar:
            kwargs["avatar"] = avatar
        hook = await channel.create_webhook(**kwargs)
        return hook.id

    async def create_invite(self, target_id: int, channel_id: int) -> Optional[str]:
        guild = await self._guild(target_id)
        channel = self._channel(guild, channel_id)
        if channel is None:
            return None
        invite = await channel.create_invite(
            max_age=0, max_uses=0, unique=True, reason=self.reason
        )
        return invite.code

    async def close(self) -> None:
        await self.assets.close()



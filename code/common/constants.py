# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""Shared constants used across the cloner services."""

# Keys whose values never reach the logs
REDACT_KEYS = {
    "SERVER_TOKEN",
}

# Option flags accepted by a clone start request, with their defaults
CLONE_OPTION_DEFAULTS = {
    "include_roles": True,
    "include_channels": True,
    "include_emojis": False,
    "include_webhooks": False,
}

# Discord hard limits
MAX_GUILD_NAME = 100
MAX_EMOJI_BYTES = 262_144
EMOJI_SIZE_PX = 128

AUDIT_REASON = "Guild clone"

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
from types import MappingProxyType
from typing import Dict, Optional

logger = logging.getLogger("cloner.identity")


class IdentityMapper:
    """
    Source id -> target id tables for one clone run.

    Tables are append-only: the first mapping recorded for a source id wins
    and later records for it are ignored.
    """

    def __init__(self) -> None:
        self._roles: Dict[int, int] = {}
        self._channels: Dict[int, int] = {}
        self._default_role: Optional[tuple[int, int]] = None

    @property
    def roles(self) -> MappingProxyType:
        return MappingProxyType(self._roles)

    @property
    def channels(self) -> MappingProxyType:
        return MappingProxyType(self._channels)

    @staticmethod
    def _record(table: Dict[int, int], kind: str, source_id: int, target_id: int) -> bool:
        source_id, target_id = int(source_id), int(target_id)
        existing = table.get(source_id)
        if existing is not None:
            if existing != target_id:
                logger.debug(
                    "[🧩] %s %s already mapped to %s; ignoring %s",
                    kind,
                    source_id,
                    existing,
                    target_id,
                )
            return False
        table[source_id] = target_id
        return True

    # --- roles ---
    def map_role(self, source_id: int) -> Optional[int]:
        source_id = int(source_id)
        if self._default_role and self._default_role[0] == source_id:
            return self._default_role[1]
        return self._roles.get(source_id)

    def record_role(self, source_id: int, target_id: int) -> bool:
        return self._record(self._roles, "role", source_id, target_id)

    def record_default_role(self, source_id: int, target_id: int) -> bool:
        """@everyone is implicit in both guilds, so it lives outside the role table."""
        if self._default_role is not None:
            return False
        self._default_role = (int(source_id), int(target_id))
        return True

    # --- channels ---
    def map_channel(self, source_id: Optional[int]) -> Optional[int]:
        if source_id is None:
            return None
        return self._channels.get(int(source_id))

    def record_channel(self, source_id: int, target_id: int) -> bool:
        return self._record(self._channels, "channel", source_id, target_id)

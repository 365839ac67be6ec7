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
from typing import Iterable, List

from cloner.identity import IdentityMapper
from cloner.models import OverwriteType, PermissionOverwrite

logger = logging.getLogger("cloner.permissions")


def translate_overwrites(
    overwrites: Iterable[PermissionOverwrite], mapper: IdentityMapper
) -> List[PermissionOverwrite]:
    """
    Rewrite a source channel's overwrites for the target guild.

    Role overwrites follow the role table and are dropped when the role was
    never cloned. User overwrites are kept as-is. Bits are copied verbatim.
    """
    out: List[PermissionOverwrite] = []
    dropped = 0
    for ow in overwrites or ():
        if ow.subject_type is OverwriteType.ROLE:
            target = mapper.map_role(ow.subject_id)
            if target is None:
                dropped += 1
                continue
            out.append(
                PermissionOverwrite(
                    subject_id=target,
                    subject_type=OverwriteType.ROLE,
                    allow=ow.allow,
                    deny=ow.deny,
                )
            )
        else:
            out.append(ow)
    if dropped:
        logger.debug("[🔐] Dropped %d overwrite(s) for uncloned roles", dropped)
    return out

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
from collections import Counter
from typing import Optional

from common.rate_limiter import ActionType, RateGovernor
from cloner.models import CloneOperation, EntityType, RollbackEntry
from cloner.protocols import WorkspaceClient

logger = logging.getLogger("cloner.rollback")


class RollbackManager:
    """
    Compensating action for a failed or cancelled run.

    Every created entity is logged, but undo is a single delete of the whole
    target guild: Discord cascades it to every child entity. The log is kept
    for diagnostics.
    """

    def __init__(
        self,
        client: WorkspaceClient,
        governor: Optional[RateGovernor] = None,
    ):
        self.client = client
        self.governor = governor

    def record(self, op: CloneOperation, entity_type: EntityType, target_id: int) -> None:
        op.rollback_log.append(RollbackEntry(entity_type, int(target_id)))

    async def rollback(self, op: CloneOperation) -> bool:
        """Delete the target guild if one was created. Never raises."""
        target = op.target_workspace_id
        if target is None:
            logger.debug("[↩️] Nothing to roll back; target guild was never created")
            return False

        summary = Counter(e.entity_type.value for e in op.rollback_log)
        logger.info(
            "[↩️] Rolling back clone: deleting guild %s (%s)",
            target,
            ", ".join(f"{n} {k}" for k, n in sorted(summary.items())) or "no entities",
            extra={"target_id": target},
        )
        try:
            if self.governor is not None:
                await self.governor.throttle(ActionType.DELETE_GUILD)
            await self.client.delete_workspace(target)
        except Exception as e:
            logger.error(
                "[⛔] Rollback failed; guild %s may need manual deletion: %s",
                target,
                e,
                extra={"target_id": target},
            )
            return False
        logger.info("[↩️] Rolled back guild %s", target, extra={"target_id": target})
        return True

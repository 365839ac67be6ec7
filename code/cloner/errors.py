# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from cloner.models import EntityType, Phase


class CloneError(Exception):
    """Base error for guild cloning. ``phase`` is where it happened, if known."""

    def __init__(self, message: str, phase: Optional["Phase"] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase


# --- registry level ---
class CapacityExceeded(CloneError):
    def __init__(self, limit: int):
        super().__init__(
            f"Maximum concurrent clones reached ({limit}). Please try again later."
        )
        self.limit = limit


class OperationNotFound(CloneError):
    def __init__(self, operation_id: str):
        super().__init__(f"Clone {operation_id} not found or not active")
        self.operation_id = operation_id


class Unauthorized(CloneError):
    def __init__(self, operation_id: str, requester_id: int):
        super().__init__(
            f"User {requester_id} is not allowed to cancel clone {operation_id}"
        )
        self.operation_id = operation_id
        self.requester_id = requester_id


# --- run level ---
class SourceUnavailable(CloneError):
    pass


class SnapshotInvalid(SourceUnavailable):
    pass


class CreationFailed(CloneError):
    pass


class EntityCloneFailed(CloneError):
    """Single entity failure. Logged and skipped, never aborts a phase."""

    def __init__(
        self,
        entity_type: "EntityType",
        source_id: int,
        name: str,
        cause: BaseException,
        phase: Optional["Phase"] = None,
    ):
        super().__init__(
            f"Failed to clone {entity_type.value} {name!r} ({source_id}): {cause}",
            phase,
        )
        self.entity_type = entity_type
        self.source_id = source_id
        self.name = name
        self.cause = cause


class CloneCancelled(CloneError):
    pass


class InvalidTransition(CloneError):
    pass


# --- raised by workspace clients ---
class WorkspaceClientError(CloneError):
    pass


class ClientUnavailable(WorkspaceClientError):
    """The remote client is not connected. Aborts the whole run."""


class PermissionDenied(WorkspaceClientError):
    """Missing permission at guild scope. Aborts the whole run."""


# Errors that escape a per-entity guard and abort the run
PHASE_FATAL = (ClientUnavailable, PermissionDenied)

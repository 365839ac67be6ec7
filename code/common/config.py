# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import os
import logging
from typing import Optional

from common.constants import MAX_GUILD_NAME

logger = logging.getLogger(__name__)
CURRENT_VERSION = "v1.0.0"


class Config:
    def __init__(self, logger: Optional[logging.Logger] = None):

        def _str(key: str, env_default: Optional[str] = None) -> Optional[str]:
            v = os.getenv(key)
            if v is None or v.strip() == "":
                v = env_default
            return v

        def _int(key: str, env_default: str = "0") -> int:
            raw = _str(key, env_default)
            try:
                return int(str(raw).strip())
            except Exception:
                try:
                    return int(env_default)
                except Exception:
                    return 0

        def _float(key: str, env_default: str = "0") -> float:
            raw = _str(key, env_default)
            try:
                return float(str(raw).strip())
            except Exception:
                try:
                    return float(env_default)
                except Exception:
                    return 0.0

        def _bool(key: str, env_default: str = "false") -> bool:
            raw = (_str(key, env_default) or "").strip().lower()
            return raw in ("1", "true", "yes", "y", "on")

        # --- Tokens ---
        self.SERVER_TOKEN = _str("SERVER_TOKEN")

        # --- Clone limits ---
        self.MAX_CONCURRENT_CLONES = max(1, _int("MAX_CONCURRENT_CLONES", "2"))
        self.MUTATION_INTERVAL_SECONDS = max(
            0.0, _float("MUTATION_INTERVAL_SECONDS", "1.0")
        )
        self.STATUS_RETENTION_SECONDS = max(
            0.0, _float("STATUS_RETENTION_SECONDS", "0")
        )
        self.EVENT_QUEUE_SIZE = max(0, _int("EVENT_QUEUE_SIZE", "256"))

        # --- Clone behaviour ---
        self.CLONE_NAME_SUFFIX = _str("CLONE_NAME_SUFFIX", " (Clone)") or ""
        self.REQUIRE_SOURCE_ADMIN = _bool("REQUIRE_SOURCE_ADMIN", "true")

        # --- Admin API / bus ---
        self.API_HOST = _str("API_HOST", "0.0.0.0") or "0.0.0.0"
        self.API_PORT = _int("API_PORT", "8080")
        # Empty disables the bus relay
        self.ADMIN_WS_URL = _str("ADMIN_WS_URL", "") or ""

        # --- Logging / misc ---
        self.LOG_LEVEL = (_str("LOG_LEVEL", "INFO") or "INFO").upper()
        self.LOG_FORMAT = (_str("LOG_FORMAT", "HUMAN") or "HUMAN").upper()
        self.logger = (logger or logging.getLogger(__name__)).getChild(
            self.__class__.__name__
        )

    def clone_name_for(self, source_name: str, requested: Optional[str] = None) -> str:
        """Name for a new guild: the requested one, else the source name + suffix."""
        if requested and requested.strip():
            return requested.strip()[:MAX_GUILD_NAME]
        return f"{source_name}{self.CLONE_NAME_SUFFIX}"[:MAX_GUILD_NAME]

# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
from typing import Optional
import asyncio, io
import aiohttp, logging
from PIL import Image, ImageSequence

from common.constants import EMOJI_SIZE_PX, MAX_EMOJI_BYTES

logger = logging.getLogger("cloner.assets")


class AssetFetcher:
    """Downloads guild images (icons, emojis, avatars) over a shared session."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
    ):
        self.session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def set_session(self, session: aiohttp.ClientSession | None):
        self.session = session

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self._timeout)
        return self.session

    async def fetch(self, url: str) -> bytes:
        session = await self._ensure_session()
        async with session.get(url) as resp:
            resp.raise_for_status()
            return await resp.read()

    async def fetch_optional(self, url: Optional[str]) -> Optional[bytes]:
        """Like fetch, but a missing url or failed download yields None."""
        if not url:
            return None
        try:
            return await self.fetch(url)
        except Exception as e:
            logger.warning("[⚠️] Failed fetching %s: %s", url, e)
            return None

    async def fetch_emoji(self, url: str, animated: bool) -> bytes:
        """Fetch an emoji image and shrink it to the upload limit if needed."""
        raw = await self.fetch(url)
        if len(raw) <= MAX_EMOJI_BYTES:
            return raw
        try:
            if animated:
                return await shrink_animated(raw, max_bytes=MAX_EMOJI_BYTES)
            return await shrink_static(raw, max_bytes=MAX_EMOJI_BYTES)
        except Exception as e:
            logger.error("[⛔] Error shrinking emoji from %s: %s", url, e)
            return raw

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()


# ---------- image shrinking ----------
async def shrink_static(data: bytes, max_bytes: int = MAX_EMOJI_BYTES) -> bytes:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, _sync_shrink_static, data, max_bytes)


def _sync_shrink_static(data: bytes, max_bytes: int) -> bytes:
    img = Image.open(io.BytesIO(data)).convert("RGBA")
    img.thumbnail((EMOJI_SIZE_PX, EMOJI_SIZE_PX), Image.LANCZOS)

    out = io.BytesIO()
    img.save(out, format="PNG", optimize=True)
    result = out.getvalue()
    if len(result) <= max_bytes:
        return result

    out = io.BytesIO()
    img.convert("P", palette=Image.ADAPTIVE).save(out, format="PNG", optimize=True)
    result = out.getvalue()
    return result if len(result) <= max_bytes else data


async def shrink_animated(data: bytes, max_bytes: int = MAX_EMOJI_BYTES) -> bytes:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, _sync_shrink_animated, data, max_bytes)


def _sync_shrink_animated(data: bytes, max_bytes: int) -> bytes:
    img = Image.open(io.BytesIO(data))
    frames, durations = [], []
    for frame in ImageSequence.Iterator(img):
        f = frame.convert("RGBA")
        f.thumbnail((EMOJI_SIZE_PX, EMOJI_SIZE_PX), Image.LANCZOS)
        frames.append(f)
        durations.append(frame.info.get("duration", 100))

    out = io.BytesIO()
    frames[0].save(
        out, format="GIF", save_all=True, append_images=frames[1:],
        duration=durations, loop=0, optimize=True
    )
    result = out.getvalue()
    return result if len(result) <= max_bytes else data

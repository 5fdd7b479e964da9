import asyncio
import logging
import os
from pathlib import Path

from ..errors import StorageError

log = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/heic": "heic",
}


class ProofFileStore:
    """Proof images on local disk, addressed by a path relative to root."""

    def __init__(self, root: str):
        self.root = Path(root)

    @staticmethod
    def extension_for(content_type: str) -> str:
        return _EXTENSIONS.get((content_type or "").lower(), "png")

    def _write(self, rel: str, content: bytes) -> None:
        path = self.root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        # 'xb': never overwrite an existing proof
        with open(path, "xb") as f:
            f.write(content)

    async def save(self, rel: str, content: bytes) -> str:
        try:
            await asyncio.to_thread(self._write, rel, content)
        except OSError as e:
            log.error("could not store proof %s: %s", rel, e)
            raise StorageError(f"could not store proof image: {e}")
        return rel

    async def delete(self, rel: str) -> None:
        try:
            await asyncio.to_thread(os.remove, self.root / rel)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("could not remove proof %s: %s", rel, e)

    def path_of(self, rel: str) -> Path:
        return self.root / rel

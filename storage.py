"""
storage.py — Local filesystem byte storage for DarkDrop.

Files live under <root>/<account_id>/<bucket>/<generated name>. The generated
name never reuses the client's name verbatim as the whole filename, so two
uploads of the same name never collide on disk.
"""

import logging
import re
import secrets
import time
from pathlib import Path

import aiofiles
import aiofiles.os

from exceptions import DependencyError, NotFound, ValidationError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")


def safe_filename(original_name: str) -> str:
    name = Path(original_name.replace("\\", "/")).name
    name = _UNSAFE_CHARS.sub("_", name).strip("._")
    return name[:100] or "file"


class LocalStorage:

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def generate_name(self, original_name: str) -> str:
        return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}-{safe_filename(original_name)}"

    def _directory(self, account_id: str, bucket: str) -> Path:
        for segment in (account_id, bucket):
            if not _SEGMENT.match(segment):
                raise ValidationError(f"Invalid storage path segment: {segment!r}")
        return self.root / account_id / bucket

    async def put(self, account_id: str, bucket: str, original_name: str, data: bytes) -> tuple[str, str]:
        """Write bytes to a fresh location. Returns (generated name, path)."""
        directory = self._directory(account_id, bucket)
        name = self.generate_name(original_name)
        path = directory / name
        try:
            await aiofiles.os.makedirs(directory, exist_ok=True)
            async with aiofiles.open(path, "wb") as f:
                await f.write(data)
        except OSError as e:
            logger.error(f"LocalDisk PUT failed for {path}: {e}")
            await self.delete(str(path))
            raise DependencyError("Could not store file")
        return name, str(path)

    async def get(self, path: str) -> bytes:
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            raise NotFound("File data not found on disk")
        except OSError as e:
            logger.error(f"LocalDisk GET failed for {path}: {e}")
            raise DependencyError("Could not read file")

    async def delete(self, path: str) -> bool:
        """Best-effort removal. A missing file is not an error."""
        try:
            await aiofiles.os.remove(path)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"LocalDisk DELETE failed for {path}: {e}")
            return False

    async def exists(self, path: str) -> bool:
        return await aiofiles.os.path.exists(path)

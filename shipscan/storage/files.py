"""Local byte sink for uploaded label images."""

import re
import secrets
import string
import time
from dataclasses import dataclass
from pathlib import Path

from shipscan.utils.logger import get_logger

logger = get_logger(__name__)

_KEY_PATTERN = re.compile(r"^file-\d+-[a-z0-9]{5}\.[A-Za-z0-9]+$")
_RANDOM_ALPHABET = string.ascii_lowercase + string.digits


class StorageError(Exception):
    """Raised when an image cannot be written to storage."""


@dataclass
class StoredFile:
    key: str
    url: str
    size: int


def generate_key(original_name: str) -> str:
    """Build a ``file-<epoch ms>-<5 random chars>.<ext>`` storage key."""
    extension = Path(original_name).suffix.lstrip(".").lower() or "bin"
    random_part = "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(5))
    return f"file-{int(time.time() * 1000)}-{random_part}.{extension}"


class LocalFileStore:
    """Stores files under a directory and serves them under a URL prefix.

    Args:
        root: Directory that receives the files.
        public_base_url: URL prefix the files are served from.
    """

    def __init__(self, root: str | Path, public_base_url: str = "/files") -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def key_for_url(self, url: str) -> str | None:
        """Key of a URL served by this store, or None for foreign URLs."""
        prefix = f"{self.public_base_url}/"
        if not url.startswith(prefix):
            return None
        key = url[len(prefix):]
        return key if _KEY_PATTERN.match(key) else None

    def path_for(self, key: str) -> Path | None:
        """Filesystem path of a stored key, or None for malformed keys."""
        if not _KEY_PATTERN.match(key):
            return None
        return self.root / key

    def save(self, data: bytes, original_name: str) -> StoredFile:
        """Write ``data`` under a fresh key.

        Raises:
            StorageError: If the file cannot be written.
        """
        key = generate_key(original_name)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            (self.root / key).write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Failed to store {original_name}: {exc}") from exc

        logger.info("Stored %s as %s (%d bytes)", original_name, key, len(data))
        return StoredFile(key=key, url=self.url_for(key), size=len(data))

    def remove(self, key: str) -> bool:
        path = self.path_for(key)
        if path is None or not path.exists():
            return False
        try:
            path.unlink()
        except OSError as exc:
            logger.warning("Could not remove %s: %s", key, exc)
            return False
        return True

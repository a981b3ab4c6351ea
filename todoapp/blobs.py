"""
blobs.py - Attachment storage on the local filesystem

Layout under the root directory:

    uploads/<token>     one-time upload targets holding their expiry (epoch ms)
    objects/<id>        stored bytes
    objects/<id>.json   content type, size and storage time

Uploads are two-step: `create_upload_target()` hands out a token, then
`store(token, data)` writes the bytes and returns a storage id. A token can
be used once and only until it expires; expired targets are reaped
whenever a new one is handed out. Deletion and URL resolution never raise
on a missing blob.
"""

import json
import re
import secrets
from pathlib import Path
from typing import Iterator, Optional

from .clock import Clock, system_clock
from .errors import NotFoundError, StorageFailure, ValidationError
from .logging import get_logger

logger = get_logger(__name__)

UPLOAD_TTL_SECONDS = 60 * 60

_ID = re.compile(r"[0-9a-f]{32}")

INVALID_UPLOAD = "Upload link is invalid or already used"


class BlobStore:
    def __init__(
        self,
        root: Path,
        url_prefix: str = "/api/attachments",
        max_bytes: Optional[int] = None,
        clock: Clock = system_clock,
        upload_ttl_seconds: int = UPLOAD_TTL_SECONDS,
    ):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")
        self.max_bytes = max_bytes
        self.clock = clock
        self.upload_ttl_seconds = upload_ttl_seconds
        self._uploads = self.root / "uploads"
        self._objects = self.root / "objects"
        self._uploads.mkdir(parents=True, exist_ok=True)
        self._objects.mkdir(parents=True, exist_ok=True)

    def _object_path(self, storage_id: str) -> Optional[Path]:
        if not isinstance(storage_id, str) or not _ID.fullmatch(storage_id):
            return None
        return self._objects / storage_id

    # -----------------------------------------------------------------------
    # Upload targets
    # -----------------------------------------------------------------------

    @staticmethod
    def _upload_expiry(marker: Path) -> Optional[int]:
        """Expiry of an upload target; None when it is gone, 0 when unreadable."""
        try:
            return int(marker.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return 0

    def create_upload_target(self) -> str:
        self.reap_expired_uploads()
        token = secrets.token_hex(16)
        expires_at = self.clock() + self.upload_ttl_seconds * 1000
        (self._uploads / token).write_text(str(expires_at), encoding="utf-8")
        return token

    def reap_expired_uploads(self) -> int:
        now = self.clock()
        removed = 0
        for marker in self._uploads.iterdir():
            expires_at = self._upload_expiry(marker)
            if expires_at is not None and expires_at <= now:
                marker.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("Reaped %d expired upload target(s)", removed)
        return removed

    def upload_url(self, token: str) -> str:
        return f"{self.url_prefix}/upload/{token}"

    def store(self, token: str, data: bytes, content_type: Optional[str] = None) -> str:
        if not _ID.fullmatch(token or ""):
            raise NotFoundError(INVALID_UPLOAD)
        marker = self._uploads / token
        expires_at = self._upload_expiry(marker)
        try:
            marker.unlink()
        except FileNotFoundError:
            raise NotFoundError(INVALID_UPLOAD)
        if expires_at is None:
            raise NotFoundError(INVALID_UPLOAD)
        if expires_at <= self.clock():
            raise NotFoundError("Upload link has expired")

        if self.max_bytes is not None and len(data) > self.max_bytes:
            raise ValidationError("Attachment is too large")

        storage_id = secrets.token_hex(16)
        path = self._objects / storage_id
        try:
            path.write_bytes(data)
            path.with_suffix(".json").write_text(
                json.dumps({"content_type": content_type, "size": len(data), "stored_at": self.clock()}),
                encoding="utf-8",
            )
        except OSError as e:
            logger.exception("Failed to write blob %s", storage_id)
            raise StorageFailure() from e
        return storage_id

    # -----------------------------------------------------------------------
    # Stored objects
    # -----------------------------------------------------------------------

    def _meta(self, path: Path) -> dict:
        try:
            return json.loads(path.with_suffix(".json").read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}

    def iter_objects(self) -> Iterator[tuple[str, int]]:
        """Yield `(storage_id, stored_at)` for every stored blob.

        Blobs without readable metadata report a storage time of 0.
        """
        for path in self._objects.iterdir():
            if _ID.fullmatch(path.name):
                yield path.name, int(self._meta(path).get("stored_at") or 0)

    def exists(self, storage_id: str) -> bool:
        path = self._object_path(storage_id)
        return path is not None and path.is_file()

    def open(self, storage_id: str) -> tuple[Path, Optional[str]]:
        """Return the file path and stored content type of a blob."""
        path = self._object_path(storage_id)
        if path is None or not path.is_file():
            raise NotFoundError("Attachment not found")
        return path, self._meta(path).get("content_type")

    def get_url(self, storage_id: str) -> Optional[str]:
        if not self.exists(storage_id):
            return None
        return f"{self.url_prefix}/{storage_id}"

    def delete(self, storage_id: str) -> None:
        path = self._object_path(storage_id)
        if path is None:
            return
        path.unlink(missing_ok=True)
        path.with_suffix(".json").unlink(missing_ok=True)

"""
Temporary staging for uploaded files.

Remote MCP clients cannot hand the server a local file path, so they upload the
bytes first and refer to the returned file id afterwards. Staged files live
in a single directory, one file per upload named by its id, and are deleted
when any of these happens first:

- the TTL timer fires (eager expiry)
- a lookup notices the entry is past its expiry time (lazy expiry)
- the consumer calls cleanup() after using the file
- the server shuts down and calls cleanup_all()

Per-file lifecycle:

    received -> registered -> expired | consumed | missing

`missing` means the file disappeared from disk out-of-band; the stale
registry entry is dropped on the next lookup.

The store is used from a single asyncio event loop. Registry mutations happen
between await points, so no locking is needed; the one rule is that eviction
pops the registry entry *before* awaiting the disk delete, which makes the
timer path and the lazy path converge on exactly one delete.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Protocol

import anyio

from ib_gateway.errors import UploadRejected

logger = logging.getLogger("ib-gateway.uploads")

DEFAULT_UPLOAD_DIR = Path("/tmp/ib-mcp-uploads")
DEFAULT_MAX_BYTES = 50 * 1024 * 1024
DEFAULT_TTL_SECONDS = 5 * 60
DEFAULT_ALLOWED_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "image/png",
        "image/jpeg",
        "image/jpg",
    }
)


class AsyncReadable(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


@dataclass(frozen=True)
class UploadedFile:
    id: str
    filename: str
    storage_path: Path
    size: int
    mime_type: str
    uploaded_at: float
    expires_at: float

    def to_response(self) -> dict:
        """Wire shape returned to uploaders; expiresAt is epoch milliseconds."""
        return {
            "fileId": self.id,
            "filename": self.filename,
            "size": self.size,
            "expiresAt": int(self.expires_at * 1000),
        }


class ExpiryPolicy:
    """
    TTL bookkeeping for staged files.

    Both entry points, on_timer_fire() and on_lookup(), delegate to the same
    eviction routine supplied by the store, so double-delete safety lives in
    one place.
    """

    def __init__(
        self,
        evict: Callable[..., Awaitable[None]],
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._evict = evict
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def expires_at(self, uploaded_at: float) -> float:
        return uploaded_at + self.ttl_seconds

    def is_expired(self, record: UploadedFile) -> bool:
        return self.clock() > record.expires_at

    def schedule(self, record: UploadedFile) -> None:
        """Arrange for on_timer_fire() to run at the record's expiry time."""
        loop = asyncio.get_running_loop()
        delay = max(0.0, record.expires_at - self.clock())
        self._timers[record.id] = loop.call_later(delay, self._fire, record.id)

    def _fire(self, file_id: str) -> None:
        self._timers.pop(file_id, None)
        task = asyncio.ensure_future(self.on_timer_fire(file_id))
        # Keep a reference until done so the task is not garbage collected
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def on_timer_fire(self, file_id: str) -> None:
        await self._evict(file_id, reason="expired")

    async def on_lookup(self, record: UploadedFile) -> bool:
        """Evict the record if it has expired. Returns True if it was evicted."""
        if not self.is_expired(record):
            return False
        await self._evict(record.id, reason="expired")
        return True

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()


class UploadStore:
    """
    Owns the staging directory and the registry of uploaded files.

    Nothing else may delete staged files; consumers call cleanup() once they
    are done with a file.
    """

    def __init__(
        self,
        upload_dir: Path = DEFAULT_UPLOAD_DIR,
        max_bytes: int = DEFAULT_MAX_BYTES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        allowed_mime_types: Iterable[str] = DEFAULT_ALLOWED_MIME_TYPES,
        clock: Callable[[], float] = time.time,
    ):
        self.upload_dir = Path(upload_dir)
        self.max_bytes = max_bytes
        self.allowed_mime_types = frozenset(allowed_mime_types)
        self.expiry = ExpiryPolicy(self._evict, ttl_seconds=ttl_seconds, clock=clock)
        self._files: dict[str, UploadedFile] = {}

    async def initialize(self) -> bool:
        """
        Create the staging directory.

        A failure is logged and reported as False but does not stop the
        server; uploads will fail individually until the directory exists.
        """
        try:
            await anyio.Path(self.upload_dir).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(
                "Failed to create upload directory",
                extra={"event_data": {"upload_dir": str(self.upload_dir), "error": str(e)}},
            )
            return False
        logger.info(
            "Upload directory initialized",
            extra={"event_data": {"upload_dir": str(self.upload_dir)}},
        )
        return True

    @property
    def too_large_message(self) -> str:
        return f"File too large. Maximum size: {self.max_bytes // (1024 * 1024)}MB"

    def reject(self, message: str, **details) -> UploadRejected:
        """Log a rejection and return the error for the caller to raise."""
        logger.warning("Upload rejected", extra={"event_data": {"reason": message, **details}})
        return UploadRejected(message)

    def _validate(self, mime_type: str | None, size: int | None) -> None:
        if mime_type not in self.allowed_mime_types:
            raise self.reject(f"File type not allowed: {mime_type}", mime_type=mime_type)
        if size is not None and size > self.max_bytes:
            raise self.reject(self.too_large_message, size=size)

    async def accept(
        self,
        source: bytes | AsyncReadable,
        filename: str,
        mime_type: str | None,
        declared_size: int | None = None,
    ) -> UploadedFile:
        """
        Validate, persist and register an upload.

        The declared MIME type and size are checked before anything is read
        or written. The byte count actually received is checked again before
        writing, since a declared size may be absent or wrong.

        Args:
            source: The file bytes, or an object with an async read()
            filename: Original client-side filename (informational only)
            mime_type: Declared MIME type
            declared_size: Declared size in bytes, if known

        Returns:
            The registered UploadedFile

        Raises:
            UploadRejected: For disallowed types, oversized or empty files
        """
        if declared_size is None and isinstance(source, bytes):
            declared_size = len(source)
        self._validate(mime_type, declared_size)

        data = source if isinstance(source, bytes) else await source.read()
        if len(data) > self.max_bytes:
            raise self.reject(self.too_large_message, size=len(data))
        if not data:
            raise self.reject("Uploaded file is empty", filename=filename)

        file_id = secrets.token_hex(16)
        storage_path = self.upload_dir / file_id
        try:
            await anyio.Path(storage_path).write_bytes(data)
        except OSError as e:
            # Not registered yet, so nothing else would ever delete a partial write
            logger.error(
                "Failed to write uploaded file",
                extra={"event_data": {"file_id": file_id, "error": str(e)}},
            )
            await anyio.Path(storage_path).unlink(missing_ok=True)
            raise

        uploaded_at = self.expiry.clock()
        record = UploadedFile(
            id=file_id,
            filename=filename,
            storage_path=storage_path,
            size=len(data),
            mime_type=mime_type,
            uploaded_at=uploaded_at,
            expires_at=self.expiry.expires_at(uploaded_at),
        )
        self._files[file_id] = record
        self.expiry.schedule(record)

        logger.info(
            "File uploaded",
            extra={
                "event_data": {
                    "file_id": file_id,
                    "filename": filename,
                    "size": record.size,
                    "mime_type": mime_type,
                }
            },
        )
        return record

    async def get(self, file_id: str) -> UploadedFile | None:
        """
        Look up a staged file.

        Returns None if the id is unknown, the file has expired (it is
        deleted as a side effect), or the file vanished from disk.
        """
        record = self._files.get(file_id)
        if record is None:
            logger.debug("File not found", extra={"event_data": {"file_id": file_id}})
            return None

        if await self.expiry.on_lookup(record):
            return None

        if not await anyio.Path(record.storage_path).exists():
            logger.warning(
                "File missing from disk", extra={"event_data": {"file_id": file_id}}
            )
            # Only drop the entry if it has not been replaced meanwhile
            if self._files.get(file_id) is record:
                del self._files[file_id]
            return None

        return record

    async def _evict(self, file_id: str, reason: str = "consumed") -> None:
        record = self._files.pop(file_id, None)
        if record is None:
            return

        try:
            await anyio.Path(record.storage_path).unlink(missing_ok=True)
        except OSError as e:
            logger.error(
                "Failed to delete staged file",
                extra={"event_data": {"file_id": file_id, "error": str(e)}},
            )
            return

        logger.info(
            "File cleaned up", extra={"event_data": {"file_id": file_id, "reason": reason}}
        )

    async def cleanup(self, file_id: str) -> None:
        """Delete a staged file and forget it. Safe to call repeatedly."""
        await self._evict(file_id, reason="consumed")

    async def cleanup_all(self) -> None:
        """Delete every staged file. Called at shutdown."""
        self.expiry.cancel_all()
        file_ids = list(self._files)
        if file_ids:
            logger.info(
                "Cleaning up all uploaded files", extra={"event_data": {"count": len(file_ids)}}
            )
        for file_id in file_ids:
            await self._evict(file_id, reason="shutdown")

    def stats(self) -> dict:
        """Count and total size of staged files that have not yet expired."""
        now = self.expiry.clock()
        active = [f for f in self._files.values() if f.expires_at > now]
        total_size = sum(f.size for f in active)
        return {
            "activeFiles": len(active),
            "totalSize": total_size,
            "totalSizeMB": round(total_size / 1024 / 1024, 2),
        }

    def __contains__(self, file_id: str) -> bool:
        return file_id in self._files

    def __len__(self) -> int:
        return len(self._files)

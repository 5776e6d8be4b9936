"""
Artifact store for cached downloads.

Each artifact is two records under the storage root, named from the cache key:
    <key>.bin      payload bytes as received from upstream
    <key>.headers  header manifest, one "Name: Value" line per header

Writes go to temporaries in the same directory and are published by rename.
The payload rename is the commit point, so a reader either sees no artifact
or a payload and manifest from the same write.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Iterable

from passthru.cache.keys import is_valid_key
from passthru.exceptions import ArtifactNotFoundError, StorageError
from passthru.logging import get_logger
from passthru.types import ArtifactHandle, CacheEntry, HeaderList, from_timestamp

logger = get_logger(__name__)

PAYLOAD_SUFFIX = ".bin"
HEADERS_SUFFIX = ".headers"
TEMP_SUFFIX = ".tmp"
BACKUP_SUFFIX = ".old"

# How often read() retries when the artifact is replaced underneath it
READ_ATTEMPTS = 3


def encode_headers(headers: Iterable[tuple[str, str]]) -> str:
    """Serialize headers to the manifest format.

    Order and repeated names are preserved. CR/LF inside a name or value
    would break the line format, so they are stripped.
    """
    lines = []
    for name, value in headers:
        name = name.replace("\r", "").replace("\n", "").strip()
        value = value.replace("\r", " ").replace("\n", " ").strip()
        if not name:
            continue
        lines.append(f"{name}: {value}\n")
    return "".join(lines)


def decode_headers(text: str) -> HeaderList:
    """Parse a manifest back into ordered (name, value) pairs.

    Blank lines and lines without a ": " separator are skipped.
    """
    headers: HeaderList = []
    for line in text.splitlines():
        if not line:
            continue
        name, sep, value = line.partition(": ")
        if not sep or not name:
            continue
        headers.append((name, value))
    return headers


class ArtifactStore:
    """On-disk store of payload + header manifest pairs keyed by cache key.

    All blocking filesystem work runs in worker threads so that a slow disk
    only delays the key being written, not the event loop.
    """

    def __init__(self, root: str | Path) -> None:
        """Initialize artifact store.

        Args:
            root: Storage directory. Created by init().
        """
        self.root = Path(root)

    async def init(self) -> None:
        """Create the storage directory."""
        try:
            await asyncio.to_thread(self.root.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                "Failed to create storage directory",
                context={"error": e.strerror or str(e)},
            ) from e
        logger.info("Artifact store initialized", storage_dir=str(self.root))

    def _check_key(self, key: str) -> None:
        if not is_valid_key(key):
            raise ValueError(f"Invalid cache key: {key[:80]!r}")

    def payload_path(self, key: str) -> Path:
        """Path of the payload record for key."""
        self._check_key(key)
        return self.root / f"{key}{PAYLOAD_SUFFIX}"

    def headers_path(self, key: str) -> Path:
        """Path of the header manifest record for key."""
        self._check_key(key)
        return self.root / f"{key}{HEADERS_SUFFIX}"

    # ------------------------------------------------------------------
    # exists / read
    # ------------------------------------------------------------------

    async def exists(self, key: str) -> bool:
        """Return True if both records for key are present."""
        payload = self.payload_path(key)
        headers = self.headers_path(key)
        return await asyncio.to_thread(
            lambda: payload.is_file() and headers.is_file()
        )

    async def read(self, key: str) -> ArtifactHandle:
        """Load the handle for a stored artifact.

        Raises:
            ArtifactNotFoundError: If the payload is missing.
        """
        return await asyncio.to_thread(self._read_sync, key)

    async def open(self, key: str) -> tuple[ArtifactHandle, BinaryIO]:
        """Load the handle for a stored artifact together with an open payload.

        The caller owns the returned file and must close it. It stays readable
        even if the artifact is evicted or replaced afterwards.

        Raises:
            ArtifactNotFoundError: If the payload is missing.
        """
        return await asyncio.to_thread(self._open_sync, key)

    def _read_sync(self, key: str) -> ArtifactHandle:
        handle, fh = self._open_sync(key)
        fh.close()
        return handle

    def _open_sync(self, key: str) -> tuple[ArtifactHandle, BinaryIO]:
        payload = self.payload_path(key)
        headers_path = self.headers_path(key)

        for _ in range(READ_ATTEMPTS):
            try:
                fh = open(payload, "rb")
            except FileNotFoundError:
                raise ArtifactNotFoundError(
                    "Artifact not found", context={"key": key}
                ) from None

            try:
                opened = os.fstat(fh.fileno())
                try:
                    text = headers_path.read_text(encoding="utf-8", errors="replace")
                except FileNotFoundError:
                    text = ""
                try:
                    current = payload.stat()
                except FileNotFoundError:
                    current = None
            except BaseException:
                fh.close()
                raise

            # Same inode and mtime on both sides: manifest belongs to this payload
            if current is not None and (opened.st_ino, opened.st_mtime_ns) == (
                current.st_ino,
                current.st_mtime_ns,
            ):
                handle = ArtifactHandle(
                    key=key,
                    payload_path=payload,
                    headers=decode_headers(text),
                    size=opened.st_size,
                    last_write=from_timestamp(opened.st_mtime),
                )
                return handle, fh

            fh.close()

        raise ArtifactNotFoundError(
            "Artifact kept changing during read", context={"key": key}
        )

    # ------------------------------------------------------------------
    # write
    # ------------------------------------------------------------------

    async def write(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        headers: Iterable[tuple[str, str]],
    ) -> ArtifactHandle:
        """Persist an artifact atomically.

        Args:
            key: Cache key.
            chunks: Payload body, consumed to exhaustion.
            headers: Upstream response headers in original order.

        Returns:
            Handle of the newly published artifact.

        Raises:
            StorageError: If a record cannot be written or published. Errors
                raised by `chunks` itself propagate unchanged.
        """
        self._check_key(key)
        header_list = list(headers)
        manifest = encode_headers(header_list).encode("utf-8")
        temporaries: list[Path] = []

        try:
            payload_tmp = await self._stream_to_temp(key, chunks, temporaries)
            headers_tmp = await asyncio.to_thread(
                self._write_temp, key, manifest, temporaries
            )
            stat = await asyncio.to_thread(
                self._publish, key, payload_tmp, headers_tmp, temporaries
            )
        except OSError as e:
            logger.error("Artifact write failed", key=key, error=e.strerror or str(e))
            raise StorageError(
                "Failed to write artifact",
                context={"key": key, "error": e.strerror or str(e)},
            ) from e
        finally:
            self._discard(temporaries)

        handle = ArtifactHandle(
            key=key,
            payload_path=self.payload_path(key),
            headers=decode_headers(manifest.decode("utf-8")),
            size=stat.st_size,
            last_write=from_timestamp(stat.st_mtime),
        )
        logger.info("Artifact stored", key=key, size=handle.size)
        return handle

    def _new_temp(self, key: str, suffix: str) -> tuple[int, Path]:
        fd, name = tempfile.mkstemp(
            prefix=f".{key}.", suffix=suffix + TEMP_SUFFIX, dir=self.root
        )
        return fd, Path(name)

    async def _stream_to_temp(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        temporaries: list[Path],
    ) -> Path:
        fd, path = await asyncio.to_thread(self._new_temp, key, PAYLOAD_SUFFIX)
        temporaries.append(path)

        with os.fdopen(fd, "wb") as fh:
            async for chunk in chunks:
                if chunk:
                    await asyncio.to_thread(fh.write, chunk)
            await asyncio.to_thread(self._sync_file, fh)

        return path

    def _write_temp(self, key: str, data: bytes, temporaries: list[Path]) -> Path:
        fd, path = self._new_temp(key, HEADERS_SUFFIX)
        temporaries.append(path)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            self._sync_file(fh)
        return path

    @staticmethod
    def _sync_file(fh) -> None:
        fh.flush()
        os.fsync(fh.fileno())

    def _publish(
        self,
        key: str,
        payload_tmp: Path,
        headers_tmp: Path,
        temporaries: list[Path],
    ) -> os.stat_result:
        payload = self.payload_path(key)
        headers = self.headers_path(key)

        # Last-write time is the publish time, not when the download started
        os.utime(payload_tmp)

        # Take the old commit point away first so no reader pairs old and new
        # records. The old records are kept aside until the new pair is in.
        old_payload: Path | None = None
        old_headers: Path | None = None
        headers_placed = False
        try:
            old_payload = self._move_aside(key, payload, temporaries)
            old_headers = self._move_aside(key, headers, temporaries)
            os.replace(headers_tmp, headers)
            headers_placed = True
            os.replace(payload_tmp, payload)
        except OSError:
            if old_headers is not None or headers_placed:
                self._restore(old_headers, headers)
            if old_payload is not None:
                self._restore(old_payload, payload)
            raise

        self._sync_dir()
        return payload.stat()

    def _move_aside(self, key: str, path: Path, temporaries: list[Path]) -> Path | None:
        if not path.exists():
            return None
        fd, backup = self._new_temp(key, BACKUP_SUFFIX)
        os.close(fd)
        temporaries.append(backup)
        try:
            os.replace(path, backup)
        except FileNotFoundError:
            return None
        return backup

    @staticmethod
    def _restore(backup: Path | None, path: Path) -> None:
        try:
            if backup is None:
                # Nothing to go back to; drop a half-published record
                path.unlink(missing_ok=True)
            else:
                os.replace(backup, path)
        except OSError as e:
            logger.error(
                "Could not restore previous record", path=path.name, error=str(e)
            )

    def _sync_dir(self) -> None:
        if not hasattr(os, "O_DIRECTORY"):
            return
        fd = os.open(self.root, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    @staticmethod
    def _discard(temporaries: list[Path]) -> None:
        for path in temporaries:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove temporary", path=path.name, error=str(e))

    # ------------------------------------------------------------------
    # remove / listing
    # ------------------------------------------------------------------

    def _last_write_sync(self, key: str) -> datetime | None:
        # Payload mtime wins; an orphaned manifest ages on its own mtime
        for path in (self.payload_path(key), self.headers_path(key)):
            try:
                return from_timestamp(path.stat().st_mtime)
            except FileNotFoundError:
                continue
        return None

    async def last_write(self, key: str) -> datetime | None:
        """Last-write time of key's artifact, or None if nothing is stored."""
        return await asyncio.to_thread(self._last_write_sync, key)

    async def remove(self, key: str, older_than: datetime | None = None) -> bool:
        """Delete both records for key.

        Idempotent: removing an absent key is not an error.

        Args:
            key: Cache key.
            older_than: If given, the last-write time is re-read right before
                deleting and the artifact is kept unless it is older than this.

        Returns:
            True if any record was deleted.

        Raises:
            StorageError: If a record exists but cannot be deleted.
        """
        try:
            return await asyncio.to_thread(self._remove_sync, key, older_than)
        except OSError as e:
            raise StorageError(
                "Failed to remove artifact",
                context={"key": key, "error": e.strerror or str(e)},
            ) from e

    def _remove_sync(self, key: str, older_than: datetime | None) -> bool:
        if older_than is not None:
            last_write = self._last_write_sync(key)
            if last_write is None or last_write >= older_than:
                return False

        removed = False
        # Payload first: the artifact stops being visible before the manifest goes
        for path in (self.payload_path(key), self.headers_path(key)):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                pass
        return removed

    def _scan_keys(self) -> list[str]:
        keys: set[str] = set()
        try:
            names = os.listdir(self.root)
        except FileNotFoundError:
            return []
        for name in names:
            for suffix in (PAYLOAD_SUFFIX, HEADERS_SUFFIX):
                if name.endswith(suffix):
                    stem = name[: -len(suffix)]
                    if is_valid_key(stem):
                        keys.add(stem)
        return sorted(keys)

    async def list_entries(self) -> AsyncIterator[CacheEntry]:
        """Yield (key, last_write) for every stored artifact.

        Each call lists the directory afresh. Keys that vanish between the
        listing and their stat are skipped.
        """
        keys = await asyncio.to_thread(self._scan_keys)
        for key in keys:
            last_write = await asyncio.to_thread(self._last_write_sync, key)
            if last_write is None:
                continue
            yield CacheEntry(key=key, last_write=last_write)

    def _stale_temporaries_sync(self, cutoff: datetime) -> list[Path]:
        stale: list[Path] = []
        try:
            entries = list(os.scandir(self.root))
        except FileNotFoundError:
            return stale
        for entry in entries:
            if not (entry.name.startswith(".") and entry.name.endswith(TEMP_SUFFIX)):
                continue
            try:
                mtime = from_timestamp(entry.stat().st_mtime)
            except FileNotFoundError:
                continue
            if mtime < cutoff:
                stale.append(Path(entry.path))
        return stale

    async def list_stale_temporaries(self, cutoff: datetime) -> list[Path]:
        """Temporaries last touched before cutoff (left by an interrupted write)."""
        return await asyncio.to_thread(self._stale_temporaries_sync, cutoff)

    async def purge_stale_temporaries(self, cutoff: datetime) -> int:
        """Delete temporaries last touched before cutoff.

        Returns:
            Number of files deleted.
        """

        def _purge() -> int:
            count = 0
            for path in self._stale_temporaries_sync(cutoff):
                try:
                    path.unlink()
                    count += 1
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning(
                        "Could not remove stale temporary", path=path.name, error=str(e)
                    )
            return count

        return await asyncio.to_thread(_purge)

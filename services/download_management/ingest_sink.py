"""
Module Name: ingest_sink.py
Description:
    Places downloaded books into the ingest directory watched by the library
    manager. Files are staged on the same filesystem, fsynced and published
    with a single atomic link so the watcher never sees a partial file, and a
    book is published at most once.

Location:
    /services/download_management/ingest_sink.py

"""

import errno
import hashlib
import os
import re
import shutil
import tempfile
import threading
import unicodedata
from typing import Iterable, Optional, Union

from utils.logger import get_module_logger

from .errors import IngestError
from .models import ResourceRef

_LOGGER = get_module_logger("DownloadManagement.IngestSink")

Content = Union[bytes, bytearray, memoryview, Iterable[bytes]]


class IngestSink:
    """
    Atomic, idempotent writer for the ingest directory.

    Features:
    - Canonical file name ``<sanitized book_id>.<format>``
    - Staging + fsync + atomic publish (``os.link``, never overwrites)
    - Existing canonical file means the book is already ingested
    - Disk space check and optional sha256 verification
    """

    # Anything outside this set is replaced in the file name
    INVALID_CHARS = re.compile(r'[^A-Za-z0-9._-]')
    MAX_COMPONENT_LENGTH = 255
    STAGING_DIRNAME = ".staging"
    CHUNK_SIZE = 8192
    ID_HASH_LENGTH = 12

    def __init__(self, ingest_dir: str, tmp_dir: Optional[str] = None,
                 verify_checksum: bool = False, *, logger=None):
        if not ingest_dir:
            raise ValueError("ingest_dir is required")
        self.logger = logger or _LOGGER
        self.ingest_dir = os.path.abspath(ingest_dir)
        self.staging_dir = os.path.abspath(tmp_dir) if tmp_dir else os.path.join(
            self.ingest_dir, self.STAGING_DIRNAME
        )
        self.verify_checksum = verify_checksum
        self._publish_lock = threading.Lock()

    # ============================================================================
    # Naming
    # ============================================================================

    def canonical_name(self, resource_ref: ResourceRef) -> str:
        """
        File name a book is published under.

        Ids that are not already safe file names (or are too long) get a short
        hash of the raw id appended, so two ids never share a file.
        """
        book_id = resource_ref.book_id
        stem = unicodedata.normalize('NFC', book_id)
        stem = self.INVALID_CHARS.sub('_', stem).lstrip('.') or 'book'
        extension = self.INVALID_CHARS.sub('', resource_ref.format) or 'bin'

        max_stem = self.MAX_COMPONENT_LENGTH - len(extension) - 1
        if stem != book_id or len(stem) > max_stem:
            digest = hashlib.sha256(book_id.encode('utf-8', 'surrogatepass')).hexdigest()
            suffix = f"-{digest[:self.ID_HASH_LENGTH]}"
            stem = stem[:max_stem - len(suffix)] + suffix
        return f"{stem}.{extension}"

    def artifact_path(self, resource_ref: ResourceRef) -> str:
        return os.path.join(self.ingest_dir, self.canonical_name(resource_ref))

    # ============================================================================
    # Ingest
    # ============================================================================

    def ingest(self, resource_ref: ResourceRef, content: Content) -> str:
        """
        Publish ``content`` as the artifact for ``resource_ref``.

        Args:
            resource_ref: Book being ingested
            content: Bytes, or an iterable of byte chunks

        Returns:
            Path of the published artifact

        Raises:
            IngestError: Staging, writing or publishing failed
        """
        target = self.artifact_path(resource_ref)
        if os.path.exists(target):
            self.logger.info(f"Book {resource_ref.book_id} already ingested at {target}")
            return target

        if isinstance(content, (bytes, bytearray, memoryview)):
            chunks = [bytes(content)]
            expected_size = len(chunks[0])
        else:
            chunks = content
            expected_size = None

        try:
            os.makedirs(self.ingest_dir, exist_ok=True)
            os.makedirs(self.staging_dir, exist_ok=True)
        except OSError as exc:
            raise IngestError(f"Cannot prepare ingest directories: {exc}", path=target) from exc

        if expected_size is not None and not self._check_disk_space(self.staging_dir, expected_size):
            raise IngestError("Insufficient disk space for ingest", path=target)

        temp_path = None
        try:
            fd, temp_path = tempfile.mkstemp(
                prefix=f".{self.canonical_name(resource_ref)}.", suffix=".part", dir=self.staging_dir
            )
            digest = hashlib.sha256()
            written = 0
            with os.fdopen(fd, 'wb') as handle:
                for chunk in chunks:
                    if not chunk:
                        continue
                    handle.write(chunk)
                    digest.update(chunk)
                    written += len(chunk)
                handle.flush()
                os.fsync(handle.fileno())

            if written == 0:
                raise IngestError("Refusing to ingest an empty file", path=target)

            published = self._publish(temp_path, target)
            if not published:
                self.logger.info(f"Book {resource_ref.book_id} was ingested concurrently at {target}")
                return target

            if self.verify_checksum and self._calculate_checksum(target) != digest.hexdigest():
                self.logger.error(f"Checksum mismatch after publishing {target}")
                self._remove_quietly(target)
                raise IngestError("File verification failed - checksums don't match", path=target)

            self.logger.info(
                "Ingested book",
                extra={"book_id": resource_ref.book_id, "path": target, "bytes": written},
            )
            return target

        except OSError as exc:
            raise IngestError(f"Ingest failed: {exc}", path=target) from exc
        finally:
            if temp_path:
                self._remove_quietly(temp_path)

    def read_artifact(self, path: str) -> bytes:
        """Read a published artifact back (local download of a finished job)."""
        real_path = os.path.realpath(path)
        if os.path.commonpath([real_path, os.path.realpath(self.ingest_dir)]) != os.path.realpath(self.ingest_dir):
            raise IngestError("Artifact is outside the ingest directory", path=path)
        try:
            with open(real_path, 'rb') as handle:
                return handle.read()
        except OSError as exc:
            raise IngestError(f"Cannot read artifact: {exc}", path=path) from exc

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _publish(self, temp_path: str, target: str) -> bool:
        """Atomically expose ``temp_path`` at ``target``; False if it already existed."""
        try:
            os.link(temp_path, target)
        except FileExistsError:
            return False
        except OSError as exc:
            if exc.errno not in (errno.EXDEV, errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP):
                raise
            # No hard links here (other filesystem or unsupported); copy next to
            # the target and rename into place instead
            return self._publish_by_copy(temp_path, target)

        self._fsync_directory(os.path.dirname(target))
        return True

    def _publish_by_copy(self, temp_path: str, target: str) -> bool:
        if os.path.exists(target):
            return False
        directory = os.path.dirname(target)
        fd, local_temp = tempfile.mkstemp(prefix=f".{os.path.basename(target)}.", suffix=".part", dir=directory)
        try:
            with os.fdopen(fd, 'wb') as handle, open(temp_path, 'rb') as source:
                shutil.copyfileobj(source, handle)
                handle.flush()
                os.fsync(handle.fileno())
            try:
                os.link(local_temp, target)
            except FileExistsError:
                return False
            except OSError as exc:
                if exc.errno not in (errno.EXDEV, errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP):
                    raise
                # No hard links in the ingest dir at all; rename under the lock
                with self._publish_lock:
                    if os.path.exists(target):
                        return False
                    os.replace(local_temp, target)
        finally:
            self._remove_quietly(local_temp)

        self._fsync_directory(directory)
        return True

    def _fsync_directory(self, directory: str):
        try:
            dir_fd = os.open(directory, os.O_RDONLY)
        except OSError as exc:
            self.logger.debug(f"Could not open {directory} for fsync: {exc}")
            return
        try:
            os.fsync(dir_fd)
        except OSError as exc:
            self.logger.debug(f"Directory fsync not supported for {directory}: {exc}")
        finally:
            os.close(dir_fd)

    def _calculate_checksum(self, file_path: str) -> str:
        hash_func = hashlib.sha256()
        with open(file_path, 'rb') as handle:
            for chunk in iter(lambda: handle.read(self.CHUNK_SIZE), b''):
                hash_func.update(chunk)
        return hash_func.hexdigest()

    def _check_disk_space(self, path: str, required_bytes: int) -> bool:
        """True when ``path`` has room for ``required_bytes`` plus a 10% buffer."""
        try:
            stat = os.statvfs(path)
        except (AttributeError, OSError) as exc:
            # statvfs is unavailable on some platforms; the write itself will fail if full
            self.logger.debug(f"Disk space check skipped for {path}: {exc}")
            return True

        available_bytes = stat.f_bavail * stat.f_frsize
        required_with_buffer = required_bytes * 1.1
        if available_bytes < required_with_buffer:
            self.logger.warning(
                f"Insufficient disk space: {available_bytes / (1024**2):.2f} MB available, "
                f"{required_with_buffer / (1024**2):.2f} MB required"
            )
            return False
        return True

    def _remove_quietly(self, path: str):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            self.logger.warning(f"Could not remove temporary file {path}: {exc}")

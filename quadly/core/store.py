"""
Quadlet Store for Quadly.

This module implements QuadletStore, the only writer of quadlet artifacts on
disk. Writes go to a temporary file in the target directory and are renamed
into place, so a concurrent reader sees either the old or the complete new
content. Every save or delete is followed by a daemon reload, and the
operation is not considered complete until that reload has returned.
"""

import asyncio
import logging
import os
import tempfile
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

from quadly.core.parser import parse_quadlet, serialize_quadlet
from quadly.core.validator import QuadletValidator
from quadly.shared.exceptions import (
    StorageError, QuadletNotFoundError, QuadletParseError, QuadletValidationError, ErrorCode
)
from quadly.shared.interfaces import IQuadletStore, IManagerSurface
from quadly.shared.models import QuadletDocument, UnitType, is_valid_name

logger = logging.getLogger(__name__)


class QuadletStore(IQuadletStore):
    """
    Persists quadlet documents as ``{name}.{suffix}`` files in one directory.

    Save and delete on the same artifact are serialized by a per-file lock;
    operations on different artifacts run independently.
    """

    def __init__(self, base_dir: Path, manager: IManagerSurface,
                 validator: Optional[QuadletValidator] = None):
        self.base_dir = Path(base_dir)
        self.manager = manager
        self.validator = validator or QuadletValidator()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)
        logger.info(f"QuadletStore initialized at {self.base_dir}")

    def path_for(self, name: str, unit_type: UnitType) -> Path:
        if not is_valid_name(name):
            raise QuadletValidationError(
                f"Invalid quadlet name: {name!r}",
                error_code=ErrorCode.VALIDATION_INVALID_NAME
            )
        if not unit_type.is_concrete:
            raise QuadletValidationError(
                "Quadlet artifacts need a concrete type",
                error_code=ErrorCode.VALIDATION_INVALID_TYPE
            )
        return self.base_dir / f"{name}.{unit_type.suffix}"

    def ensure_directory(self) -> None:
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Cannot create quadlet directory {self.base_dir}: {e}",
                path=str(self.base_dir),
                cause=e
            )

    @asynccontextmanager
    async def _file_lock(self, path: Path):
        """Hold the lock for ``path``; entries are dropped once nobody uses them."""
        key = str(path)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    def _write_atomic(self, path: Path, content: str) -> None:
        self.ensure_directory()
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as tmp:
                tmp.write(content)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    async def save(self, doc: QuadletDocument) -> None:
        """
        Validate and atomically persist ``doc``, then reload the manager.

        Raises:
            QuadletValidationError: If the document is not valid for its type
            StorageError: If the file cannot be written; the previous
                artifact, if any, is left untouched
        """
        path = self.path_for(doc.name, doc.unit_type)
        self.validator.validate_or_raise(doc)
        content = serialize_quadlet(doc)

        async with self._file_lock(path):
            try:
                await asyncio.to_thread(self._write_atomic, path, content)
            except OSError as e:
                logger.error(f"Failed to write {path}: {e}")
                raise StorageError(
                    f"Failed to save quadlet {doc.filename}: {e}",
                    path=str(path),
                    error_code=ErrorCode.STORAGE_WRITE_FAILED,
                    cause=e
                )
            logger.info(f"Saved quadlet {doc.filename}")
            await self.manager.reload()

    async def read(self, name: str, unit_type: UnitType) -> QuadletDocument:
        """
        Read and parse the artifact for ``(name, unit_type)``.

        Raises:
            QuadletNotFoundError: If no artifact exists
            QuadletParseError: If the artifact is malformed
            StorageError: On any other filesystem failure
        """
        path = self.path_for(name, unit_type)
        try:
            raw = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise QuadletNotFoundError(name, unit_type.value)
        except OSError as e:
            raise StorageError(
                f"Failed to read quadlet {path.name}: {e}",
                path=str(path),
                error_code=ErrorCode.STORAGE_READ_FAILED,
                cause=e
            )
        return parse_quadlet(raw, name=name, unit_type=unit_type)

    async def exists(self, name: str, unit_type: UnitType) -> bool:
        return await asyncio.to_thread(self.path_for(name, unit_type).is_file)

    async def delete(self, name: str, unit_type: UnitType) -> None:
        """
        Remove the artifact for ``(name, unit_type)`` and reload the manager.

        Raises:
            QuadletNotFoundError: If no artifact exists
            StorageError: If the file cannot be removed
        """
        path = self.path_for(name, unit_type)
        async with self._file_lock(path):
            try:
                await asyncio.to_thread(os.remove, path)
            except FileNotFoundError:
                raise QuadletNotFoundError(name, unit_type.value)
            except OSError as e:
                logger.error(f"Failed to delete {path}: {e}")
                raise StorageError(
                    f"Failed to delete quadlet {path.name}: {e}",
                    path=str(path),
                    error_code=ErrorCode.STORAGE_DELETE_FAILED,
                    cause=e
                )
            logger.info(f"Deleted quadlet {path.name}")
            await self.manager.reload()

    def _scan(self, type_filter: UnitType) -> List[Path]:
        if not self.base_dir.is_dir():
            return []
        types = UnitType.concrete() if type_filter is UnitType.ANY else [type_filter]
        suffixes = {f".{t.suffix}" for t in types}
        return sorted(
            p for p in self.base_dir.iterdir()
            if p.is_file() and p.suffix in suffixes and not p.name.startswith('.')
        )

    async def list(self, type_filter: Optional[UnitType] = None) -> List[QuadletDocument]:
        """
        List stored documents, optionally restricted to one type.

        Artifacts that fail to parse are logged and skipped so one broken
        file does not hide the rest.
        """
        type_filter = type_filter or UnitType.ANY
        try:
            paths = await asyncio.to_thread(self._scan, type_filter)
        except OSError as e:
            raise StorageError(
                f"Failed to list quadlets in {self.base_dir}: {e}",
                path=str(self.base_dir),
                error_code=ErrorCode.STORAGE_READ_FAILED,
                cause=e
            )

        documents = []
        for path in paths:
            unit_type = UnitType.from_suffix(path.suffix)
            name = path.name[:-len(path.suffix)]
            if not is_valid_name(name):
                logger.warning(f"Skipping quadlet with unsupported name: {path.name}")
                continue
            try:
                documents.append(await self.read(name, unit_type))
            except QuadletNotFoundError:
                # removed between scan and read
                continue
            except QuadletParseError as e:
                logger.warning(f"Skipping malformed quadlet {path.name}: {e}")

        documents.sort(key=lambda d: (d.unit_type.value, d.name))
        return documents

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from .common_utils import safe_unlink
from .errors import ConfigurationError
from .lockmanager import SapkgLockManager
from .models import LATEST, CachedPackage, PackageMetadata

logger = logging.getLogger(__name__)

# Files the cache owns. Anything else in the directory (the database itself,
# lock files, user files) is never touched by clear_all/optimize.
ARTIFACT_SUFFIXES = (".whl", ".tar.gz", ".zip")


def is_artifact(path: Path) -> bool:
    return path.is_file() and path.name.endswith(ARTIFACT_SUFFIXES)


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass
class CacheReport:
    """Outcome of `verify()` / `optimize()`."""

    checked: int = 0
    stale: List[Tuple[str, str]] = field(default_factory=list)
    corrupt: List[Tuple[str, str]] = field(default_factory=list)
    orphans: List[Path] = field(default_factory=list)
    bytes_reclaimed: int = 0

    @property
    def healthy(self) -> bool:
        return not (self.stale or self.corrupt or self.orphans)


class PackageCache:
    """
    SQLite-backed store mapping (name, version) to a downloaded artifact.

    A row is only ever served while its artifact file exists; rows whose file
    has disappeared are purged on read.
    """

    def __init__(self, cache_dir: Path, lock_manager: Optional[SapkgLockManager] = None):
        self.cache_dir = Path(cache_dir)
        self.db_path = self.cache_dir / "cache.db"
        self.lock_manager = lock_manager
        self._lock = threading.Lock()
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            # Use WAL mode for better concurrency
            self.conn = sqlite3.connect(
                str(self.db_path),
                timeout=10,
                check_same_thread=False,
                isolation_level="DEFERRED",
            )
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")
            self._initialize_schema()
        except (OSError, sqlite3.Error) as e:
            raise ConfigurationError(f"Cannot open package cache at {self.db_path}: {e}") from e

    def _initialize_schema(self):
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cached_packages (
                    name TEXT NOT NULL,
                    version TEXT NOT NULL,
                    hash TEXT,
                    download_url TEXT,
                    cached_at TEXT,
                    file_path TEXT,
                    metadata TEXT,
                    PRIMARY KEY (name, version)
                )
            """
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_cached_at ON cached_packages(name, cached_at)"
            )

    @contextmanager
    def _writing(self):
        """Serialises writers across threads and, when configured, across processes."""
        process_lock = (
            self.lock_manager.acquire_lock("cache") if self.lock_manager else nullcontext()
        )
        with process_lock, self._lock:
            yield

    def close(self):
        with self._lock:
            self.conn.close()

    # --- row mapping ---------------------------------------------------------

    @staticmethod
    def _row_to_record(row) -> CachedPackage:
        name, version, pkg_hash, download_url, cached_at, file_path, metadata_str = row
        try:
            metadata = PackageMetadata.from_dict(json.loads(metadata_str) if metadata_str else None)
        except (json.JSONDecodeError, TypeError):
            metadata = PackageMetadata()
        return CachedPackage(
            name=name,
            version=version,
            hash=pkg_hash or "",
            download_url=download_url or "",
            cached_at=datetime.fromisoformat(cached_at),
            file_path=Path(file_path),
            metadata=metadata,
        )

    _COLUMNS = "name, version, hash, download_url, cached_at, file_path, metadata"

    # --- public API ----------------------------------------------------------

    def lookup(self, name: str, version: str) -> Optional[CachedPackage]:
        """
        Returns the record for (name, version) if its artifact is still on disk.

        `version == "latest"` resolves to the most recently cached version of
        `name`. A row whose file is gone is deleted and None is returned.
        """
        with self._lock:
            if version == LATEST:
                rows = self.conn.execute(
                    f"SELECT {self._COLUMNS} FROM cached_packages WHERE name = ? "
                    "ORDER BY cached_at DESC",
                    (name,),
                ).fetchall()
            else:
                rows = self.conn.execute(
                    f"SELECT {self._COLUMNS} FROM cached_packages WHERE name = ? AND version = ?",
                    (name, version),
                ).fetchall()

        for row in rows:
            record = self._row_to_record(row)
            if record.file_path.exists():
                return record
            logger.debug("Purging stale cache entry %s==%s", record.name, record.version)
            self.remove(record.name, record.version, file_path=record.file_path)
        return None

    def store(self, record: CachedPackage) -> None:
        """Upserts by (name, version); the last write wins."""
        with self._writing():
            with self.conn:
                self.conn.execute(
                    f"""
                    INSERT OR REPLACE INTO cached_packages ({self._COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        record.name,
                        record.version,
                        record.hash,
                        record.download_url,
                        record.cached_at.isoformat(),
                        str(record.file_path),
                        json.dumps(record.metadata.to_dict()),
                    ),
                )

    def artifact_path(self, name: str, version: str, filename: Optional[str] = None) -> Path:
        """Conventional location of the artifact for (name, version) in the cache dir."""
        if filename:
            return self.cache_dir / filename
        return self.cache_dir / f"{name}-{version}.whl"

    def remove(self, name: str, version: str, file_path: Optional[Path] = None) -> None:
        """
        Deletes the row and the artifact. Both halves are independent: a missing
        row or a missing file is not an error.
        """
        if file_path is None:
            with self._lock:
                row = self.conn.execute(
                    "SELECT file_path FROM cached_packages WHERE name = ? AND version = ?",
                    (name, version),
                ).fetchone()
            file_path = Path(row[0]) if row and row[0] else None

        with self._writing():
            with self.conn:
                self.conn.execute(
                    "DELETE FROM cached_packages WHERE name = ? AND version = ?",
                    (name, version),
                )

        for candidate in {file_path, self.artifact_path(name, version)}:
            if candidate is not None and candidate.resolve().parent == self.cache_dir.resolve():
                safe_unlink(candidate)

    def remove_all(self, name: str) -> int:
        """Removes every cached version of `name`. Returns the number of rows dropped."""
        records = self.list_packages(name)
        for record in records:
            self.remove(record.name, record.version, file_path=record.file_path)
        return len(records)

    def list_packages(self, name: Optional[str] = None) -> List[CachedPackage]:
        with self._lock:
            if name is None:
                rows = self.conn.execute(
                    f"SELECT {self._COLUMNS} FROM cached_packages ORDER BY name, cached_at"
                ).fetchall()
            else:
                rows = self.conn.execute(
                    f"SELECT {self._COLUMNS} FROM cached_packages WHERE name = ? ORDER BY cached_at",
                    (name,),
                ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def clear_all(self) -> None:
        """Drops every row and every artifact file; unrelated files are left alone."""
        with self._writing():
            with self.conn:
                self.conn.execute("DELETE FROM cached_packages")
            for entry in self.cache_dir.iterdir():
                if is_artifact(entry):
                    safe_unlink(entry)

    def stats(self) -> Tuple[int, int]:
        """
        (row count, total bytes of every file in the cache directory).
        Orphaned files count towards the size, which is what `optimize` reclaims.
        """
        with self._lock:
            count = self.conn.execute("SELECT COUNT(*) FROM cached_packages").fetchone()[0]
        total_size = 0
        for entry in self.cache_dir.iterdir():
            if entry.is_file():
                try:
                    total_size += entry.stat().st_size
                except FileNotFoundError:
                    continue
        return count, total_size

    def verify(self) -> CacheReport:
        """Checks every row: file present and sha256 still matching. Changes nothing."""
        report = CacheReport()
        for record in self.list_packages():
            report.checked += 1
            key = (record.name, record.version)
            if not record.file_path.exists():
                report.stale.append(key)
            elif record.hash and file_sha256(record.file_path) != record.hash:
                report.corrupt.append(key)
        report.orphans = self._orphans()
        return report

    def optimize(self) -> CacheReport:
        """Purges stale and corrupt rows and deletes orphan artifact files."""
        report = self.verify()
        for name, version in report.stale + report.corrupt:
            self.remove(name, version)
        for orphan in report.orphans:
            try:
                size = orphan.stat().st_size
            except FileNotFoundError:
                continue
            if safe_unlink(orphan):
                report.bytes_reclaimed += size
        return report

    def _orphans(self) -> List[Path]:
        known = {record.file_path.resolve() for record in self.list_packages()}
        return sorted(
            entry
            for entry in self.cache_dir.iterdir()
            if is_artifact(entry) and entry.resolve() not in known
        )

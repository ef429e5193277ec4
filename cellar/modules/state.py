# cellar/modules/state.py
"""
Installed-state store.

One JSON document per installed formula:
  <state_dir>/installed/<tap>/<name>.json
{
  "name": "science/qgis",
  "version": "2.4.0",
  "source_hash": "sha256:711b...",
  "options": ["with-postgresql", "without-grass"],
  "installed_at": "2025-09-19T12:34:56Z",
  "prefix": "/.../Cellar/qgis/2.4.0",
  "dependencies": ["science/gdal", ...],
  "build_only": false,
  "revision": null
}
Reads may run concurrently; writes are serialized (single writer).
"""

from __future__ import annotations
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from cellar.modules.config import config
from cellar.modules import logger as _logger


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class InstalledRecord:
    def __init__(self, name: str, version: str, source_hash: str, options: List[str],
                 installed_at: Optional[str] = None, prefix: Optional[str] = None,
                 dependencies: Optional[List[str]] = None, build_only: bool = False,
                 revision: Optional[str] = None):
        self.name = name
        self.version = version
        self.source_hash = source_hash
        self.options = sorted(options or [])
        self.installed_at = installed_at or now_iso()
        self.prefix = prefix
        self.dependencies = list(dependencies or [])
        self.build_only = build_only
        self.revision = revision

    def matches(self, source_hash: str, options: List[str]) -> bool:
        return self.source_hash == source_hash and self.options == sorted(options)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "source_hash": self.source_hash,
            "options": self.options,
            "installed_at": self.installed_at,
            "prefix": self.prefix,
            "dependencies": self.dependencies,
            "build_only": self.build_only,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstalledRecord":
        return cls(
            name=data["name"],
            version=data.get("version", ""),
            source_hash=data.get("source_hash", ""),
            options=data.get("options", []),
            installed_at=data.get("installed_at"),
            prefix=data.get("prefix"),
            dependencies=data.get("dependencies", []),
            build_only=bool(data.get("build_only", False)),
            revision=data.get("revision"),
        )

    def __repr__(self):
        return f"InstalledRecord({self.name!r}, {self.version!r}, {self.options})"


class ReadWriteLock:
    """Many readers or one writer. Writers wait for active readers to drain."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def reading(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def writing(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class InstalledStateStore:
    def __init__(self, state_dir: Optional[str] = None):
        self.state_dir = os.path.abspath(os.path.expanduser(
            state_dir or config.getpath("paths", "state_dir")))
        self.root = os.path.join(self.state_dir, "installed")
        os.makedirs(self.root, exist_ok=True)
        self._lock = ReadWriteLock()
        self.log = _logger.Logger("state")

    def _path(self, identity: str) -> str:
        tap, _, name = identity.rpartition("/")
        return os.path.join(self.root, tap or "core", f"{name}.json")

    def _read(self, path: str) -> Optional[InstalledRecord]:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return InstalledRecord.from_dict(json.load(fh))
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError) as e:
            self.log.error(f"Corrupt installed record {path}: {e}")
            return None

    # -------------------------
    # Contract: get / put / remove
    # -------------------------
    def get(self, identity: str) -> Optional[InstalledRecord]:
        with self._lock.reading():
            return self._read(self._path(identity))

    def put(self, record: InstalledRecord):
        path = self._path(record.name)
        with self._lock.writing():
            os.makedirs(os.path.dirname(path), exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path), suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(record.to_dict(), fh, indent=2)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.remove(tmp)
                raise
        self.log.info(f"Recorded install of {record.name} {record.version} {record.options}")

    def remove(self, identity: str) -> bool:
        path = self._path(identity)
        with self._lock.writing():
            if not os.path.exists(path):
                return False
            os.remove(path)
        self.log.info(f"Removed installed record for {identity}")
        return True

    # -------------------------
    # Queries
    # -------------------------
    def __iter__(self) -> Iterator[InstalledRecord]:
        return iter(self.all())

    def all(self) -> List[InstalledRecord]:
        records = []
        with self._lock.reading():
            for dirpath, _, files in os.walk(self.root):
                for fn in sorted(files):
                    if fn.endswith(".json"):
                        rec = self._read(os.path.join(dirpath, fn))
                        if rec:
                            records.append(rec)
        return sorted(records, key=lambda r: r.name)

    def dependents(self, identity: str) -> List[InstalledRecord]:
        return [r for r in self.all() if identity in r.dependencies]

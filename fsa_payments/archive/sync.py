from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .writer import PART_FILE_NAME

logger = logging.getLogger(__name__)

"""Upload-if-changed synchronization of the local archive.

Changed partitions are detected by SHA-256 of each leaf file against the
remote manifest (``_manifest.json``: relative key -> digest). Only changed or
new files are uploaded; the manifest is written last, so an interrupted sync
simply re-uploads on the next run. The store is a collaborator: anything with
``read_manifest`` / ``put_file`` / ``write_manifest``.
"""

__all__ = [
    "ObjectStore",
    "DirectoryStore",
    "SyncResult",
    "MANIFEST_NAME",
    "file_digest",
    "sync_archive",
]

MANIFEST_NAME = "_manifest.json"
_CHUNK = 1024 * 1024


class ObjectStore(Protocol):
    def read_manifest(self) -> dict[str, str]: ...

    def put_file(self, key: str, path: Path) -> None: ...

    def write_manifest(self, manifest: dict[str, str]) -> None: ...


@dataclass
class SyncResult:
    uploaded: list[str] = field(default_factory=list)
    unchanged: int = 0


class DirectoryStore:
    """Mirror the archive into a directory (e.g. a mounted bucket)."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def read_manifest(self) -> dict[str, str]:
        path = self.root / MANIFEST_NAME
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    def put_file(self, key: str, path: Path) -> None:
        target = self.root / key
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-", suffix=".tmp")
        os.close(fd)
        try:
            shutil.copyfile(path, tmp_name)
            os.replace(tmp_name, target)
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    def write_manifest(self, manifest: dict[str, str]) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        text = json.dumps(manifest, ensure_ascii=False, indent=2, sort_keys=True) + "\n"
        (self.root / MANIFEST_NAME).write_text(text, encoding="utf-8")


def file_digest(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def sync_archive(root: Path, store: ObjectStore) -> SyncResult:
    """Upload partitions whose content differs from the remote manifest."""
    remote = store.read_manifest()
    manifest = dict(remote)
    result = SyncResult()
    for path in sorted(root.rglob(PART_FILE_NAME)):
        key = path.relative_to(root).as_posix()
        digest = file_digest(path)
        if remote.get(key) == digest:
            result.unchanged += 1
            continue
        logger.debug("upload key=%s", key)
        store.put_file(key, path)
        manifest[key] = digest
        result.uploaded.append(key)
    if result.uploaded:
        store.write_manifest(manifest)
    logger.info("sync uploaded=%d unchanged=%d", len(result.uploaded), result.unchanged)
    return result

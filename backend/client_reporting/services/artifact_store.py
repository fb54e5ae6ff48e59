"""
Artifact storage for rendered reports and uploaded exports.

Keys are slash-separated, always rooted at a tenant-and-client prefix:

    reports/{agency_id}/{client_id}/{filename}
    ga4-csv/{agency_id}/{client_id}/{filename}

Bulk deletion only accepts a ClientScope. There is deliberately no way to
pass a bare agency prefix, so one call can never wipe a whole tenant.
"""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from client_reporting.core.config import settings

logger = logging.getLogger(__name__)

# Prefixes holding per-client blobs, removed together on cascade deletion
CLIENT_ARTIFACT_PREFIXES = ("reports", "ga4-csv")


class DeletionScope(str, Enum):
    """How much a client deletion removes."""

    METADATA_ONLY = "metadata_only"
    CASCADE = "cascade"


class ArtifactAccessError(Exception):
    """Key is not a legal artifact key (e.g. escapes the storage root)."""


def _check_segment(name: str, value: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    if "/" in value or "\\" in value or ".." in value:
        raise ValueError(f"{name} must not contain path characters")


@dataclass(frozen=True)
class ClientScope:
    """Composite (agency, client) key; the narrowest unit of bulk deletion."""

    agency_id: str
    client_id: str

    def __post_init__(self):
        _check_segment("agency_id", self.agency_id)
        _check_segment("client_id", self.client_id)

    def prefix(self, namespace: str) -> str:
        if namespace not in CLIENT_ARTIFACT_PREFIXES:
            raise ValueError(f"Unknown artifact namespace: {namespace}")
        return f"{namespace}/{self.agency_id}/{self.client_id}/"

    def prefixes(self) -> list[str]:
        return [self.prefix(namespace) for namespace in CLIENT_ARTIFACT_PREFIXES]


def report_key(agency_id: str, client_id: str, filename: str) -> str:
    return f"reports/{agency_id}/{client_id}/{filename}"


class ArtifactStore(ABC):
    """Blob storage keyed by slash-separated paths."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the blob, or None when it does not exist."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "application/pdf") -> None:
        ...

    @abstractmethod
    async def delete_client_artifacts(self, scope: ClientScope) -> int:
        """Delete every blob under the client's prefixes. Returns the count."""


class MemoryArtifactStore(ArtifactStore):
    """Dict-backed store for development and tests."""

    def __init__(self):
        self._blobs: dict[str, tuple[bytes, str]] = {}

    async def get(self, key: str) -> bytes | None:
        entry = self._blobs.get(key)
        return entry[0] if entry else None

    async def put(self, key: str, data: bytes, content_type: str = "application/pdf") -> None:
        self._blobs[key] = (data, content_type)

    async def delete_client_artifacts(self, scope: ClientScope) -> int:
        prefixes = tuple(scope.prefixes())
        doomed = [key for key in self._blobs if key.startswith(prefixes)]
        for key in doomed:
            del self._blobs[key]
        return len(doomed)

    def keys(self) -> list[str]:
        return sorted(self._blobs)


class LocalArtifactStore(ArtifactStore):
    """Filesystem store rooted at ARTIFACT_ROOT.

    Every key is resolved and checked to stay inside the root before any
    filesystem call.
    """

    def __init__(self, root: str | None = None):
        self._root = Path(root or settings.ARTIFACT_ROOT).resolve()

    def _resolve(self, key: str) -> Path:
        if not key or key.startswith("/") or "\\" in key:
            raise ArtifactAccessError(f"Illegal artifact key: {key!r}")
        resolved = (self._root / key).resolve()
        if resolved != self._root and self._root not in resolved.parents:
            raise ArtifactAccessError("Path traversal attempt detected")
        return resolved

    async def get(self, key: str) -> bytes | None:
        path = self._resolve(key)

        def _read() -> bytes | None:
            if not path.is_file():
                return None
            return path.read_bytes()

        return await asyncio.get_running_loop().run_in_executor(None, _read)

    async def put(self, key: str, data: bytes, content_type: str = "application/pdf") -> None:
        path = self._resolve(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(path)

        await asyncio.get_running_loop().run_in_executor(None, _write)

    async def delete_client_artifacts(self, scope: ClientScope) -> int:
        directories = [self._resolve(prefix.rstrip("/")) for prefix in scope.prefixes()]

        def _delete() -> int:
            removed = 0
            for directory in directories:
                if not directory.is_dir():
                    continue
                removed += sum(1 for p in directory.rglob("*") if p.is_file())
                shutil.rmtree(directory)
            return removed

        removed = await asyncio.get_running_loop().run_in_executor(None, _delete)
        logger.info(
            "Deleted client artifacts",
            extra={
                "event_type": "artifacts.client_deleted",
                "agency_id": scope.agency_id,
                "client_id": scope.client_id,
                "count": removed,
            },
        )
        return removed

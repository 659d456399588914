"""Namespaced key/value store for deployment state.

Every entry lives under a (network, deployment) namespace. The in-memory map
is authoritative for the running process; when a base directory is given,
missing keys are read through from disk and, if ``write_to_disk`` is set,
writes are mirrored there.

Usage:
    store = Store(base_dir="deployments", write_to_disk=True)
    ns = Namespace(network="mainnet", deployment="usdc")

    await store.write(ns, "aliases.json", {"comet": "0x..."})
    aliases = await store.read(ns, "aliases.json")
    if aliases is NOT_FOUND:
        ...

Keys ending in ``.json`` are stored on disk as JSON, anything else as text.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from chainwright.core.types import Namespace

logger = logging.getLogger(__name__)


class _NotFound:
    """Typed miss marker returned by :meth:`Store.read`. Always falsy."""

    _instance: "_NotFound | None" = None

    def __new__(cls) -> "_NotFound":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND = _NotFound()


def to_jsonable(value: Any) -> Any:
    """Convert pydantic models (possibly nested in containers) to plain data."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


class Store:
    """Last-write-wins key/value store scoped by :class:`Namespace`.

    Callers serialize writes to the same key; no conflict resolution is done.
    """

    def __init__(self, base_dir: str | Path | None = None, write_to_disk: bool = False) -> None:
        self.base_dir = Path(base_dir) if base_dir is not None else None
        self.write_to_disk = write_to_disk
        self._memory: dict[Namespace, dict[str, Any]] = {}
        self._deleted: dict[Namespace, set[str]] = {}

    # ── Core operations ──────────────────────────────────────────────────────

    async def read(self, namespace: Namespace, key: str) -> Any:
        """Return the stored value, or ``NOT_FOUND`` on a miss."""
        bucket = self._memory.get(namespace, {})
        if key in bucket:
            return copy.deepcopy(bucket[key])
        if key in self._deleted.get(namespace, set()):
            return NOT_FOUND

        path = self._path(namespace, key)
        if path is None:
            return NOT_FOUND
        value = await asyncio.to_thread(_read_file, path)
        if value is NOT_FOUND:
            return NOT_FOUND
        logger.debug("Loaded %s/%s from %s", namespace, key, path)
        self._memory.setdefault(namespace, {})[key] = value
        return copy.deepcopy(value)

    async def write(self, namespace: Namespace, key: str, value: Any) -> None:
        """Store ``value`` under ``key``; later writes win."""
        data = copy.deepcopy(to_jsonable(value))
        self._memory.setdefault(namespace, {})[key] = data
        self._deleted.get(namespace, set()).discard(key)
        if self.write_to_disk:
            path = self._path(namespace, key)
            if path is not None:
                await asyncio.to_thread(_write_file, path, key, data)

    async def delete(self, namespace: Namespace, key: str) -> None:
        self._memory.get(namespace, {}).pop(key, None)
        self._deleted.setdefault(namespace, set()).add(key)
        if self.write_to_disk:
            path = self._path(namespace, key)
            if path is not None:
                await asyncio.to_thread(path.unlink, True)

    async def keys(self, namespace: Namespace, prefix: str = "") -> list[str]:
        """List keys under ``prefix`` from memory and (if configured) disk."""
        found = {k for k in self._memory.get(namespace, {}) if k.startswith(prefix)}
        root = self._path(namespace, "")
        if root is not None:
            on_disk = await asyncio.to_thread(_list_files, root)
            found.update(k for k in on_disk if k.startswith(prefix))
        found -= self._deleted.get(namespace, set())
        return sorted(found)

    def scoped(self, namespace: Namespace) -> "ScopedStore":
        return ScopedStore(self, namespace)

    def fork(self) -> "Store":
        """Copy the in-memory state into a store that never writes to disk."""
        copy_ = Store(base_dir=self.base_dir, write_to_disk=False)
        copy_._memory = copy.deepcopy(self._memory)
        copy_._deleted = copy.deepcopy(self._deleted)
        return copy_

    def file_path(self, namespace: Namespace, key: str) -> str:
        """Human-facing location of a key, for log messages and CLI output."""
        path = self._path(namespace, key)
        return str(path) if path is not None else f"memory://{namespace}/{key}"

    def _path(self, namespace: Namespace, key: str) -> Path | None:
        if self.base_dir is None:
            return None
        root = self.base_dir / namespace.network
        if namespace.deployment:
            root = root / namespace.deployment
        return root / key if key else root


class ScopedStore:
    """A :class:`Store` view bound to one namespace."""

    def __init__(self, store: Store, namespace: Namespace) -> None:
        self.store = store
        self.namespace = namespace

    async def read(self, key: str) -> Any:
        return await self.store.read(self.namespace, key)

    async def write(self, key: str, value: Any) -> None:
        await self.store.write(self.namespace, key, value)

    async def delete(self, key: str) -> None:
        await self.store.delete(self.namespace, key)

    async def keys(self, prefix: str = "") -> list[str]:
        return await self.store.keys(self.namespace, prefix)

    def file_path(self, key: str) -> str:
        return self.store.file_path(self.namespace, key)


# ── Disk helpers ─────────────────────────────────────────────────────────────


def _read_file(path: Path) -> Any:
    if not path.is_file():
        return NOT_FOUND
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        return json.loads(text)
    return text


def _write_file(path: Path, key: str, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if key.endswith(".json"):
        path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
    else:
        path.write_text(str(data), encoding="utf-8")


def _list_files(root: Path) -> list[str]:
    if not root.is_dir():
        return []
    return [p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file()]

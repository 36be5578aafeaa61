"""
Capability handles: permission-scoped references to granted directories.

The core never fabricates access. It only uses handles the host granted and
re-confirms permission through ``request_permission`` before each scan.
"""

import asyncio
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Literal

import aiofiles
from loguru import logger


EntryKind = Literal["file", "directory"]
PermissionMode = Literal["read", "readwrite"]


@dataclass
class DirEntry:
    name: str
    kind: EntryKind
    ref: Any


@dataclass
class FileStat:
    mtime: float
    size: int


class CapabilityHandle(ABC):
    """Opaque handle to a directory tree granted by the host platform."""

    name: str

    @abstractmethod
    async def list_entries(self, ref: Any = None) -> List[DirEntry]:
        """List a directory; ``None`` means the root of the handle."""

    @abstractmethod
    async def read_file(self, ref: Any) -> bytes:
        ...

    @abstractmethod
    async def stat(self, ref: Any) -> FileStat:
        ...

    @abstractmethod
    async def request_permission(self, mode: PermissionMode = "read") -> bool:
        """Return True when access in ``mode`` is (still) granted."""


class LocalDirectoryHandle(CapabilityHandle):
    """Handle backed by a directory on the local file system."""

    def __init__(self, root: Path):
        self.root = Path(root).expanduser().resolve()
        self.name = self.root.name

    def __repr__(self) -> str:
        return f"LocalDirectoryHandle({str(self.root)!r})"

    def _resolve(self, ref: Optional[Path]) -> Path:
        return self.root if ref is None else Path(ref)

    @staticmethod
    def _scandir(path: Path) -> List[DirEntry]:
        entries = []
        with os.scandir(path) as it:
            for entry in it:
                try:
                    # Symlinked directories are not followed (cycles)
                    if entry.is_dir(follow_symlinks=False):
                        kind = "directory"
                    elif entry.is_file():
                        kind = "file"
                    else:
                        continue
                except OSError as e:
                    logger.debug(f"Skipping unreadable entry {entry.path}: {e}")
                    continue
                entries.append(DirEntry(name=entry.name, kind=kind, ref=Path(entry.path)))
        return entries

    async def list_entries(self, ref: Any = None) -> List[DirEntry]:
        return await asyncio.to_thread(self._scandir, self._resolve(ref))

    async def read_file(self, ref: Any) -> bytes:
        async with aiofiles.open(self._resolve(ref), 'rb') as f:
            return await f.read()

    async def stat(self, ref: Any) -> FileStat:
        st = await asyncio.to_thread(os.stat, self._resolve(ref))
        return FileStat(mtime=st.st_mtime, size=st.st_size)

    async def request_permission(self, mode: PermissionMode = "read") -> bool:
        flags = os.R_OK | os.X_OK
        if mode == "readwrite":
            flags |= os.W_OK
        return self.root.is_dir() and os.access(self.root, flags)


def local_handle_factory(display_path: str) -> LocalDirectoryHandle:
    """Re-acquire a handle for a persisted folder record."""
    return LocalDirectoryHandle(Path(display_path))

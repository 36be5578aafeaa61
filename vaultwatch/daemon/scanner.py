"""Recursive directory scanning with extension, size and exclusion filters."""

from dataclasses import dataclass
from typing import Any, FrozenSet, Iterable, Optional

from loguru import logger

from .capability import CapabilityHandle
from .config import FolderOptions, ScannerConfig
from .models import ScanEntry, ScanResult, extension_of


# Union of the exclusion lists used by the different monitor variants
EXCLUDED_DIRECTORIES = frozenset({
    "node_modules", ".git", ".svn", ".hg", ".vscode", ".idea",
    "dist", "build", "coverage", ".next", ".nuxt", ".output", "out",
    "target", ".cache", "vendor", "tmp", "temp", "logs",
    "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache", ".tox",
})

TEXT_FILE_EXTENSIONS = frozenset({
    "txt", "md", "markdown", "html", "htm", "json", "csv",
    "js", "ts", "jsx", "tsx", "css", "scss", "xml",
    "yaml", "yml", "toml", "ini", "env", "gitignore",
    "config", "log", "py", "rst",
})

IGNORED_BINARY_EXTENSIONS = frozenset({
    "png", "jpg", "jpeg", "gif", "bmp", "ico", "webp", "tiff",
    "mp3", "wav", "flac", "ogg", "mp4", "mov", "avi", "mkv", "webm",
    "zip", "gz", "tgz", "bz2", "xz", "7z", "rar", "tar",
    "exe", "dll", "so", "dylib", "bin", "o", "a", "class", "jar", "pyc",
    "woff", "woff2", "ttf", "otf", "eot",
    "sqlite", "db", "iso", "dmg",
})


@dataclass
class ScanFilter:
    text_files_only: bool = True
    max_file_size_bytes: int = 5 * 1024 * 1024
    skip_excluded_dirs: bool = True
    include_all_file_types: bool = False
    max_depth: Optional[int] = None

    @classmethod
    def from_options(cls, options: FolderOptions) -> "ScanFilter":
        return cls(
            text_files_only=options.text_files_only,
            max_file_size_bytes=options.max_file_size_bytes,
            skip_excluded_dirs=options.skip_excluded_dirs,
            include_all_file_types=options.include_all_file_types,
            max_depth=options.max_depth,
        )


class DirectoryScanner:
    """
    Lists every file under a capability handle that passes the filter.

    A subtree that cannot be listed is logged and reported in
    ``ScanResult.failed_paths``; the rest of the scan continues. Failure to
    list the root itself propagates to the caller.
    """

    def __init__(
        self,
        excluded_dirs: Optional[Iterable[str]] = None,
        text_extensions: Optional[Iterable[str]] = None,
        ignored_extensions: Optional[Iterable[str]] = None,
    ):
        self.excluded_dirs: FrozenSet[str] = frozenset(
            excluded_dirs if excluded_dirs is not None else EXCLUDED_DIRECTORIES
        )
        self.text_extensions: FrozenSet[str] = frozenset(
            e.lower().lstrip(".") for e in (text_extensions if text_extensions is not None else TEXT_FILE_EXTENSIONS)
        )
        self.ignored_extensions: FrozenSet[str] = frozenset(
            e.lower().lstrip(".") for e in (ignored_extensions if ignored_extensions is not None else IGNORED_BINARY_EXTENSIONS)
        )

    @classmethod
    def from_config(cls, config: ScannerConfig) -> "DirectoryScanner":
        return cls(
            excluded_dirs=config.excluded_dirs,
            text_extensions=config.text_extensions,
            ignored_extensions=config.ignored_extensions,
        )

    def is_text_extension(self, extension: str) -> bool:
        return extension.lower() in self.text_extensions

    def accepts_extension(self, filename: str, scan_filter: ScanFilter) -> bool:
        if scan_filter.include_all_file_types:
            return True
        ext = extension_of(filename)
        if not ext and filename.startswith("."):
            # dotfiles such as .gitignore or .env
            ext = filename.lstrip(".").lower()
        if ext in self.ignored_extensions:
            return False
        if scan_filter.text_files_only:
            return ext in self.text_extensions
        return True

    async def scan(
        self,
        handle: CapabilityHandle,
        base_path: str,
        scan_filter: Optional[ScanFilter] = None,
    ) -> ScanResult:
        """Walk the handle and return the flat list of accepted files."""
        scan_filter = scan_filter or ScanFilter()
        result = ScanResult()
        base_path = base_path.rstrip("/")

        # Root listing errors propagate so the scheduler can classify them
        root_entries = await handle.list_entries(None)
        await self._walk(handle, root_entries, base_path, 0, scan_filter, result)

        logger.debug(
            f"Scanned {base_path}: {len(result.entries)} files, "
            f"{len(result.failed_paths)} failed subtrees"
        )
        return result

    async def _walk(
        self,
        handle: CapabilityHandle,
        entries,
        path: str,
        depth: int,
        scan_filter: ScanFilter,
        result: ScanResult,
    ) -> None:
        for entry in entries:
            entry_path = f"{path}/{entry.name}"

            if entry.kind == "directory":
                if scan_filter.skip_excluded_dirs and entry.name in self.excluded_dirs:
                    continue
                if scan_filter.max_depth is not None and depth >= scan_filter.max_depth:
                    continue
                try:
                    children = await handle.list_entries(entry.ref)
                except OSError as e:
                    logger.warning(f"Skipping subtree {entry_path}: {e}")
                    result.failed_paths.append(entry_path)
                    continue
                await self._walk(handle, children, entry_path, depth + 1, scan_filter, result)

            elif entry.kind == "file":
                if not self.accepts_extension(entry.name, scan_filter):
                    continue
                scan_entry = await self._stat_entry(handle, entry.ref, entry_path, entry.name)
                if scan_entry is None:
                    continue
                if scan_entry.size > scan_filter.max_file_size_bytes:
                    logger.debug(f"Skipping {entry_path}: {scan_entry.size} bytes over limit")
                    continue
                result.entries.append(scan_entry)

    async def _stat_entry(self, handle: CapabilityHandle, ref: Any, path: str, name: str) -> Optional[ScanEntry]:
        try:
            st = await handle.stat(ref)
        except OSError as e:
            # Vanished between listing and stat
            logger.debug(f"Cannot stat {path}: {e}")
            return None
        return ScanEntry(path=path, name=name, ref=ref, mtime=st.mtime, size=st.size)

"""Change detection between consecutive scans of a folder."""

from typing import Dict, Iterable, Iterator, Optional, Sequence, Tuple

from .models import (
    ChangeSet, Delta, DeltaKind, IndexedItem, ScanEntry, SnapshotEntry
)


class ScanSnapshot:
    """
    Last known ``path -> (mtime, size)`` state of one folder.

    Held in memory between polls only; rebuilt from the index whenever a
    folder's scheduler starts.
    """

    def __init__(self, entries: Optional[Dict[str, SnapshotEntry]] = None):
        self._entries: Dict[str, SnapshotEntry] = dict(entries or {})

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def get(self, path: str) -> Optional[SnapshotEntry]:
        return self._entries.get(path)

    def items(self) -> Iterable[Tuple[str, SnapshotEntry]]:
        return self._entries.items()

    @classmethod
    def from_entries(cls, entries: Iterable[ScanEntry]) -> "ScanSnapshot":
        return cls({e.path: SnapshotEntry(e.mtime, e.size) for e in entries})

    @classmethod
    def from_items(cls, items: Iterable[IndexedItem]) -> "ScanSnapshot":
        return cls({
            item.filepath: SnapshotEntry(item.last_modified, item.size_bytes)
            for item in items
            if not item.is_deleted
        })

    def apply(self, applied: Sequence[Delta]) -> "ScanSnapshot":
        """Return a new snapshot with the given deltas folded in."""
        entries = dict(self._entries)
        for delta in applied:
            if delta.kind is DeltaKind.DELETED:
                entries.pop(delta.path, None)
            elif delta.entry is not None:
                entries[delta.path] = SnapshotEntry(delta.entry.mtime, delta.entry.size)
        return ScanSnapshot(entries)


def _under_any(path: str, prefixes: Sequence[str]) -> bool:
    for prefix in prefixes:
        if path == prefix or path.startswith(prefix + "/"):
            return True
    return False


class ChangeDetector:
    """Classifies scanned files as added, modified or deleted."""

    def detect(
        self,
        entries: Iterable[ScanEntry],
        snapshot: ScanSnapshot,
        failed_paths: Sequence[str] = (),
    ) -> ChangeSet:
        changes = ChangeSet()
        seen = set()

        for entry in entries:
            seen.add(entry.path)
            previous = snapshot.get(entry.path)
            if previous is None:
                changes.changed.append(Delta(DeltaKind.ADDED, entry.path, entry, None))
            elif previous.mtime != entry.mtime or previous.size != entry.size:
                changes.changed.append(Delta(DeltaKind.MODIFIED, entry.path, entry, previous))

        for path, previous in snapshot.items():
            if path in seen:
                continue
            # Unknown state inside a subtree that failed to list: keep it
            if failed_paths and _under_any(path, failed_paths):
                continue
            changes.deleted.append(Delta(DeltaKind.DELETED, path, None, previous))

        return changes

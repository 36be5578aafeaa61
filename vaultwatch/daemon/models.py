"""Data models for the vaultwatch daemon."""

import hashlib
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from pathlib import PurePosixPath
from typing import List, Dict, Any, Optional

from .config import FolderOptions


# Namespace for deterministic item ids (uuid5 over the display filepath)
ITEM_ID_NAMESPACE = uuid.UUID("6f1c3a52-8d0e-4c3b-9a57-2f4e1b7d9c10")


def item_id_for(filepath: str) -> str:
    """Derive a stable item id from its filepath."""
    return str(uuid.uuid5(ITEM_ID_NAMESPACE, filepath))


def content_hash_for(text: Optional[str]) -> Optional[str]:
    """Hash of extracted text; None when there is no text."""
    if text is None:
        return None
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def extension_of(filename: str) -> str:
    """Lower-case extension without the dot ('' when absent)."""
    return PurePosixPath(filename).suffix.lower().lstrip(".")


class DeltaKind(Enum):
    """Kinds of detected change between two scans."""
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class EmbeddingStatus(Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass
class MonitoredFolder:
    """A directory tree the user granted access to."""
    id: str
    display_path: str
    handle: Any = None
    is_active: bool = True
    options: FolderOptions = field(default_factory=FolderOptions)
    consecutive_errors: int = 0
    last_error: Optional[str] = None
    last_scan_time: Optional[datetime] = None

    @property
    def poll_interval_ms(self) -> int:
        return self.options.poll_interval_ms

    def to_record(self) -> Dict[str, Any]:
        """Persistable form; the capability handle is never stored."""
        return {
            "id": self.id,
            "display_path": self.display_path,
            "is_active": self.is_active,
            "options": self.options.model_dump(),
            "consecutive_errors": self.consecutive_errors,
            "last_error": self.last_error,
            "last_scan_time": self.last_scan_time.isoformat() if self.last_scan_time else None,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any], handle: Any = None) -> "MonitoredFolder":
        last_scan = record.get("last_scan_time")
        return cls(
            id=record["id"],
            display_path=record["display_path"],
            handle=handle,
            is_active=record.get("is_active", True),
            options=FolderOptions(**(record.get("options") or {})),
            consecutive_errors=record.get("consecutive_errors", 0),
            last_error=record.get("last_error"),
            last_scan_time=datetime.fromisoformat(last_scan) if last_scan else None,
        )


@dataclass
class IndexedItem:
    """
    File record kept in the index.

    Items are never physically removed: deletion sets ``is_deleted`` so the
    history survives for undo and audit.
    """
    id: str
    folder_id: str
    filename: str
    filepath: str
    file_extension: str
    last_modified: float
    size_bytes: int
    text_content: Optional[str] = None
    content_hash: Optional[str] = None
    embedding_vector: Optional[List[float]] = None
    embedding_status: Optional[str] = None
    embedding_error: Optional[str] = None
    is_deleted: bool = False
    revision: int = 0
    indexed_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding_vector)

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "IndexedItem":
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in record.items() if k in known})


@dataclass
class ScanEntry:
    """A file observed by a scan."""
    path: str
    name: str
    ref: Any
    mtime: float
    size: int


@dataclass
class ScanResult:
    """Flat scan output plus the subtrees that could not be listed."""
    entries: List[ScanEntry] = field(default_factory=list)
    failed_paths: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed_paths)


@dataclass(frozen=True)
class SnapshotEntry:
    mtime: float
    size: int


@dataclass
class Delta:
    """A detected change for one path."""
    kind: DeltaKind
    path: str
    entry: Optional[ScanEntry] = None
    previous: Optional[SnapshotEntry] = None


@dataclass
class ChangeSet:
    changed: List[Delta] = field(default_factory=list)
    deleted: List[Delta] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.changed and not self.deleted

    def __len__(self) -> int:
        return len(self.changed) + len(self.deleted)


@dataclass
class EmbeddingJob:
    """Transient unit of work for the embedding pipeline."""
    item_id: str
    text: str
    content_hash: str
    attempts: int = 0
    state: str = "queued"  # queued|in_flight|done|failed|superseded


@dataclass
class EmbeddingProgress:
    completed: int
    total: int
    failed: int = 0
    item_id: Optional[str] = None
    status: Optional[str] = None

    @property
    def percent(self) -> float:
        if self.total == 0:
            return 100.0
        return 100.0 * self.completed / self.total


@dataclass
class SimilarityResult:
    item_id: str
    score: float
    rank: int


@dataclass
class OrganizationTarget:
    """A destination folder/group that items can be filed into."""
    id: str
    name: str
    member_ids: List[str] = field(default_factory=list)


@dataclass
class OrganizationSuggestion:
    item_id: str
    target_id: str
    confidence: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MonitoringStats:
    """Aggregate counters, always derived from the index."""
    total_files: int = 0
    deleted_files: int = 0
    embedded_files: int = 0
    pending_embeddings: int = 0
    active_monitors: int = 0
    file_type_histogram: Dict[str, int] = field(default_factory=dict)
    last_scan_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_scan_time"] = self.last_scan_time.isoformat() if self.last_scan_time else None
        return data

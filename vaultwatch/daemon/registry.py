"""
Monitor registry: owner of monitored folders and of the scan-apply loop.

Every scan follows the same path: confirm permission, list the tree, diff
against the folder's snapshot, write the deltas to the index with per-item
compare-and-update, queue changed text for embedding, then publish item and
stats events. Nothing here blocks on embedding; vectors arrive later through
the pipeline.
"""

import asyncio
import time
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import psutil
import ulid
from loguru import logger

from .bus import (
    EventBus,
    ITEM_INDEXED,
    ITEM_UPDATED,
    ITEM_DELETED,
    STATS_UPDATED,
    SCAN_ERROR,
    FOLDER_ADDED,
    FOLDER_REMOVED,
    FOLDER_STATE,
)
from .capability import CapabilityHandle
from .changes import ChangeDetector, ScanSnapshot
from .config import Config, FolderOptions
from .embedding import EmbeddingPipeline, EmbeddingProvider
from .errors import (
    AccessDeniedError,
    ErrorEvent,
    FolderNotFoundError,
    classify_os_error,
)
from .extractor import ContentExtractor
from .models import (
    ChangeSet,
    Delta,
    DeltaKind,
    EmbeddingStatus,
    IndexedItem,
    MonitoredFolder,
    MonitoringStats,
    OrganizationSuggestion,
    OrganizationTarget,
    SimilarityResult,
    content_hash_for,
    extension_of,
    item_id_for,
)
from .scanner import DirectoryScanner, ScanFilter
from .scheduler import PollingScheduler
from .similarity import find_similar_items, suggest_organization
from .store import RecordExistsError, RecordStore


HandleFactory = Callable[[str], Optional[CapabilityHandle]]


def _now() -> str:
    return datetime.utcnow().isoformat()


class MonitorRegistry:
    """Registry of monitored folders; one polling scheduler per active folder."""

    # Attempts at a per-item conditional write before giving up on a delta
    CAS_RETRIES = 3

    def __init__(
        self,
        item_store: RecordStore,
        folder_store: RecordStore,
        provider: Optional[EmbeddingProvider],
        bus: Optional[EventBus] = None,
        config: Optional[Config] = None,
        handle_factory: Optional[HandleFactory] = None,
    ):
        self.config = config or Config()
        self.item_store = item_store
        self.folder_store = folder_store
        self.bus = bus
        self.handle_factory = handle_factory

        self.scanner = DirectoryScanner.from_config(self.config.scanner)
        self.extractor = ContentExtractor(self.scanner.text_extensions)
        self.detector = ChangeDetector()
        self.pipeline: Optional[EmbeddingPipeline] = None
        if provider is not None:
            self.pipeline = EmbeddingPipeline.from_config(
                item_store, provider, self.config.embedding, bus=bus
            )

        self.folders: Dict[str, MonitoredFolder] = {}
        self._schedulers: Dict[str, PollingScheduler] = {}
        self._snapshots: Dict[str, ScanSnapshot] = {}
        self._scan_locks: Dict[str, asyncio.Lock] = {}
        self._last_stats: Optional[MonitoringStats] = None
        self.start_time = datetime.utcnow()

    # Lifecycle

    async def start(self) -> None:
        if self.pipeline is not None:
            await self.pipeline.start()
        logger.info("Monitor registry started")

    async def close(self) -> None:
        """Stop every scheduler and the pipeline, keeping persisted activity flags."""
        for folder_id, scheduler in list(self._schedulers.items()):
            was_active = scheduler.folder.is_active
            scheduler.stop()
            scheduler.folder.is_active = was_active
            await scheduler.wait_idle()
        self._schedulers.clear()

        if self.pipeline is not None:
            await self.pipeline.stop()
        await self.item_store.flush()
        await self.folder_store.flush()
        logger.info("Monitor registry closed")

    async def restore(self) -> List[MonitoredFolder]:
        """Reload persisted folders, resume active ones and requeue pending embeddings."""
        records = await self.folder_store.get_all()
        for record in records:
            handle = self.handle_factory(record["display_path"]) if self.handle_factory else None
            folder = MonitoredFolder.from_record(record, handle)
            self.folders[folder.id] = folder

            if not folder.is_active:
                continue
            if handle is None or not await self._has_permission(handle):
                logger.warning(f"Permission lost for {folder.display_path}, leaving it inactive")
                folder.is_active = False
                await self._persist_folder(folder)
                self._publish_folder_state(folder)
                continue
            await self.start_monitoring(folder.id)

        requeued = 0
        if self.pipeline is not None:
            for record in await self.item_store.query_by_index(
                "embedding_status", EmbeddingStatus.PENDING.value
            ):
                item = IndexedItem.from_record(record)
                if item.is_deleted or not (item.text_content or "").strip():
                    continue
                self.pipeline.enqueue(item.id, item.text_content, item.content_hash)
                requeued += 1

        logger.info(f"Restored {len(records)} folders, requeued {requeued} embeddings")
        return list(self.folders.values())

    # Folder management

    async def add_folder(
        self,
        handle: CapabilityHandle,
        display_path: str,
        options: Optional[FolderOptions] = None,
        is_active: bool = True,
    ) -> MonitoredFolder:
        """Register a granted directory; an already known path returns its folder."""
        display_path = display_path.rstrip("/") or "/"
        for folder in self.folders.values():
            if folder.display_path == display_path:
                logger.info(f"Folder {display_path} already monitored as {folder.id}")
                folder.handle = handle
                return folder

        if not await self._has_permission(handle):
            raise AccessDeniedError(f"Read access to {display_path} was not granted")

        folder = MonitoredFolder(
            id=str(ulid.ULID()),
            display_path=display_path,
            handle=handle,
            is_active=False,
            options=(options or self.config.defaults).model_copy(deep=True),
        )
        self.folders[folder.id] = folder
        await self._persist_folder(folder)
        self._publish(FOLDER_ADDED, folder_id=folder.id, display_path=display_path)
        logger.info(f"Added folder {display_path} ({folder.id})")

        if is_active:
            await self.start_monitoring(folder.id)
        return folder

    async def remove_folder(self, folder_id: str) -> None:
        """Forget a folder and mark all of its items deleted."""
        folder = self._require(folder_id)
        scheduler = self._schedulers.pop(folder_id, None)
        if scheduler is not None:
            scheduler.stop()
        del self.folders[folder_id]
        await self.folder_store.delete(folder_id)

        # an in-flight scan stops writing once it sees the folder gone
        removed = 0
        async with self._scan_locks.setdefault(folder_id, asyncio.Lock()):
            self._snapshots.pop(folder_id, None)
            for record in await self.item_store.query_by_index("folder_id", folder_id):
                if record.get("is_deleted"):
                    continue
                item = await self._mark_deleted(record["id"])
                if item is not None:
                    removed += 1
        self._scan_locks.pop(folder_id, None)

        await self.item_store.flush()
        await self.folder_store.flush()
        self._publish(FOLDER_REMOVED, folder_id=folder_id, display_path=folder.display_path)
        logger.info(f"Removed folder {folder.display_path}, {removed} items marked deleted")
        await self._publish_stats(force=True)

    async def start_monitoring(self, folder_id: str) -> None:
        folder = self._require(folder_id)
        scheduler = self._schedulers.get(folder_id)
        if scheduler is not None and scheduler.running:
            return
        if folder.handle is None:
            raise AccessDeniedError(f"No capability handle for {folder.display_path}")

        self._snapshots[folder_id] = await self._snapshot_from_index(folder_id)
        scheduler = PollingScheduler(
            folder,
            self._scheduled_scan,
            on_error=self._on_scan_error,
            on_success=self._on_scan_success,
            backoff=self.config.backoff,
        )
        self._schedulers[folder_id] = scheduler
        scheduler.start()
        await self._persist_folder(folder)
        self._publish_folder_state(folder)

    async def stop_monitoring(self, folder_id: str) -> None:
        folder = self._require(folder_id)
        scheduler = self._schedulers.pop(folder_id, None)
        if scheduler is not None:
            scheduler.stop()
        folder.is_active = False
        await self._persist_folder(folder)
        self._publish_folder_state(folder)

    async def update_folder_options(self, folder_id: str, **changes: Any) -> MonitoredFolder:
        """Replace options; an active folder is stopped and restarted with them."""
        folder = self._require(folder_id)
        was_active = folder.is_active
        if was_active:
            await self.stop_monitoring(folder_id)

        folder.options = FolderOptions(**{**folder.options.model_dump(), **changes})
        await self._persist_folder(folder)
        logger.info(f"Updated options of {folder.display_path}: {changes}")

        if was_active:
            await self.start_monitoring(folder_id)
        return folder

    # Scanning

    async def scan_folder(self, folder_id: str) -> ChangeSet:
        """Scan now, regardless of schedule; also allowed on inactive folders."""
        folder = self._require(folder_id)
        try:
            changes = await self._scan(folder, scheduled=False)
        except Exception as e:
            folder.consecutive_errors += 1
            folder.last_error = str(e)
            await self._on_scan_error(folder, e)
            raise
        folder.consecutive_errors = 0
        folder.last_error = None
        folder.last_scan_time = datetime.utcnow()
        await self._persist_folder(folder)
        return changes

    async def _scheduled_scan(self, folder: MonitoredFolder) -> ChangeSet:
        return await self._scan(folder, scheduled=True)

    async def _scan(self, folder: MonitoredFolder, scheduled: bool) -> ChangeSet:
        lock = self._scan_locks.setdefault(folder.id, asyncio.Lock())
        async with lock:
            handle = folder.handle
            if handle is None:
                raise AccessDeniedError(f"No capability handle for {folder.display_path}")
            if not await self._has_permission(handle):
                raise AccessDeniedError(f"Read access to {folder.display_path} was revoked")

            try:
                result = await self.scanner.scan(
                    handle, folder.display_path, ScanFilter.from_options(folder.options)
                )
            except OSError as e:
                raise classify_os_error(e) from e

            if not self._is_current(folder) or (scheduled and not folder.is_active):
                logger.debug(f"Discarding scan of {folder.display_path}: folder stopped or removed")
                return ChangeSet()

            snapshot = self._snapshots.get(folder.id)
            if snapshot is None:
                snapshot = await self._snapshot_from_index(folder.id)

            changes = self.detector.detect(result.entries, snapshot, result.failed_paths)
            deferred = self._defer_unsettled(folder, changes)

            applied: List[Delta] = []
            for delta in changes.changed + changes.deleted:
                if not self._is_current(folder):
                    logger.debug(f"Folder {folder.display_path} removed mid-scan, discarding the rest")
                    return ChangeSet()
                if delta.kind is DeltaKind.DELETED:
                    await self._mark_deleted(item_id_for(delta.path))
                    applied.append(delta)
                elif await self._apply_change(folder, delta):
                    applied.append(delta)

            if not self._is_current(folder):
                return ChangeSet()
            self._snapshots[folder.id] = snapshot.apply(applied)

            if applied:
                await self.item_store.flush()
                logger.info(
                    f"Scan of {folder.display_path}: {len(changes.changed)} changed, "
                    f"{len(changes.deleted)} deleted, {deferred} deferred"
                )
            await self._publish_stats(force=bool(applied))
            return changes

    def _defer_unsettled(self, folder: MonitoredFolder, changes: ChangeSet) -> int:
        """Drop files written less than ``settle_ms`` ago; the next scan sees them again."""
        settle_s = folder.options.settle_ms / 1000.0
        if settle_s <= 0:
            return 0
        cutoff = time.time() - settle_s
        settled = [d for d in changes.changed if d.entry.mtime <= cutoff]
        deferred = len(changes.changed) - len(settled)
        changes.changed = settled
        return deferred

    async def _apply_change(self, folder: MonitoredFolder, delta: Delta) -> bool:
        """Write one added or modified file to the index."""
        entry = delta.entry
        item_id = item_id_for(entry.path)
        extension = extension_of(entry.name)

        text: Optional[str] = None
        if self.extractor.supports(extension):
            try:
                data = await folder.handle.read_file(entry.ref)
            except OSError as e:
                # Not applied, so the next scan retries it
                logger.warning(f"Cannot read {entry.path}: {e}")
                return False
            text = self.extractor.extract_text(data, extension)
        content_hash = content_hash_for(text)
        embeddable = bool(text and text.strip())
        pending = EmbeddingStatus.PENDING.value if embeddable else None

        for _ in range(self.CAS_RETRIES):
            now = _now()
            current = await self.item_store.get(item_id)

            if current is None:
                item = IndexedItem(
                    id=item_id,
                    folder_id=folder.id,
                    filename=entry.name,
                    filepath=entry.path,
                    file_extension=extension,
                    last_modified=entry.mtime,
                    size_bytes=entry.size,
                    text_content=text,
                    content_hash=content_hash,
                    embedding_status=pending,
                    revision=1,
                    indexed_at=now,
                    updated_at=now,
                )
                try:
                    await self.item_store.add(item.to_record())
                except RecordExistsError:
                    continue
                self._publish(ITEM_INDEXED, item=item, change="added")
                self._queue_embedding(item, embeddable)
                return True

            revision = current.get("revision", 0)
            revived = bool(current.get("is_deleted"))
            content_changed = current.get("content_hash") != content_hash
            update: Dict[str, Any] = {
                "folder_id": folder.id,
                "filename": entry.name,
                "filepath": entry.path,
                "file_extension": extension,
                "last_modified": entry.mtime,
                "size_bytes": entry.size,
                "is_deleted": False,
                "revision": revision + 1,
                "updated_at": now,
            }
            requeue = content_changed or (
                embeddable and current.get("embedding_status") == EmbeddingStatus.FAILED.value
            )
            if content_changed:
                # Text and vector change in one write; no stale vector is ever visible
                update.update(
                    text_content=text,
                    content_hash=content_hash,
                    embedding_vector=None,
                    embedding_error=None,
                )
            if requeue:
                update["embedding_status"] = pending
                update["embedding_error"] = None

            if not await self.item_store.compare_and_update(item_id, {"revision": revision}, update):
                continue

            item = IndexedItem.from_record({**current, **update})
            if revived:
                self._publish(ITEM_INDEXED, item=item, change="added")
            else:
                self._publish(ITEM_UPDATED, item=item, change="modified")
            if requeue:
                self._queue_embedding(item, embeddable)
            return True

        logger.warning(f"Gave up writing {entry.path} after {self.CAS_RETRIES} conflicting updates")
        return False

    async def _mark_deleted(self, item_id: str) -> Optional[IndexedItem]:
        for _ in range(self.CAS_RETRIES):
            current = await self.item_store.get(item_id)
            if current is None or current.get("is_deleted"):
                return None
            revision = current.get("revision", 0)
            update = {"is_deleted": True, "revision": revision + 1, "updated_at": _now()}
            if await self.item_store.compare_and_update(item_id, {"revision": revision}, update):
                item = IndexedItem.from_record({**current, **update})
                self._publish(ITEM_DELETED, item_id=item_id, item=item)
                return item
        logger.warning(f"Gave up marking {item_id} deleted after {self.CAS_RETRIES} conflicting updates")
        return None

    def _queue_embedding(self, item: IndexedItem, embeddable: bool) -> None:
        if self.pipeline is None or not embeddable:
            return
        self.pipeline.enqueue(item.id, item.text_content, item.content_hash)

    async def _on_scan_error(self, folder: MonitoredFolder, error: BaseException) -> None:
        event = ErrorEvent.from_exception(
            folder.id, error, folder.consecutive_errors, display_path=folder.display_path
        )
        self._publish(SCAN_ERROR, folder_id=folder.id, error=event)
        if isinstance(error, AccessDeniedError):
            scheduler = self._schedulers.pop(folder.id, None)
            if scheduler is not None and scheduler.running:
                scheduler.stop()
            folder.is_active = False
            self._publish_folder_state(folder)
        await self._persist_folder(folder)

    async def _on_scan_success(self, folder: MonitoredFolder) -> None:
        await self._persist_folder(folder)

    # Queries

    def get_folders(self) -> List[MonitoredFolder]:
        return list(self.folders.values())

    def get_folder(self, folder_id: str) -> Optional[MonitoredFolder]:
        return self.folders.get(folder_id)

    def scheduler_for(self, folder_id: str) -> Optional[PollingScheduler]:
        return self._schedulers.get(folder_id)

    async def get_item(self, item_id: str) -> Optional[IndexedItem]:
        record = await self.item_store.get(item_id)
        return IndexedItem.from_record(record) if record is not None else None

    async def get_items(self, include_deleted: bool = False) -> List[IndexedItem]:
        items = [IndexedItem.from_record(r) for r in await self.item_store.get_all()]
        if include_deleted:
            return items
        return [item for item in items if not item.is_deleted]

    async def find_similar_items(
        self,
        item_id: str,
        threshold: float = 0.3,
        max_results: Optional[int] = None,
    ) -> List[SimilarityResult]:
        items = await self.get_items()
        return find_similar_items(
            item_id,
            items,
            threshold=threshold,
            max_results=max_results if max_results is not None else self.config.organization.max_results,
        )

    async def suggest_organization(
        self,
        targets: Sequence[OrganizationTarget],
        assignments: Optional[Mapping[str, str]] = None,
        threshold: Optional[float] = None,
    ) -> List[OrganizationSuggestion]:
        org = self.config.organization
        items = await self.get_items()
        return suggest_organization(
            items,
            targets,
            assignments,
            threshold=threshold if threshold is not None else org.similarity_threshold,
            use_centroids=org.use_centroids,
        )

    async def get_stats(self) -> MonitoringStats:
        """Aggregate counters, recomputed from the index on every call."""
        stats = MonitoringStats()
        histogram: Counter = Counter()
        for record in await self.item_store.get_all():
            if record.get("is_deleted"):
                stats.deleted_files += 1
                continue
            stats.total_files += 1
            histogram[record.get("file_extension") or ""] += 1
            if record.get("embedding_vector"):
                stats.embedded_files += 1
            elif record.get("embedding_status") == EmbeddingStatus.PENDING.value:
                stats.pending_embeddings += 1

        stats.file_type_histogram = dict(histogram)
        stats.active_monitors = sum(1 for f in self.folders.values() if f.is_active)
        scan_times = [f.last_scan_time for f in self.folders.values() if f.last_scan_time]
        stats.last_scan_time = max(scan_times) if scan_times else None
        return stats

    async def get_status(self) -> Dict[str, Any]:
        """Registry, pipeline and process status."""
        process = psutil.Process()
        uptime = (datetime.utcnow() - self.start_time).total_seconds()
        stats = await self.get_stats()

        folders = []
        for folder in self.folders.values():
            scheduler = self._schedulers.get(folder.id)
            folders.append({
                "id": folder.id,
                "display_path": folder.display_path,
                "is_active": folder.is_active,
                "state": scheduler.state.value if scheduler else "stopped",
                "interval_ms": scheduler.current_interval_ms if scheduler else folder.poll_interval_ms,
                "consecutive_errors": folder.consecutive_errors,
                "last_error": folder.last_error,
            })

        embedding = None
        if self.pipeline is not None:
            progress = self.pipeline.progress
            embedding = {
                "completed": progress.completed,
                "total": progress.total,
                "failed": progress.failed,
                "percent": progress.percent,
            }

        return {
            "uptime": f"{uptime:.0f}s",
            "folders": folders,
            "stats": stats.to_dict(),
            "embedding": embedding,
            "process": {
                "memory_mb": process.memory_info().rss / 1024 / 1024,
                "cpu_percent": process.cpu_percent(),
            },
        }

    # Helpers

    def _require(self, folder_id: str) -> MonitoredFolder:
        folder = self.folders.get(folder_id)
        if folder is None:
            raise FolderNotFoundError(folder_id)
        return folder

    def _is_current(self, folder: MonitoredFolder) -> bool:
        return self.folders.get(folder.id) is folder

    async def _has_permission(self, handle: CapabilityHandle) -> bool:
        try:
            return await handle.request_permission("read")
        except OSError as e:
            logger.warning(f"Permission check failed: {e}")
            return False

    async def _snapshot_from_index(self, folder_id: str) -> ScanSnapshot:
        records = await self.item_store.query_by_index("folder_id", folder_id)
        return ScanSnapshot.from_items(IndexedItem.from_record(r) for r in records)

    async def _persist_folder(self, folder: MonitoredFolder) -> None:
        if not self._is_current(folder):
            return
        record = folder.to_record()
        if await self.folder_store.get(folder.id) is None:
            await self.folder_store.add(record)
        else:
            await self.folder_store.update(folder.id, record)
        await self.folder_store.flush()

    async def _publish_stats(self, force: bool = False) -> None:
        stats = await self.get_stats()
        if force or stats != self._last_stats:
            self._last_stats = stats
            self._publish(STATS_UPDATED, stats=stats)

    def _publish_folder_state(self, folder: MonitoredFolder) -> None:
        scheduler = self._schedulers.get(folder.id)
        self._publish(
            FOLDER_STATE,
            folder_id=folder.id,
            is_active=folder.is_active,
            state=scheduler.state.value if scheduler else "stopped",
        )

    def _publish(self, event_type: str, **data: Any) -> None:
        if self.bus is not None:
            self.bus.publish(event_type, source="registry", **data)

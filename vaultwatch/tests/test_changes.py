"""Tests for change detection."""

from vaultwatch.daemon.changes import ChangeDetector, ScanSnapshot
from vaultwatch.daemon.models import DeltaKind, IndexedItem, ScanEntry


def entry(path, mtime=1.0, size=10):
    return ScanEntry(path=path, name=path.rsplit("/", 1)[-1], ref=path, mtime=mtime, size=size)


class TestChangeDetector:

    def test_first_scan_everything_added(self):
        entries = [entry("/v/a.md"), entry("/v/b.txt")]
        changes = ChangeDetector().detect(entries, ScanSnapshot())

        assert [d.kind for d in changes.changed] == [DeltaKind.ADDED, DeltaKind.ADDED]
        assert changes.deleted == []

    def test_unchanged_scan_is_empty(self):
        entries = [entry("/v/a.md"), entry("/v/b.txt")]
        snapshot = ScanSnapshot.from_entries(entries)

        changes = ChangeDetector().detect(entries, snapshot)
        assert changes.is_empty
        assert len(changes) == 0

    def test_modified_by_mtime_or_size(self):
        snapshot = ScanSnapshot.from_entries([entry("/v/a.md"), entry("/v/b.txt")])
        entries = [entry("/v/a.md", mtime=2.0), entry("/v/b.txt", size=11)]

        changes = ChangeDetector().detect(entries, snapshot)
        assert [d.kind for d in changes.changed] == [DeltaKind.MODIFIED, DeltaKind.MODIFIED]
        assert changes.changed[0].previous.mtime == 1.0

    def test_missing_paths_deleted(self):
        snapshot = ScanSnapshot.from_entries([entry("/v/a.md"), entry("/v/b.txt")])

        changes = ChangeDetector().detect([entry("/v/a.md")], snapshot)
        assert changes.changed == []
        assert [(d.kind, d.path) for d in changes.deleted] == [(DeltaKind.DELETED, "/v/b.txt")]

    def test_failed_subtree_suppresses_deletes(self):
        snapshot = ScanSnapshot.from_entries([
            entry("/v/a.md"), entry("/v/locked/x.md"), entry("/v/locked2.md"),
        ])

        changes = ChangeDetector().detect([entry("/v/a.md")], snapshot, failed_paths=["/v/locked"])
        assert [d.path for d in changes.deleted] == ["/v/locked2.md"]

    def test_apply_produces_next_snapshot(self):
        detector = ChangeDetector()
        snapshot = ScanSnapshot.from_entries([entry("/v/a.md"), entry("/v/b.txt")])
        entries = [entry("/v/a.md", mtime=2.0), entry("/v/c.md")]

        changes = detector.detect(entries, snapshot)
        next_snapshot = snapshot.apply(changes.changed + changes.deleted)

        assert sorted(next_snapshot) == ["/v/a.md", "/v/c.md"]
        assert next_snapshot.get("/v/a.md").mtime == 2.0
        assert detector.detect(entries, next_snapshot).is_empty
        # the source snapshot is untouched
        assert "/v/b.txt" in snapshot

    def test_snapshot_from_items_skips_deleted(self):
        items = [
            IndexedItem(id="1", folder_id="f", filename="a.md", filepath="/v/a.md",
                        file_extension="md", last_modified=1.0, size_bytes=3),
            IndexedItem(id="2", folder_id="f", filename="b.md", filepath="/v/b.md",
                        file_extension="md", last_modified=1.0, size_bytes=3, is_deleted=True),
        ]
        snapshot = ScanSnapshot.from_items(items)

        assert list(snapshot) == ["/v/a.md"]
        assert snapshot.get("/v/a.md").size == 3

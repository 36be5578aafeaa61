"""Tests for configuration, models and error helpers."""

import tempfile
from pathlib import Path

import pytest
from pydantic import ValidationError

from vaultwatch.daemon.config import Config, EmbeddingConfig, FolderOptions
from vaultwatch.daemon.errors import (
    AccessDeniedError,
    ErrorEvent,
    ErrorSeverity,
    RetryPolicy,
    TransientScanFailure,
    classify_os_error,
)
from vaultwatch.daemon.models import MonitoredFolder, IndexedItem, item_id_for


class TestConfig:

    def test_defaults(self):
        config = Config()
        assert config.defaults.poll_interval_ms == 30000
        assert config.defaults.max_file_size_bytes == 5 * 1024 * 1024
        assert config.backoff.max_interval_ms == 300000
        assert config.organization.similarity_threshold == 0.70
        assert config.index_path.name == "index.json"

    def test_save_and_load_roundtrip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "config.yaml"
            config = Config(
                data_dir=Path(tmpdir) / "data",
                folders=[{"path": tmpdir, "options": {"poll_interval_ms": 5000}}],
                embedding={"provider": "sentence-transformers", "model": "all-MiniLM-L6-v2"},
            )
            config.save(path)

            loaded = Config.load(path)
            assert loaded.data_dir == Path(tmpdir) / "data"
            assert loaded.folders[0].options.poll_interval_ms == 5000
            assert loaded.embedding.provider == "sentence-transformers"

    def test_load_missing_raises(self):
        with pytest.raises(FileNotFoundError):
            Config.load(Path("/nonexistent/vaultwatch.yaml"))

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            FolderOptions(poll_interval_ms=0)
        with pytest.raises(ValidationError):
            FolderOptions(max_depth=-1)
        with pytest.raises(ValidationError):
            EmbeddingConfig(provider="openai")
        with pytest.raises(ValidationError):
            EmbeddingConfig(batch_size=0)


class TestModels:

    def test_item_id_is_deterministic(self):
        assert item_id_for("/v/a.md") == item_id_for("/v/a.md")
        assert item_id_for("/v/a.md") != item_id_for("/v/b.md")

    def test_folder_record_roundtrip_omits_handle(self):
        folder = MonitoredFolder(id="f1", display_path="/v", handle=object(),
                                 options=FolderOptions(poll_interval_ms=1000))
        record = folder.to_record()
        assert "handle" not in record

        restored = MonitoredFolder.from_record(record, handle="h")
        assert restored.handle == "h"
        assert restored.options.poll_interval_ms == 1000

    def test_item_from_record_ignores_unknown_fields(self):
        record = IndexedItem(id="1", folder_id="f", filename="a.md", filepath="/v/a.md",
                             file_extension="md", last_modified=1.0, size_bytes=2).to_record()
        record["legacy"] = True
        assert IndexedItem.from_record(record).filepath == "/v/a.md"


class TestErrors:

    def test_classify_os_error(self):
        assert isinstance(classify_os_error(PermissionError("no")), AccessDeniedError)
        assert isinstance(classify_os_error(FileNotFoundError("gone")), TransientScanFailure)
        original = TransientScanFailure("x")
        assert classify_os_error(original) is original

    def test_error_event_severity(self):
        assert ErrorEvent.from_exception("f", AccessDeniedError("x")).severity is ErrorSeverity.HIGH
        assert ErrorEvent.from_exception("f", TransientScanFailure("x"), 1).severity is ErrorSeverity.MEDIUM
        assert ErrorEvent.from_exception("f", TransientScanFailure("x"), 4).severity is ErrorSeverity.HIGH

        data = ErrorEvent.from_exception("f", TransientScanFailure("disk"), path="/v").to_dict()
        assert data["error_type"] == "TransientScanFailure"
        assert data["context"] == {"path": "/v"}

    def test_retry_policy(self):
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=3.0, jitter=False)
        assert [policy.calculate_delay(a) for a in (1, 2, 3)] == [1.0, 2.0, 3.0]
        assert policy.should_retry(2)
        assert not policy.should_retry(3)
        assert RetryPolicy(base_delay=0).calculate_delay(5) == 0.0

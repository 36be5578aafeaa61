"""Configuration management for vaultwatch."""

from pathlib import Path
from typing import Optional, List
import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator


DEFAULT_POLL_INTERVAL_MS = 30000
MAX_POLL_INTERVAL_MS = 300000


class FolderOptions(BaseModel):
    """Per-folder scan settings."""
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    max_file_size_bytes: int = 5 * 1024 * 1024
    text_files_only: bool = True
    skip_excluded_dirs: bool = True
    include_all_file_types: bool = False
    max_depth: Optional[int] = None
    settle_ms: int = 0

    @field_validator('poll_interval_ms')
    @classmethod
    def validate_interval(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("poll_interval_ms must be positive")
        return v

    @field_validator('max_depth')
    @classmethod
    def validate_depth(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("max_depth must be >= 0")
        return v


class BackoffConfig(BaseModel):
    error_threshold: int = 3
    multiplier: float = 1.5
    max_interval_ms: int = MAX_POLL_INTERVAL_MS


class ScannerConfig(BaseModel):
    excluded_dirs: Optional[List[str]] = None
    text_extensions: Optional[List[str]] = None
    ignored_extensions: Optional[List[str]] = None


class EmbeddingConfig(BaseModel):
    provider: str = "ollama"  # ollama|sentence-transformers
    model: str = "nomic-embed-text"
    base_url: str = "http://localhost:11434"
    timeout_s: float = 120.0
    batch_size: int = 16
    max_attempts: int = 3
    retry_base_delay_s: float = 0.5
    chunk_chars: int = 512
    chunk_overlap: int = 50

    @field_validator('batch_size', 'max_attempts')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator('provider')
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v not in ("ollama", "sentence-transformers"):
            raise ValueError(f"unknown embedding provider: {v}")
        return v


class OrganizationConfig(BaseModel):
    similarity_threshold: float = 0.70
    max_results: int = 5
    use_centroids: bool = True

    @field_validator('similarity_threshold')
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not -1 <= v <= 1:
            raise ValueError("similarity_threshold must be between -1 and 1")
        return v


class WatchedFolderConfig(BaseModel):
    path: Path
    options: FolderOptions = Field(default_factory=FolderOptions)

    @field_validator('path')
    @classmethod
    def expand_path(cls, v: Path) -> Path:
        return Path(v).expanduser().resolve()


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[Path] = None


class Config(BaseModel):
    """Main configuration for the vaultwatch daemon."""

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".local" / "share" / "vaultwatch")
    folders: List[WatchedFolderConfig] = Field(default_factory=list)
    defaults: FolderOptions = Field(default_factory=FolderOptions)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    organization: OrganizationConfig = Field(default_factory=OrganizationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('data_dir')
    @classmethod
    def validate_data_dir(cls, v: Path) -> Path:
        return Path(v).expanduser()

    @property
    def index_path(self) -> Path:
        return self.data_dir / "index.json"

    @property
    def folders_path(self) -> Path:
        return self.data_dir / "folders.json"

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file."""
        if config_path is None:
            candidates = [
                Path("vaultwatch.yaml"),
                Path.home() / ".config" / "vaultwatch" / "config.yaml",
                Path("/etc/vaultwatch/config.yaml"),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                raise FileNotFoundError(
                    f"No config file found. Searched: {[str(c) for c in candidates]}"
                )

        logger.info(f"Loading config from: {config_path}")
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False)

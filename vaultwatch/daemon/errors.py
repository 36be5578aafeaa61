"""Error taxonomy and retry helpers.

Every failure in the indexing core is scoped to a folder or an item:
- AccessDeniedError: permission revoked; the folder is deactivated, never retried
- TransientScanFailure: I/O error during one scan; retried with backoff
- ExtractionFailure: unreadable content; item kept with empty text
- EmbeddingFailure: provider error; retried per job up to a cap
"""

import random
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict


class VaultwatchError(Exception):
    """Base class for vaultwatch errors."""


class AccessDeniedError(VaultwatchError):
    """Capability permission was revoked or never granted."""


class TransientScanFailure(VaultwatchError):
    """A scan failed for a reason that may go away on its own."""


class ExtractionFailure(VaultwatchError):
    """File content could not be turned into text."""


class EmbeddingFailure(VaultwatchError):
    """The embedding provider failed or returned malformed output."""


class FolderNotFoundError(VaultwatchError, KeyError):
    """No monitored folder with the given id."""


class ConfigError(VaultwatchError):
    """Configuration is invalid for the requested operation."""


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


@dataclass
class ErrorEvent:
    """Payload describing a folder- or item-scoped failure."""
    scope: str
    error_type: str
    message: str
    severity: ErrorSeverity
    timestamp: datetime = field(default_factory=datetime.utcnow)
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, scope: str, error: BaseException, consecutive_errors: int = 0,
                       **context) -> "ErrorEvent":
        if isinstance(error, AccessDeniedError):
            severity = ErrorSeverity.HIGH
        elif consecutive_errors > 3:
            severity = ErrorSeverity.HIGH
        else:
            severity = ErrorSeverity.MEDIUM
        return cls(
            scope=scope,
            error_type=type(error).__name__,
            message=str(error),
            severity=severity,
            context=context,
        )

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp.isoformat(),
            'scope': self.scope,
            'error_type': self.error_type,
            'message': self.message,
            'severity': self.severity.value,
            'context': self.context
        }


def classify_os_error(error: BaseException) -> VaultwatchError:
    """Map a low-level error raised while scanning onto the taxonomy."""
    if isinstance(error, VaultwatchError):
        return error
    if isinstance(error, PermissionError):
        return AccessDeniedError(str(error))
    return TransientScanFailure(f"{type(error).__name__}: {error}")


class RetryPolicy:
    """Retry policy with exponential backoff."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 0.5,
                 max_delay: float = 30.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True):
        """
        Initialize retry policy.

        Args:
            max_attempts: Total attempts allowed, the first one included
            base_delay: Base delay in seconds
            max_delay: Maximum delay in seconds
            exponential_base: Base for exponential backoff
            jitter: Whether to add jitter
        """
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay before the next try.

        Args:
            attempt: Number of attempts already made (1-based)

        Returns:
            Delay in seconds
        """
        if self.base_delay <= 0:
            return 0.0

        delay = self.base_delay * (self.exponential_base ** max(attempt - 1, 0))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay = delay * (0.5 + random.random())

        return delay

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts
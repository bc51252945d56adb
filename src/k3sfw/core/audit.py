"""Audit logging for every state-changing firewall operation.

Provides:
- JSON-formatted audit logs
- Operation tracking with correlation IDs
- Automatic log rotation
"""

import fcntl
import json
import os
import pwd
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Generator, Optional

from k3sfw.core.output import console


# Default paths
DEFAULT_LOG_PATH = Path("/var/log/k3sfw/audit.log")
DEFAULT_MAX_SIZE_MB = 50
DEFAULT_BACKUP_COUNT = 5


class AuditEventType(Enum):
    """Types of auditable events."""
    POLICY_COMPILE = "policy.compile"

    FIREWALL_APPLY = "firewall.apply"
    FIREWALL_VERIFY = "firewall.verify"
    FIREWALL_ROLLBACK = "firewall.rollback"
    FIREWALL_RESTORE = "firewall.restore"

    SNAPSHOT_PRUNE = "snapshot.prune"


class AuditResult(Enum):
    """Result of an audited operation."""
    SUCCESS = "success"
    FAILURE = "failure"
    DRY_RUN = "dry_run"
    ROLLED_BACK = "rolled_back"


def _username() -> str:
    try:
        return pwd.getpwuid(os.getuid()).pw_name
    except KeyError:
        return str(os.getuid())


@dataclass
class AuditEvent:
    """Represents a single audit event."""
    event_type: AuditEventType
    result: AuditResult
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Actor information
    actor_uid: int = field(default_factory=os.getuid)
    actor_username: str = field(default_factory=_username)
    actor_sudo_user: Optional[str] = field(default_factory=lambda: os.environ.get("SUDO_USER"))

    # Target information
    target_type: Optional[str] = None
    target_name: Optional[str] = None

    # Operation details
    operation: Optional[str] = None
    parameters: dict[str, Any] = field(default_factory=dict)

    # Result details
    message: Optional[str] = None
    error: Optional[str] = None

    # Correlation
    session_id: Optional[str] = None
    correlation_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type.value,
            "result": self.result.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": {
                "uid": self.actor_uid,
                "username": self.actor_username,
                "sudo_user": self.actor_sudo_user,
            },
            "target": {
                "type": self.target_type,
                "name": self.target_name,
            },
            "operation": self.operation,
            "parameters": self.parameters,
            "message": self.message,
            "error": self.error,
            "session_id": self.session_id,
            "correlation_id": self.correlation_id,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class AuditLogger:
    """Audit logger for tracking firewall operations.

    Features:
    - Append-only JSON log file
    - Atomic writes with file locking
    - Automatic log rotation
    - Session and correlation tracking

    Audit failures never abort a firewall operation; they are reported
    at debug level only.
    """

    def __init__(
        self,
        log_path: Optional[Path] = None,
        max_size_mb: int = DEFAULT_MAX_SIZE_MB,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        enabled: bool = True,
    ) -> None:
        self.log_path = log_path or DEFAULT_LOG_PATH
        self.max_size_bytes = max_size_mb * 1024 * 1024
        self.backup_count = backup_count
        self.enabled = enabled

        self.session_id = str(uuid.uuid4())
        self._correlation_stack: list[str] = []

    def _ensure_log_directory(self) -> bool:
        """Create log directory with secure permissions."""
        try:
            self.log_path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
            if not self.log_path.exists():
                self.log_path.touch(mode=0o640)
            return True
        except OSError as e:
            console.debug(f"Cannot create audit log directory: {e}")
            return False

    def log(self, event: AuditEvent) -> None:
        """Log an audit event."""
        if not self.enabled:
            return

        event.session_id = self.session_id
        if self._correlation_stack:
            event.correlation_id = self._correlation_stack[-1]

        log_line = event.to_json() + "\n"

        if not self._ensure_log_directory():
            return

        try:
            with self._atomic_append() as f:
                f.write(log_line)
        except OSError as e:
            console.debug(f"Failed to write audit log: {e}")
            return

        self._rotate_if_needed()

    @contextmanager
    def _atomic_append(self) -> Generator:
        """Context manager for atomic append with file locking."""
        fd = os.open(
            self.log_path,
            os.O_WRONLY | os.O_APPEND | os.O_CREAT,
            0o640,
        )
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            f = os.fdopen(fd, "a")
        except Exception:
            os.close(fd)
            raise
        with f:
            yield f
            f.flush()
            os.fsync(fd)

    def _rotate_if_needed(self) -> None:
        """Rotate log file if it exceeds max size."""
        try:
            if self.log_path.stat().st_size > self.max_size_bytes:
                self._rotate_logs()
        except OSError as e:
            console.debug(f"Audit log rotation failed: {e}")

    def _rotate_logs(self) -> None:
        """Rotate log files."""
        oldest = self.log_path.with_suffix(f".{self.backup_count}")
        if oldest.exists():
            oldest.unlink()

        for i in range(self.backup_count - 1, 0, -1):
            src = self.log_path.with_suffix(f".{i}")
            dst = self.log_path.with_suffix(f".{i + 1}")
            if src.exists():
                src.rename(dst)

        self.log_path.rename(self.log_path.with_suffix(".1"))
        self.log_path.touch(mode=0o640)

    @contextmanager
    def correlation(self, operation: str) -> Generator[str, None, None]:
        """Context manager for correlating related events.

        Usage:
            with audit.correlation("apply") as corr_id:
                audit.log(event1)
                audit.log(event2)  # Both have same correlation_id
        """
        correlation_id = f"{operation}_{uuid.uuid4().hex[:8]}"
        self._correlation_stack.append(correlation_id)
        try:
            yield correlation_id
        finally:
            self._correlation_stack.pop()

    def log_operation(
        self,
        event_type: AuditEventType,
        result: AuditResult,
        target_type: str,
        target_name: str,
        operation: str,
        parameters: Optional[dict[str, Any]] = None,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log an operation with common fields."""
        self.log(AuditEvent(
            event_type=event_type,
            result=result,
            target_type=target_type,
            target_name=target_name,
            operation=operation,
            parameters=parameters or {},
            message=message,
            error=error,
        ))

    def log_success(
        self,
        event_type: AuditEventType,
        target_type: str,
        target_name: str,
        message: Optional[str] = None,
        parameters: Optional[dict[str, Any]] = None,
    ) -> None:
        """Log a successful operation."""
        self.log(AuditEvent(
            event_type=event_type,
            result=AuditResult.SUCCESS,
            target_type=target_type,
            target_name=target_name,
            message=message,
            parameters=parameters or {},
        ))

    def log_failure(
        self,
        event_type: AuditEventType,
        target_type: str,
        target_name: str,
        error: str,
        parameters: Optional[dict[str, Any]] = None,
    ) -> None:
        """Log a failed operation."""
        self.log(AuditEvent(
            event_type=event_type,
            result=AuditResult.FAILURE,
            target_type=target_type,
            target_name=target_name,
            error=error,
            parameters=parameters or {},
        ))

    def log_dry_run(
        self,
        event_type: AuditEventType,
        target_type: str,
        target_name: str,
        message: Optional[str] = None,
    ) -> None:
        """Log a dry-run operation."""
        self.log(AuditEvent(
            event_type=event_type,
            result=AuditResult.DRY_RUN,
            target_type=target_type,
            target_name=target_name,
            message=message,
        ))


# Global audit logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get or create global audit logger."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def configure_audit_logger(
    log_path: Optional[Path] = None,
    enabled: bool = True,
) -> AuditLogger:
    """Configure and return the global audit logger."""
    global _audit_logger
    _audit_logger = AuditLogger(log_path=log_path, enabled=enabled)
    return _audit_logger

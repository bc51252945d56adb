"""Core framework components for the k3sfw engine."""

from k3sfw.core.exceptions import (
    K3sfwError,
    ConfigurationError,
    ValidationError,
    MalformedCIDR,
    LintError,
    BootstrapRefused,
    ExecutionError,
    CaptureError,
    RestoreError,
    VerificationFailed,
    ApplyInterrupted,
)

from k3sfw.core.context import ExecutionContext, create_context
from k3sfw.core.output import console, Console, Verbosity
from k3sfw.core.config import AppConfig, EngineConfig
from k3sfw.core.audit import AuditLogger, AuditEvent, AuditEventType, AuditResult, get_audit_logger
from k3sfw.core.executor import CommandExecutor, CommandResult
from k3sfw.core.locking import EngineLock
from k3sfw.core.retry import wait_until

__all__ = [
    # Exceptions
    "K3sfwError",
    "ConfigurationError",
    "ValidationError",
    "MalformedCIDR",
    "LintError",
    "BootstrapRefused",
    "ExecutionError",
    "CaptureError",
    "RestoreError",
    "VerificationFailed",
    "ApplyInterrupted",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "AppConfig",
    "EngineConfig",
    # Audit
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "AuditResult",
    "get_audit_logger",
    # Executor
    "CommandExecutor",
    "CommandResult",
    # Locking
    "EngineLock",
    "wait_until",
]

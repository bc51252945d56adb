"""Custom exceptions for the k3sfw firewall engine.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration

Exit codes follow the command surface contract:
    0  success
    1  policy validation error
    2  apply succeeded but verification failed, rollback succeeded
    3  apply failed and rollback also failed (manual intervention)
    4  capture/restore subsystem unreachable
"""

from pathlib import Path
from typing import Any, Optional


class K3sfwError(Exception):
    """Base exception for all k3sfw errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigurationError(K3sfwError):
    """Engine configuration file or settings errors.

    Raised when:
    - Config file unreadable
    - Invalid YAML syntax
    - Invalid configuration values
    """
    exit_code = 1


class ValidationError(K3sfwError):
    """Policy document validation errors.

    Never raised after live state has been touched. Fully recoverable
    by fixing the policy input.
    """
    exit_code = 1

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.field = field


class MalformedCIDR(ValidationError):
    """A CIDR Set entry does not parse as a network prefix."""

    def __init__(
        self,
        value: str,
        *,
        field: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(
            f"Malformed CIDR '{value}'" + (f" in {field}" if field else ""),
            field=field,
            hint=hint or "Use network prefixes like 10.42.0.0/16 or fd00::/8",
            details=details,
        )
        self.value = value


class LintError(ValidationError):
    """Lint warnings promoted to errors by strict mode."""

    def __init__(self, warnings: list[str]) -> None:
        super().__init__(
            f"Policy failed strict lint with {len(warnings)} warning(s)",
            hint="Fix the policy or run without --strict",
            details=list(warnings),
        )
        self.warnings = list(warnings)


class BootstrapRefused(ValidationError):
    """Bootstrap mode requested while prior firewall state exists."""


class ExecutionError(K3sfwError):
    """Command execution failures.

    Raised when:
    - The nft binary is missing
    - nft returns non-zero exit code
    """
    exit_code = 4

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr.strip()}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class CaptureError(K3sfwError):
    """Pre-apply snapshot impossible.

    The apply is aborted before any mutation; live state is untouched.
    """
    exit_code = 4


class RestoreError(K3sfwError):
    """Restoring a snapshot failed.

    When raised during an apply this is the severe case: live state was
    mutated and the automatic revert failed too. Never retried.
    """
    exit_code = 3

    def __init__(
        self,
        message: str,
        *,
        snapshot_path: Optional[Path] = None,
        unreachable: bool = False,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if hint is None and snapshot_path is not None:
            hint = (
                "Manual recovery required: inspect the live table with "
                "'nft list ruleset', then restore the last known-good snapshot "
                f"with 'k3sfw rollback {snapshot_path.stem}' (its 'listing' key holds "
                f"the verbatim nft JSON in {snapshot_path})"
            )
        super().__init__(message, hint=hint, details=details)
        self.snapshot_path = snapshot_path
        self.unreachable = unreachable
        if unreachable:
            self.exit_code = 4


class VerificationFailed(K3sfwError):
    """Post-apply verification failed and the previous state was restored.

    Callers treat this as "no net change" even though two writes occurred.
    """
    exit_code = 2

    def __init__(
        self,
        failed_checks: list[Any],
        *,
        generation: Optional[int] = None,
        restored: bool = True,
        hint: Optional[str] = None,
    ) -> None:
        details = [
            f"{c.name}: expected {c.expected}, observed {c.observed}"
            for c in failed_checks
        ]
        super().__init__(
            f"Verification failed ({len(failed_checks)} check(s))"
            + ("; previous rules restored" if restored else ""),
            hint=hint or "Fix the policy and run 'k3sfw apply' again",
            details=details,
        )
        self.failed_checks = list(failed_checks)
        self.generation = generation


class ApplyInterrupted(K3sfwError):
    """The operator aborted an apply; the previous state was restored."""
    exit_code = 2

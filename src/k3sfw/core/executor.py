"""Command execution.

Provides:
- Safe command execution with output capture
- Optional stdin payload (nft -f -)
- Dry-run mode support for mutating commands
"""

import shlex
import subprocess
from dataclasses import dataclass
from typing import Optional

from k3sfw.core.context import ExecutionContext
from k3sfw.core.exceptions import ExecutionError


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: list[str]
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if command succeeded."""
        return self.return_code == 0


class CommandExecutor:
    """Safe command execution with dry-run support and output capture.

    Read-only commands always run, so that dry-run previews can still
    inspect the live state. Mutating commands are only echoed in dry-run.
    """

    def __init__(self, ctx: ExecutionContext) -> None:
        self.ctx = ctx

    def run(
        self,
        command: list[str],
        *,
        description: Optional[str] = None,
        check: bool = True,
        input: Optional[str] = None,
        read_only: bool = False,
        timeout: Optional[int] = None,
    ) -> CommandResult:
        """Execute a command safely.

        Args:
            command: Command as list of strings
            description: Human-readable description for logging
            check: Raise exception on non-zero exit
            input: Text written to the command's stdin
            read_only: Command has no side effects and runs in dry-run too
            timeout: Command timeout in seconds

        Returns:
            CommandResult with output

        Raises:
            ExecutionError: If the binary is missing, the command times out,
                or it fails and check=True
        """
        if description:
            self.ctx.console.step(description)

        cmd_display = shlex.join(command)
        self.ctx.console.debug(f"Running: {cmd_display}")

        if self.ctx.dry_run and not read_only:
            self.ctx.console.dry_run_msg(f"Run: {cmd_display}")
            return CommandResult(
                command=command,
                return_code=0,
                stdout="",
                stderr="",
            )

        try:
            result = subprocess.run(
                command,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise ExecutionError(
                f"Command not found: {command[0]}",
                command=cmd_display,
                hint="Install nftables (apt install nftables) or set K3SFW_NFT_BINARY",
            ) from e
        except subprocess.TimeoutExpired as e:
            raise ExecutionError(
                f"Command timed out after {timeout}s: {description or cmd_display}",
                command=cmd_display,
            ) from e

        if check and result.returncode != 0:
            raise ExecutionError(
                f"Command failed: {description or cmd_display}",
                command=cmd_display,
                return_code=result.returncode,
                stderr=result.stderr,
            )

        return CommandResult(
            command=command,
            return_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

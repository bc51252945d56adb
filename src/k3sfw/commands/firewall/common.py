"""Shared plumbing for the firewall commands: options, service wiring, errors."""

from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.markup import escape

from k3sfw.core import (
    K3sfwError,
    console,
    ExecutionContext,
    create_context,
    CommandExecutor,
    EngineLock,
    AuditLogger,
)
from k3sfw.core.audit import configure_audit_logger
from k3sfw.core.config import DEFAULT_CONFIG_PATH
from k3sfw.services.applier import Applier
from k3sfw.services.diagnostics import DiagnosticsReporter
from k3sfw.services.nftables import NftReader, NftWriter
from k3sfw.services.snapshot import SnapshotLog, Snapshotter
from k3sfw.services.verifier import Verifier


# Type aliases for common options
PolicyArgument = Annotated[
    Path,
    typer.Argument(
        help="Network policy YAML document.",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]

DryRunOption = Annotated[
    bool,
    typer.Option(
        "--dry-run",
        help="Compile and check against the kernel without changing the live rule set.",
        is_flag=True,
    ),
]

YesOption = Annotated[
    bool,
    typer.Option(
        "--yes",
        "-y",
        help="Skip confirmation prompts.",
        is_flag=True,
    ),
]

StrictOption = Annotated[
    bool,
    typer.Option(
        "--strict",
        help="Treat policy lint warnings as errors.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Suppress non-essential output. Only show errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to engine configuration file. Default: {DEFAULT_CONFIG_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]


@dataclass
class EngineServices:
    """Every engine component, wired from one engine configuration."""
    executor: CommandExecutor
    reader: NftReader
    writer: NftWriter
    log: SnapshotLog
    lock: EngineLock
    snapshotter: Snapshotter
    verifier: Verifier
    applier: Applier
    diagnostics: DiagnosticsReporter
    audit: AuditLogger


def build_services(ctx: ExecutionContext) -> EngineServices:
    """Wire the engine components from the context's configuration.

    Raises:
        ConfigurationError: If the engine configuration is invalid
    """
    config = ctx.engine
    nft = config.nftables

    audit = configure_audit_logger(config.audit_log, enabled=config.audit_enabled)
    executor = CommandExecutor(ctx)
    reader = NftReader(ctx, executor, table=nft.table, family=nft.family, binary=nft.binary)
    writer = NftWriter(ctx, executor, binary=nft.binary)
    log = SnapshotLog(config.snapshots.directory, retention=config.snapshots.retention)
    lock = EngineLock(config.lock_file)
    snapshotter = Snapshotter(ctx, reader, log, lock)
    verifier = Verifier(ctx, default_timeout=config.probe_timeout)
    applier = Applier(
        ctx,
        reader=reader,
        writer=writer,
        snapshotter=snapshotter,
        verifier=verifier,
        log=log,
        lock=lock,
        audit=audit,
    )
    diagnostics = DiagnosticsReporter(ctx, executor, reader, host_root=config.host_root)

    return EngineServices(
        executor=executor,
        reader=reader,
        writer=writer,
        log=log,
        lock=lock,
        snapshotter=snapshotter,
        verifier=verifier,
        applier=applier,
        diagnostics=diagnostics,
        audit=audit,
    )


def get_services(
    dry_run: bool = False,
    yes: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> tuple[ExecutionContext, EngineServices]:
    """Create context and engine services from CLI options."""
    ctx = create_context(
        dry_run=dry_run,
        yes=yes,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        config=config,
    )
    return ctx, build_services(ctx)


def handle_error(error: K3sfwError) -> None:
    """Handle a K3sfwError by printing formatted error and exiting."""
    console.error(error.message)

    if error.details:
        for detail in error.details:
            console.print(f"  [dim]{escape(detail)}[/dim]")

    if error.hint:
        console.hint(error.hint)

    raise typer.Exit(error.exit_code)


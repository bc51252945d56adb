"""Rollback and snapshot log commands."""

from datetime import datetime, timezone
from typing import Annotated, Optional

import typer
from rich.markup import escape

from k3sfw.core import (
    K3sfwError,
    RestoreError,
    ValidationError,
    AuditEventType,
)
from k3sfw.commands.firewall.common import (
    YesOption,
    VerboseOption,
    QuietOption,
    NoColorOption,
    ConfigOption,
    get_services,
    handle_error,
)
from k3sfw.services.snapshot import AppliedRecord


snapshots_app = typer.Typer(
    name="snapshots",
    help="Inspect and prune the pre-apply snapshot log.",
    no_args_is_help=True,
)


def rollback(
    snapshot_id: Annotated[
        Optional[str],
        typer.Argument(help="Snapshot to restore (default: the newest one)"),
    ] = None,
    yes: YesOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Restore the managed table from a snapshot.

    The current table is snapshotted first, so a rollback can itself be
    rolled back. Restoring a snapshot taken before the table existed
    removes the table.

    [bold]Examples:[/bold]

        sudo k3sfw rollback
        sudo k3sfw rollback 20240101T120000000000Z --yes
    """
    try:
        ctx, services = get_services(
            yes=yes,
            verbose=verbose,
            quiet=quiet,
            no_color=no_color,
            config=config,
        )
        log = services.log

        with services.lock.exclusive():
            if snapshot_id is None:
                snapshot = log.latest()
                if snapshot is None:
                    raise ValidationError(
                        f"No snapshots in {log.directory}",
                        hint="Snapshots are taken by 'k3sfw apply'",
                    )
            else:
                snapshot = log.get(snapshot_id)

            ctx.console.summary("Rollback", {
                "Snapshot": snapshot.id,
                "Taken": snapshot.timestamp,
                "Contents": "table absent (will be removed)" if snapshot.absent
                            else f"generation {snapshot.generation}",
                "Table": f"{snapshot.family} {snapshot.table}",
            })
            if not ctx.console.confirm(
                "Replace the live managed table with this snapshot?",
                skip_confirm=not ctx.should_confirm,
            ):
                ctx.console.info("Aborted, nothing changed")
                raise typer.Exit(0)

            current = services.snapshotter.capture()
            log.append(current)
            ctx.console.info(f"Current state saved as snapshot {current.id}")

            with services.audit.correlation("rollback"):
                try:
                    services.snapshotter.restore(snapshot, services.writer)
                except RestoreError as e:
                    services.audit.log_failure(
                        AuditEventType.FIREWALL_RESTORE,
                        target_type="snapshot",
                        target_name=snapshot.id,
                        error=e.message,
                    )
                    raise

                log.write_applied(AppliedRecord(
                    generation=snapshot.generation,
                    digest=None,
                    timestamp=datetime.now(timezone.utc).isoformat(),
                    snapshot_id=current.id,
                ))
                services.audit.log_success(
                    AuditEventType.FIREWALL_ROLLBACK,
                    target_type="snapshot",
                    target_name=snapshot.id,
                    message=f"Restored {snapshot}",
                    parameters={"saved_current": current.id},
                )

        ctx.console.success(f"Restored snapshot {snapshot}")

    except K3sfwError as e:
        handle_error(e)


@snapshots_app.command("list")
def snapshots_list(
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """List stored snapshots, oldest first."""
    try:
        ctx, services = get_services(verbose=verbose, no_color=no_color, config=config)
        log = services.log
        applied = log.read_applied()

        rows = []
        for snapshot_id in log.ids():
            try:
                snapshot = log.get(snapshot_id)
            except RestoreError as e:
                reason = escape(e.details[0]) if e.details else "unreadable"
                rows.append([snapshot_id, "", "", f"[red]malformed[/red] ({reason})"])
                continue
            state = "table absent" if snapshot.absent else f"generation {snapshot.generation}"
            if applied and applied.snapshot_id == snapshot.id:
                state += " [cyan](pinned)[/cyan]"
            rows.append([snapshot.id, snapshot.timestamp, f"{snapshot.family} {snapshot.table}", state])

        if not rows:
            ctx.console.info(f"No snapshots in {log.directory}")
            return

        ctx.console.table(f"Snapshots in {log.directory}", ["Id", "Taken", "Table", "State"], rows)
        if applied:
            ctx.console.print(f"[bold]Applied generation:[/bold] {applied.generation}")

    except K3sfwError as e:
        handle_error(e)


@snapshots_app.command("prune")
def snapshots_prune(
    keep: Annotated[
        Optional[int],
        typer.Option("--keep", "-k", min=0, help="Snapshots to keep (default: configured retention)"),
    ] = None,
    yes: YesOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Delete old snapshots.

    The snapshot recorded with the applied generation is never deleted.
    """
    try:
        ctx, services = get_services(yes=yes, verbose=verbose, no_color=no_color, config=config)
        log = services.log

        with services.lock.exclusive():
            applied = log.read_applied()
            pinned = {applied.snapshot_id} if applied and applied.snapshot_id else set()
            count = len(log.ids())
            target = log.retention if keep is None else keep

            if count <= target:
                ctx.console.info(f"{count} snapshot(s) stored, nothing to prune")
                return
            if not ctx.console.confirm(
                f"Delete up to {count - target} of {count} snapshot(s)?",
                skip_confirm=not ctx.should_confirm,
            ):
                ctx.console.info("Aborted, nothing deleted")
                raise typer.Exit(0)

            removed = log.prune(keep=target, pinned=pinned)

        services.audit.log_success(
            AuditEventType.SNAPSHOT_PRUNE,
            target_type="snapshot_log",
            target_name=str(log.directory),
            parameters={"removed": removed, "keep": target},
        )
        ctx.console.success(f"Removed {len(removed)} snapshot(s)")

    except K3sfwError as e:
        handle_error(e)

"""Apply command - compile, snapshot, write, verify, roll back on failure."""

from typing import Annotated, Optional

import typer

from k3sfw.core import (
    K3sfwError,
    BootstrapRefused,
    CaptureError,
    ExecutionError,
    VerificationFailed,
    AuditEventType,
    wait_until,
)
from k3sfw.commands.firewall.common import (
    PolicyArgument,
    DryRunOption,
    YesOption,
    StrictOption,
    VerboseOption,
    QuietOption,
    NoColorOption,
    ConfigOption,
    get_services,
    handle_error,
)
from k3sfw.services.compiler import compile_policy
from k3sfw.services.policy import load_policy


def apply(
    policy_file: PolicyArgument,
    bootstrap: Annotated[
        bool,
        typer.Option(
            "--bootstrap",
            help="First install on a node without the managed table; rollback removes it.",
        ),
    ] = False,
    wait_ready: Annotated[
        Optional[int],
        typer.Option(
            "--wait-ready",
            min=1,
            help="Wait up to N seconds for nftables to become reachable before capturing.",
        ),
    ] = None,
    strict: StrictOption = False,
    dry_run: DryRunOption = False,
    yes: YesOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Apply a policy to the live rule set.

    Captures the managed table, replaces it in one nft transaction, then
    verifies the result. Any failed check restores the captured state
    exactly once.

    [bold]Exit codes:[/bold]
        0  applied and verified
        1  invalid policy
        2  verification failed, previous rules restored
        3  rollback failed, manual intervention required
        4  nftables unreachable

    [bold]Examples:[/bold]

        sudo k3sfw apply policy.yaml --dry-run
        sudo k3sfw apply policy.yaml --yes
        sudo k3sfw apply policy.yaml --bootstrap --wait-ready 30
    """
    try:
        ctx, services = get_services(
            dry_run=dry_run,
            yes=yes,
            verbose=verbose,
            quiet=quiet,
            no_color=no_color,
            config=config,
        )

        # Policy errors must surface before any live state is read
        policy = load_policy(policy_file, strict=strict)
        compiled = compile_policy(policy, table=services.reader.table)
        ctx.console.verbose(f"Compiled {compiled.rule_count} rules, digest {compiled.digest}")

        if wait_ready is not None:
            if not wait_until(
                services.reader.is_available,
                timeout=wait_ready,
                description="nftables",
            ):
                raise CaptureError(
                    f"nftables did not become reachable within {wait_ready}s",
                    hint="Check that the nft binary is installed and the nf_tables module is loaded",
                )

        if dry_run:
            _dry_run(ctx, services, compiled, bootstrap, policy_file)
            return

        ctx.console.summary("Apply", {
            "Policy": policy_file,
            "Role": policy.role,
            "Table": ctx.table_ref,
            "Rules": compiled.rule_count,
            "Sets": len(compiled.sets),
            "Bootstrap": bootstrap,
        })
        if not ctx.console.confirm(
            "Replace the live managed table with this policy?",
            skip_confirm=not ctx.should_confirm,
        ):
            ctx.console.info("Aborted, nothing changed")
            raise typer.Exit(0)

        try:
            generation = services.applier.apply(compiled, policy, bootstrap=bootstrap)
        except VerificationFailed:
            ctx.console.checks(
                "Verification", services.applier.last_results, show_passed=ctx.is_verbose,
            )
            ctx.console.warn("Previous rule set restored")
            raise

        ctx.console.checks(
            "Verification", services.applier.last_results, show_passed=ctx.is_verbose,
        )
        ctx.console.success(
            f"Generation {generation} applied and verified "
            f"({len(services.applier.last_results)} checks passed)"
        )

    except K3sfwError as e:
        handle_error(e)


def _dry_run(ctx, services, compiled, bootstrap: bool, policy_file) -> None:
    """Show the rule set and let the kernel check it without committing."""
    ctx.console.nft(compiled.render_nft())

    if bootstrap and services.reader.table_exists():
        raise BootstrapRefused(
            f"Bootstrap refused: table {services.reader.family} {services.reader.table} "
            "already exists",
            hint="Run 'k3sfw apply' without --bootstrap so the current rules are snapshotted",
        )

    try:
        services.writer.check(compiled.to_nft_commands())
    except ExecutionError as e:
        if e.return_code is not None:
            raise
        ctx.console.warn(f"Kernel check skipped: {e.message}")
    else:
        ctx.console.success("nftables accepts the compiled rule set")

    ctx.console.dry_run_msg(
        f"Replace table {services.reader.family} {services.reader.table} "
        f"with {compiled.rule_count} rules, then verify"
    )
    services.audit.log_dry_run(
        AuditEventType.FIREWALL_APPLY,
        target_type="table",
        target_name=ctx.table_ref,
        message=f"{policy_file}: {compiled.rule_count} rules, digest {compiled.digest}",
    )

"""Verify command - run the check battery against the live rule set."""

from k3sfw.core import (
    K3sfwError,
    CaptureError,
    ExecutionError,
    VerificationFailed,
    AuditEventType,
)
from k3sfw.commands.firewall.common import (
    PolicyArgument,
    VerboseOption,
    QuietOption,
    NoColorOption,
    ConfigOption,
    get_services,
    handle_error,
)
from k3sfw.services.policy import load_policy
from k3sfw.services.ruleset import LiveTable
from k3sfw.services.verifier import failed_checks


def verify(
    policy_file: PolicyArgument,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Check that the live rule set enforces a policy.

    Read-only. Runs the same checks apply runs after writing; exits 2
    when any check fails.

    [bold]Examples:[/bold]

        sudo k3sfw verify policy.yaml
        sudo k3sfw verify policy.yaml -v   # show passing checks too
    """
    try:
        ctx, services = get_services(
            verbose=verbose,
            quiet=quiet,
            no_color=no_color,
            config=config,
        )
        policy = load_policy(policy_file)

        with services.lock.shared():
            try:
                listing = services.reader.list_table()
            except ExecutionError as e:
                raise CaptureError(
                    "Cannot read the live rule set; nftables is unreachable",
                    details=e.details or [e.message],
                ) from e
            live = (
                LiveTable.from_nft(listing, services.reader.family, services.reader.table)
                if listing is not None else None
            )
            if live is None:
                ctx.console.warn(
                    f"Table {services.reader.family} {services.reader.table} is not loaded"
                )
            results = services.verifier.verify(policy, live)

        ctx.console.checks("Verification", results, show_passed=ctx.is_verbose)
        failed = failed_checks(results)
        if failed:
            services.audit.log_failure(
                AuditEventType.FIREWALL_VERIFY,
                target_type="table",
                target_name=ctx.table_ref,
                error=f"{len(failed)} of {len(results)} checks failed",
                parameters={"failed": [r.name for r in failed]},
            )
            raise VerificationFailed(
                failed,
                restored=False,
                hint="Re-apply the policy with 'k3sfw apply' or run 'k3sfw diagnose'",
            )

        ctx.console.success(f"All {len(results)} checks passed")

    except K3sfwError as e:
        handle_error(e)

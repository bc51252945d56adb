"""Diagnose command - rank the likely causes of a broken cluster network."""

from rich.markup import escape

from k3sfw.core import K3sfwError
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


def diagnose(
    policy_file: PolicyArgument,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Explain why cluster traffic may be failing.

    Read-only. Cross-references kernel modules, sysctls, listening
    sockets and the live table with the policy, most likely cause first.

    [bold]Examples:[/bold]

        sudo k3sfw diagnose policy.yaml
        sudo k3sfw diagnose policy.yaml -v   # include raw facts
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
            report = services.diagnostics.diagnose(policy)

        if ctx.is_verbose:
            ctx.console.summary("Host", {
                "Managed table present": report.table_present,
                "Modules loaded": ", ".join(n for n, ok in report.modules.items() if ok) or "none",
                "Listening sockets": (
                    len(report.listening) if report.listening is not None else "unknown (ss failed)"
                ),
            })

        if report.ok:
            ctx.console.success("No problems found")
            return

        ctx.console.findings(report.findings)
        root = report.root_cause
        ctx.console.print()
        ctx.console.print(f"[bold]Most likely cause:[/bold] {escape(str(root))}")
        if root.hint:
            ctx.console.hint(root.hint)

    except K3sfwError as e:
        handle_error(e)

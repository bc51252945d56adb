"""Main CLI entry point using Typer.

This module defines the root CLI application and global options.
Firewall commands are registered at the top level from submodules.
"""

from typing import Annotated

import typer
from rich.console import Console

from k3sfw import __version__
from k3sfw.core.config import AppConfig, get_example_config
from k3sfw.core.context import create_context
from k3sfw.core.exceptions import K3sfwError
from k3sfw.commands.firewall import (
    compile_command,
    apply_command,
    verify_command,
    diagnose_command,
    rollback_command,
    snapshots_app,
)
from k3sfw.commands.firewall.common import (
    ConfigOption,
    VerboseOption,
    NoColorOption,
    handle_error,
)


# Create the main Typer app
app = typer.Typer(
    name="k3sfw",
    help="k3sfw - nftables firewall compiler and enforcer for k3s nodes.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

config_app = typer.Typer(
    name="config",
    help="Engine configuration.",
    no_args_is_help=True,
)

# Register commands
app.command("compile")(compile_command)
app.command("apply")(apply_command)
app.command("verify")(verify_command)
app.command("diagnose")(diagnose_command)
app.command("rollback")(rollback_command)
app.add_typer(snapshots_app, name="snapshots")
app.add_typer(config_app, name="config")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console = Console()
        console.print(f"k3sfw version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """k3sfw - nftables firewall compiler and enforcer for k3s nodes.

    Compiles a declarative network policy into one nftables table,
    applies it atomically, verifies it and rolls back on failure.

    [bold]Exit codes:[/bold]
        0 success, 1 invalid policy or config, 2 verification failed
        (rolled back), 3 rollback failed, 4 nftables unreachable

    [bold]Examples:[/bold]
        k3sfw compile policy.yaml
        sudo k3sfw apply policy.yaml --dry-run
        sudo k3sfw apply policy.yaml --yes
        sudo k3sfw verify policy.yaml
        sudo k3sfw diagnose policy.yaml
        sudo k3sfw rollback
    """
    pass


# ============================================================================
# Config commands
# ============================================================================

@config_app.command("show")
def config_show(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Show the effective engine configuration.

    File values with K3SFW_* environment overrides applied.
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        app_config = AppConfig(config_path=ctx.config_path)

        ctx.console.print()
        ctx.console.print(f"[bold]Configuration file:[/bold] {ctx.config_path}")
        ctx.console.print(f"[bold]File exists:[/bold] {ctx.config_path.exists()}")
        ctx.console.print()

        ctx.console.yaml(app_config.config.to_yaml(), title="Configuration")

    except K3sfwError as e:
        handle_error(e)


@config_app.command("example")
def config_example(no_color: NoColorOption = False) -> None:
    """Print example configuration file.

    Outputs a complete example configuration with comments.
    Useful as a starting point for /etc/k3sfw/config.yaml.
    """
    ctx = create_context(no_color=no_color)
    ctx.console.out(get_example_config())


if __name__ == "__main__":
    app()

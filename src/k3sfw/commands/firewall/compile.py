"""Compile command - render a policy without touching live state."""

from enum import Enum
from pathlib import Path
from typing import Annotated, Optional

import typer

from k3sfw.core import (
    K3sfwError,
    ValidationError,
    create_context,
    AuditEventType,
)
from k3sfw.core.audit import configure_audit_logger
from k3sfw.commands.firewall.common import (
    PolicyArgument,
    StrictOption,
    VerboseOption,
    QuietOption,
    NoColorOption,
    ConfigOption,
    handle_error,
)
from k3sfw.services.compiler import compile_policy
from k3sfw.services.policy import load_policy


class OutputFormat(str, Enum):
    NFT = "nft"
    JSON = "json"


def compile_command(
    policy_file: PolicyArgument,
    output_format: Annotated[
        OutputFormat,
        typer.Option("--format", "-f", help="nft script for reading, json for 'nft -j -f'"),
    ] = OutputFormat.NFT,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write to this file instead of stdout"),
    ] = None,
    strict: StrictOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Compile a policy into the managed nftables table.

    Pure: reads the policy, never the live rule set. Identical input
    always produces byte-identical output.

    [bold]Examples:[/bold]

        k3sfw compile policy.yaml
        k3sfw compile policy.yaml --format json -o k3s.json
        k3sfw compile policy.yaml --strict
    """
    ctx = create_context(verbose=verbose, quiet=quiet, no_color=no_color, config=config)

    try:
        engine = ctx.engine
        audit = configure_audit_logger(engine.audit_log, enabled=engine.audit_enabled)

        policy = load_policy(policy_file, strict=strict)
        compiled = compile_policy(policy, table=engine.nftables.table)
        text = compiled.render_json() if output_format == OutputFormat.JSON else compiled.render_nft()

        if output is not None:
            try:
                output.write_text(text)
            except OSError as e:
                raise ValidationError(
                    f"Cannot write compiled rule set to {output}",
                    details=[str(e)],
                ) from e
            ctx.console.success(
                f"Compiled {compiled.rule_count} rules in {len(compiled.sets)} sets to {output}"
            )
        else:
            ctx.console.out(text)

        ctx.console.verbose(f"Digest: {compiled.digest}")
        audit.log_success(
            AuditEventType.POLICY_COMPILE,
            target_type="policy",
            target_name=str(policy_file),
            parameters={
                "digest": compiled.digest,
                "format": output_format.value,
                "rules": compiled.rule_count,
            },
        )

    except K3sfwError as e:
        handle_error(e)

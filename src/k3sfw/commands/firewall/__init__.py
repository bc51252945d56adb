"""Firewall commands.

Manages the single nftables table k3s needs:
- compile: policy to rule set, no live access
- apply: snapshot, atomic write, verify, automatic rollback
- verify / diagnose: read-only checks and ranked triage
- rollback / snapshots: manual restore and snapshot log upkeep
"""

from k3sfw.commands.firewall.compile import compile_command
from k3sfw.commands.firewall.apply import apply as apply_command
from k3sfw.commands.firewall.verify import verify as verify_command
from k3sfw.commands.firewall.diagnose import diagnose as diagnose_command
from k3sfw.commands.firewall.rollback import rollback as rollback_command, snapshots_app

__all__ = [
    "compile_command",
    "apply_command",
    "verify_command",
    "diagnose_command",
    "rollback_command",
    "snapshots_app",
]

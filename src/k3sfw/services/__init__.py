"""Firewall engine services: policy, compiler, nftables backend, snapshots,
applier, verifier and diagnostics."""

from k3sfw.services.policy import Policy, load_policy, lint_policy, parse_policy
from k3sfw.services.compiler import CompiledRuleSet, compile_policy
from k3sfw.services.nftables import NftReader, NftWriter
from k3sfw.services.ruleset import LiveTable, Packet, Verdict
from k3sfw.services.snapshot import Snapshot, SnapshotLog, Snapshotter
from k3sfw.services.verifier import CheckResult, Verifier
from k3sfw.services.applier import Applier
from k3sfw.services.diagnostics import DiagnosticsReporter, Finding, Report

__all__ = [
    "Policy",
    "load_policy",
    "lint_policy",
    "parse_policy",
    "CompiledRuleSet",
    "compile_policy",
    "NftReader",
    "NftWriter",
    "LiveTable",
    "Packet",
    "Verdict",
    "Snapshot",
    "SnapshotLog",
    "Snapshotter",
    "CheckResult",
    "Verifier",
    "Applier",
    "DiagnosticsReporter",
    "Finding",
    "Report",
]

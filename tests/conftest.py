"""Shared fixtures: an in-memory nftables kernel and policy builders."""

import copy
import json
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Optional

import pytest

from k3sfw.core.audit import AuditLogger
from k3sfw.core.context import ExecutionContext, create_context
from k3sfw.core.exceptions import ExecutionError
from k3sfw.core.executor import CommandResult
from k3sfw.core.locking import EngineLock
from k3sfw.services.applier import Applier
from k3sfw.services.nftables import NftReader, NftWriter
from k3sfw.services.policy import parse_policy
from k3sfw.services.snapshot import SnapshotLog, Snapshotter
from k3sfw.services.verifier import Verifier


class FakeNftKernel:
    """Stand-in for `nft -j` with atomic batch semantics.

    A batch either applies completely or leaves the ruleset untouched,
    like a netlink transaction.
    """

    def __init__(self) -> None:
        self.tables: dict[tuple[str, str], dict[str, Any]] = {}
        self._handle = 0
        self.unreachable = False
        self.fail_loads: list[str] = []
        self.loads: list[dict[str, Any]] = []
        self.checks: list[dict[str, Any]] = []
        self.ss_output = ""

    # -- batch processing -------------------------------------------------

    def _next_handle(self) -> int:
        self._handle += 1
        return self._handle

    def _process(self, tables: dict, batch: dict[str, Any]) -> None:
        for command in batch.get("nftables", []):
            if "metainfo" in command:
                continue
            (verb, obj), = command.items()
            (kind, body), = obj.items()
            body = copy.deepcopy(body)
            if kind == "table":
                key = (body["family"], body["name"])
                if verb == "add":
                    if key not in tables:
                        tables[key] = {"handle": self._next_handle(), "sets": {}, "chains": {}, "rules": []}
                elif verb == "delete":
                    if key not in tables:
                        raise ValueError(f"No such file or directory: table {key[0]} {key[1]}")
                    del tables[key]
                continue

            if verb != "add":
                raise ValueError(f"unsupported {verb} {kind}")
            key = (body["family"], body["table"])
            if key not in tables:
                raise ValueError(f"No such file or directory: table {key[0]} {key[1]}")
            table = tables[key]
            body["handle"] = self._next_handle()
            if kind == "set":
                table["sets"][body["name"]] = body
            elif kind == "chain":
                table["chains"][body["name"]] = body
            elif kind == "rule":
                if body["chain"] not in table["chains"]:
                    raise ValueError(f"No such file or directory: chain {body['chain']}")
                for ref in _set_refs(body.get("expr", [])):
                    if ref not in table["sets"]:
                        raise ValueError(f"No such file or directory: set {ref}")
                table["rules"].append(body)
            else:
                raise ValueError(f"unsupported object {kind}")

    def load(self, batch: dict[str, Any], commit: bool = True) -> None:
        staged = copy.deepcopy(self.tables)
        self._process(staged, batch)
        if commit:
            self.tables = staged

    # -- listings ----------------------------------------------------------

    def list_tables(self) -> dict[str, Any]:
        objects: list[dict[str, Any]] = [{"metainfo": {"json_schema_version": 1}}]
        for (family, name), table in self.tables.items():
            objects.append({"table": {"family": family, "name": name, "handle": table["handle"]}})
        return {"nftables": objects}

    def list_table(self, family: str, name: str) -> dict[str, Any]:
        table = self.tables[(family, name)]
        objects: list[dict[str, Any]] = [
            {"metainfo": {"json_schema_version": 1}},
            {"table": {"family": family, "name": name, "handle": table["handle"]}},
        ]
        objects.extend({"set": copy.deepcopy(s)} for s in table["sets"].values())
        objects.extend({"chain": copy.deepcopy(c)} for c in table["chains"].values())
        objects.extend({"rule": copy.deepcopy(r)} for r in table["rules"])
        return {"nftables": objects}

    def live_listing(self, family: str = "inet", name: str = "k3s") -> Optional[dict[str, Any]]:
        if (family, name) not in self.tables:
            return None
        return self.list_table(family, name)


def _set_refs(value: Any) -> list[str]:
    if isinstance(value, str) and value.startswith("@"):
        return [value[1:]]
    if isinstance(value, dict):
        return [r for v in value.values() for r in _set_refs(v)]
    if isinstance(value, list):
        return [r for v in value for r in _set_refs(v)]
    return []


class FakeExecutor:
    """CommandExecutor replacement routing nft and ss to a FakeNftKernel."""

    def __init__(self, ctx: ExecutionContext, kernel: FakeNftKernel) -> None:
        self.ctx = ctx
        self.kernel = kernel
        self.commands: list[list[str]] = []

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
        self.commands.append(list(command))
        if self.ctx.dry_run and not read_only:
            return CommandResult(command=command, return_code=0, stdout="", stderr="")

        if command[0] == "ss":
            return CommandResult(command=command, return_code=0, stdout=self.kernel.ss_output, stderr="")

        if self.kernel.unreachable:
            raise ExecutionError(f"Command not found: {command[0]}", command=" ".join(command))

        args = command[1:]
        try:
            stdout = self._nft(args, input)
        except (ValueError, KeyError) as e:
            if not check:
                return CommandResult(command=command, return_code=1, stdout="", stderr=str(e))
            raise ExecutionError(
                f"Command failed: {description or ' '.join(command)}",
                command=" ".join(command),
                return_code=1,
                stderr=str(e),
            ) from e
        return CommandResult(command=command, return_code=0, stdout=stdout, stderr="")

    def _nft(self, args: list[str], input: Optional[str]) -> str:
        if args == ["-j", "list", "tables"]:
            return json.dumps(self.kernel.list_tables())
        if args[:3] == ["-j", "list", "table"]:
            family, name = args[3], args[4]
            if (family, name) not in self.kernel.tables:
                raise ValueError(f"No such file or directory: table {family} {name}")
            return json.dumps(self.kernel.list_table(family, name))
        if args == ["-c", "-j", "-f", "-"]:
            batch = json.loads(input or "{}")
            self.kernel.checks.append(batch)
            self.kernel.load(batch, commit=False)
            return ""
        if args == ["-j", "-f", "-"]:
            batch = json.loads(input or "{}")
            if self.kernel.fail_loads:
                raise ValueError(self.kernel.fail_loads.pop(0))
            self.kernel.load(batch)
            self.kernel.loads.append(batch)
            return ""
        raise ValueError(f"unexpected nft arguments: {args}")


# =============================================================================
# Policy documents
# =============================================================================

def scenario_policy_data(control_plane_ports: Optional[list[str]] = None) -> dict[str, Any]:
    """Control-plane policy: cluster CIDRs, control-plane ports, minimal input chain."""
    if control_plane_ports is None:
        control_plane_ports = ["tcp/6443", "tcp/10250"]
    return {
        "role": "control-plane",
        "cidr_sets": {
            "cluster": {
                "cluster_networks": True,
                "cidrs": ["10.42.0.0/16", "10.43.0.0/16"],
            },
        },
        "port_sets": {
            "control-plane": {
                "ports": control_plane_ports,
                "reachable": True,
                "required_for": "control-plane",
            },
        },
        "interface_patterns": {
            "cluster": ["cni*", "flannel*"],
        },
        "chains": {
            "input": {
                "policy": "drop",
                "rules": [
                    {"kind": "loopback"},
                    {"kind": "established"},
                    {"kind": "control-plane", "port_set": "control-plane"},
                    {"kind": "cluster", "cidr_set": "cluster"},
                ],
            },
            "forward": {
                "policy": "drop",
                "rules": [
                    {"kind": "cluster", "cidr_set": "cluster", "direction": "both"},
                ],
            },
        },
        "nat": [
            {"source": "cluster", "exclude_interfaces": ["cluster"]},
        ],
    }


@pytest.fixture
def scenario_data() -> dict[str, Any]:
    return scenario_policy_data()


@pytest.fixture
def scenario_policy(scenario_data):
    return parse_policy(scenario_data)


# =============================================================================
# Engine wiring
# =============================================================================

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep K3SFW_* variables from the host out of every test."""
    for name in ("TABLE", "NFT_BINARY", "SNAPSHOT_DIR", "SNAPSHOT_RETENTION",
                 "LOCK_FILE", "AUDIT_LOG", "PROBE_TIMEOUT", "HOST_ROOT"):
        monkeypatch.delenv(f"K3SFW_{name}", raising=False)


@pytest.fixture
def kernel() -> FakeNftKernel:
    return FakeNftKernel()


@pytest.fixture
def ctx() -> ExecutionContext:
    return create_context(yes=True)


@pytest.fixture
def engine(ctx, kernel, tmp_path: Path):
    """Applier and collaborators wired to the fake kernel."""
    executor = FakeExecutor(ctx, kernel)
    reader = NftReader(ctx, executor, table="k3s")
    writer = NftWriter(ctx, executor)
    log = SnapshotLog(tmp_path / "snapshots", retention=5)
    lock = EngineLock(tmp_path / "k3sfw.lock")
    snapshotter = Snapshotter(ctx, reader, log, lock)
    verifier = Verifier(ctx)
    audit = AuditLogger(log_path=tmp_path / "audit.log")
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

    return SimpleNamespace(
        ctx=ctx,
        kernel=kernel,
        executor=executor,
        reader=reader,
        writer=writer,
        log=log,
        lock=lock,
        snapshotter=snapshotter,
        verifier=verifier,
        audit=audit,
        applier=applier,
    )

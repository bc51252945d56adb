"""Diagnostics reporter.

Read-only triage of a node: kernel modules, sysctls, listening sockets
and the live managed table, cross-referenced against the policy. Findings
are ranked in the order the causes are most likely to explain a broken
cluster:

    1  kernel module missing
    2  sysctl not set
    3  required port not in any allow clause (falls to default drop)
    4  required port hit by an explicit higher-priority drop
    5  required TCP port with nothing listening
    6  live table drifted from the compiled policy
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from k3sfw.core.context import ExecutionContext
from k3sfw.core.exceptions import ExecutionError, ValidationError
from k3sfw.core.executor import CommandExecutor
from k3sfw.services.compiler import compile_policy
from k3sfw.services.nftables import NftReader
from k3sfw.services.policy import Policy, PortSpec
from k3sfw.services.ruleset import LiveTable
from k3sfw.services.verifier import input_packet, probe_ports, probe_source


REQUIRED_MODULES = ("nf_tables", "nf_conntrack", "nf_nat", "br_netfilter", "overlay", "vxlan")

REQUIRED_SYSCTLS = (
    "net.ipv4.ip_forward",
    "net.bridge.bridge-nf-call-iptables",
    "net.bridge.bridge-nf-call-ip6tables",
    "net.ipv6.conf.all.forwarding",
)

RANK_MODULE = 1
RANK_SYSCTL = 2
RANK_NOT_ALLOWED = 3
RANK_EXPLICIT_DROP = 4
RANK_NOT_LISTENING = 5
RANK_DRIFT = 6


@dataclass
class Finding:
    """One suspected cause, lower rank is more likely."""
    rank: int
    category: str
    subject: str
    message: str
    hint: Optional[str] = None

    def __str__(self) -> str:
        return f"[{self.rank}] {self.category} {self.subject}: {self.message}"


@dataclass
class Report:
    """Ranked findings plus the raw facts they were derived from."""
    findings: list[Finding] = field(default_factory=list)
    modules: dict[str, bool] = field(default_factory=dict)
    sysctls: dict[str, Optional[str]] = field(default_factory=dict)
    listening: Optional[set[tuple[str, int]]] = None
    table_present: bool = False

    @property
    def ok(self) -> bool:
        return not self.findings

    @property
    def root_cause(self) -> Optional[Finding]:
        """The highest-ranked finding, if any."""
        return self.findings[0] if self.findings else None


def parse_ss_output(output: str) -> set[tuple[str, int]]:
    """(protocol, port) pairs from `ss -H -tuln` output."""
    listening: set[tuple[str, int]] = set()
    for line in output.splitlines():
        cols = line.split()
        if len(cols) < 5:
            continue
        netid, local = cols[0], cols[4]
        if netid not in ("tcp", "udp"):
            continue
        _, _, port = local.rpartition(":")
        if port.isdigit():
            listening.add((netid, int(port)))
    return listening


class DiagnosticsReporter:
    """Collects host facts and ranks findings against a policy."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        reader: NftReader,
        *,
        host_root: Path = Path("/"),
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.reader = reader
        self.host_root = host_root

    # =====================================================================
    # Fact gathering
    # =====================================================================

    def loaded_modules(self) -> dict[str, bool]:
        proc_modules = self.host_root / "proc" / "modules"
        loaded: set[str] = set()
        try:
            loaded = {line.split()[0] for line in proc_modules.read_text().splitlines() if line}
        except OSError as e:
            self.ctx.console.debug(f"Cannot read {proc_modules}: {e}")

        sys_module = self.host_root / "sys" / "module"
        return {
            name: name in loaded or (sys_module / name).is_dir()
            for name in REQUIRED_MODULES
        }

    def sysctl_values(self) -> dict[str, Optional[str]]:
        values: dict[str, Optional[str]] = {}
        for name in REQUIRED_SYSCTLS:
            path = self.host_root / "proc" / "sys" / Path(*name.split("."))
            try:
                values[name] = path.read_text().strip()
            except OSError:
                values[name] = None
        return values

    def listening_ports(self) -> Optional[set[tuple[str, int]]]:
        """Listening sockets, or None when ss is unavailable."""
        try:
            result = self.executor.run(["ss", "-H", "-tuln"], read_only=True, check=False)
        except ExecutionError as e:
            self.ctx.console.debug(f"Listening socket inventory unavailable: {e.message}")
            return None
        if not result.success:
            self.ctx.console.debug(f"ss failed: {result.stderr.strip()}")
            return None
        return parse_ss_output(result.stdout)

    def live_table(self) -> tuple[bool, Optional[LiveTable]]:
        """(readable, table). Unreadable nftables is itself a finding."""
        try:
            listing = self.reader.list_table()
        except ExecutionError as e:
            self.ctx.console.debug(f"Cannot list the managed table: {e.message}")
            return False, None
        if listing is None:
            return True, None
        try:
            return True, LiveTable.from_nft(listing, self.reader.family, self.reader.table)
        except ValidationError as e:
            self.ctx.console.debug(f"Cannot parse the managed table: {e.message}")
            return False, None

    # =====================================================================
    # Cross-referencing
    # =====================================================================

    def diagnose(self, policy: Policy) -> Report:
        report = Report()

        report.modules = self.loaded_modules()
        for name, loaded in report.modules.items():
            if not loaded:
                report.findings.append(Finding(
                    rank=RANK_MODULE,
                    category="module",
                    subject=name,
                    message="kernel module not loaded",
                    hint=f"modprobe {name} && echo {name} >> /etc/modules-load.d/k3s.conf",
                ))

        report.sysctls = self.sysctl_values()
        for name, value in report.sysctls.items():
            if value != "1":
                report.findings.append(Finding(
                    rank=RANK_SYSCTL,
                    category="sysctl",
                    subject=name,
                    message=f"expected 1, found {value if value is not None else 'unavailable'}",
                    hint=f"sysctl -w {name}=1",
                ))

        readable, live = self.live_table()
        report.table_present = live is not None
        if not readable:
            report.findings.append(Finding(
                rank=RANK_MODULE,
                category="nftables",
                subject=f"{self.reader.family} {self.reader.table}",
                message="live rule set cannot be read",
                hint="Check that nftables is installed and nf_tables is loaded",
            ))
        elif live is None:
            report.findings.append(Finding(
                rank=RANK_NOT_ALLOWED,
                category="table",
                subject=f"{self.reader.family} {self.reader.table}",
                message="managed table is absent; no k3s rules are loaded",
                hint="Run 'k3sfw apply' with this policy",
            ))
        else:
            report.findings.extend(self._port_findings(policy, live))
            report.findings.extend(self._drift_findings(policy, live))

        report.listening = self.listening_ports()
        if report.listening is not None:
            for name, spec, _ in self._required_ports(policy):
                if spec.protocol == "tcp" and ("tcp", spec.first) not in report.listening:
                    report.findings.append(Finding(
                        rank=RANK_NOT_LISTENING,
                        category="service",
                        subject=f"{name} {spec}",
                        message="nothing is listening on this port",
                        hint="The service behind this port is not running",
                    ))

        report.findings.sort(key=lambda f: f.rank)
        return report

    def _required_ports(self, policy: Policy) -> list[tuple[str, PortSpec, str]]:
        """(name, port, probe source) for every port the policy must admit."""
        ports: list[tuple[str, PortSpec, str]] = [
            (f"requirement:{req.name}", req.port, probe_source(policy, req.probe_from))
            for req in policy.effective_requirements()
        ]
        for set_name in sorted(policy.port_sets):
            port_set = policy.port_sets[set_name]
            if port_set.reachable or port_set.required_for == policy.role:
                source = probe_source(policy, port_set.probe_from)
                for spec in sorted(port_set.ports, key=PortSpec.sort_key):
                    ports.append((set_name, spec, source))
        return ports

    def _port_findings(self, policy: Policy, live: LiveTable) -> list[Finding]:
        findings = []
        for name, spec, source in self._required_ports(policy):
            verdicts = [
                live.evaluate(input_packet(policy, spec.protocol, port, source), "input")
                for port in probe_ports(spec)
            ]
            verdict = next((v for v in verdicts if v.action != "accept"), None)
            if verdict is None:
                continue
            if verdict.from_policy:
                findings.append(Finding(
                    rank=RANK_NOT_ALLOWED,
                    category="port",
                    subject=f"{name} {spec}",
                    message=f"not in any allow clause; {verdict.describe()}",
                    hint="Add the port to a port set referenced by an accept clause",
                ))
            else:
                findings.append(Finding(
                    rank=RANK_EXPLICIT_DROP,
                    category="port",
                    subject=f"{name} {spec}",
                    message=f"blocked by an explicit rule; {verdict.describe()}",
                    hint="Move the drop clause after the allow clause or narrow its sets",
                ))
        return findings

    def _drift_findings(self, policy: Policy, live: LiveTable) -> list[Finding]:
        findings = []
        for chain_name, chain_policy in policy.chains.items():
            chain = live.base_chain(chain_name)
            observed = chain.policy if chain else "missing"
            if observed != chain_policy.policy:
                findings.append(Finding(
                    rank=RANK_DRIFT,
                    category="policy",
                    subject=chain_name,
                    message=f"live default is {observed}, policy declares {chain_policy.policy}",
                    hint="Re-apply the policy",
                ))

        compiled = compile_policy(policy, table=self.reader.table)
        for chain_def in compiled.chains:
            chain = live.chains.get(chain_def.name)
            observed = len(chain.rules) if chain else 0
            if observed != len(chain_def.rules):
                findings.append(Finding(
                    rank=RANK_DRIFT,
                    category="drift",
                    subject=chain_def.name,
                    message=f"live chain has {observed} rule(s), policy compiles to "
                            f"{len(chain_def.rules)}",
                    hint="The live table was changed outside k3sfw or from another policy",
                ))
        missing_sets = sorted({s.name for s in compiled.sets} - set(live.sets))
        if missing_sets:
            findings.append(Finding(
                rank=RANK_DRIFT,
                category="drift",
                subject="sets",
                message=f"missing from live table: {', '.join(missing_sets)}",
                hint="Re-apply the policy",
            ))
        return findings

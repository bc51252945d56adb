"""Unit tests for the diagnostics reporter."""

from pathlib import Path

import pytest

from k3sfw.services.compiler import compile_policy
from k3sfw.services.diagnostics import (
    REQUIRED_MODULES,
    REQUIRED_SYSCTLS,
    DiagnosticsReporter,
    parse_ss_output,
)
from k3sfw.services.policy import load_policy, parse_policy

from conftest import scenario_policy_data


SS_OUTPUT = """\
tcp   LISTEN 0      4096       0.0.0.0:6443        0.0.0.0:*
tcp   LISTEN 0      4096     127.0.0.1:10250       0.0.0.0:*
tcp   LISTEN 0      4096          [::]:10256          [::]:*
udp   UNCONN 0      0          0.0.0.0:8472        0.0.0.0:*
"""

EXAMPLE_POLICY = Path(__file__).resolve().parents[2] / "examples" / "k3s-control-plane.yaml"

EXAMPLE_SS_OUTPUT = SS_OUTPUT + """\
tcp   LISTEN 0      128        0.0.0.0:22          0.0.0.0:*
tcp   LISTEN 0      4096             *:80                *:*
tcp   LISTEN 0      4096             *:443               *:*
"""


def _host(tmp_path, modules=REQUIRED_MODULES, sysctls=None):
    """Create a fake /proc under tmp_path."""
    root = tmp_path / "host"
    proc = root / "proc"
    proc.mkdir(parents=True)
    (proc / "modules").write_text(
        "".join(f"{name} 16384 0 - Live 0x0000000000000000\n" for name in modules)
    )
    values = {name: "1" for name in REQUIRED_SYSCTLS}
    values.update(sysctls or {})
    for name, value in values.items():
        if value is None:
            continue
        path = proc / "sys" / name.replace(".", "/")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{value}\n")
    return root


@pytest.fixture
def reporter(engine, tmp_path):
    def build(**host):
        return DiagnosticsReporter(
            engine.ctx, engine.executor, engine.reader, host_root=_host(tmp_path, **host),
        )
    return build


class TestParseSs:
    def test_parse(self):
        """Should extract protocol and port for IPv4 and IPv6 sockets."""
        assert parse_ss_output(SS_OUTPUT) == {
            ("tcp", 6443), ("tcp", 10250), ("tcp", 10256), ("udp", 8472),
        }

    def test_ignores_other_netids(self):
        """Should skip unix sockets and short lines."""
        output = "u_str LISTEN 0 4096 /run/k3s.sock 123 * 0\ngarbage\n"
        assert parse_ss_output(output) == set()


class TestDiagnose:
    """Tests for ranked findings."""

    def test_healthy_node(self, engine, reporter, scenario_policy):
        """Should report nothing for a node running the applied policy."""
        engine.kernel.load(compile_policy(scenario_policy).to_nft_commands())
        engine.kernel.ss_output = SS_OUTPUT

        report = reporter().diagnose(scenario_policy)

        assert report.ok
        assert report.root_cause is None
        assert report.table_present
        assert all(report.modules.values())

    def test_missing_module_ranks_first(self, engine, reporter, scenario_policy):
        """A missing kernel module outranks every other finding."""
        engine.kernel.ss_output = ""

        report = reporter(
            modules=[m for m in REQUIRED_MODULES if m != "br_netfilter"],
            sysctls={"net.ipv4.ip_forward": "0"},
        ).diagnose(scenario_policy)

        assert report.root_cause.category == "module"
        assert report.root_cause.subject == "br_netfilter"
        ranks = [f.rank for f in report.findings]
        assert ranks == sorted(ranks)

    def test_sysctl_not_set(self, engine, reporter, scenario_policy):
        """Should flag sysctls that are 0 or unavailable."""
        engine.kernel.load(compile_policy(scenario_policy).to_nft_commands())
        engine.kernel.ss_output = SS_OUTPUT

        report = reporter(sysctls={
            "net.ipv4.ip_forward": "0",
            "net.bridge.bridge-nf-call-iptables": None,
        }).diagnose(scenario_policy)

        subjects = {f.subject: f for f in report.findings if f.category == "sysctl"}
        assert subjects["net.ipv4.ip_forward"].message == "expected 1, found 0"
        assert "unavailable" in subjects["net.bridge.bridge-nf-call-iptables"].message
        assert report.root_cause.rank == 2

    def test_table_absent(self, engine, reporter, scenario_policy):
        """Should report the absent managed table."""
        engine.kernel.ss_output = SS_OUTPUT

        report = reporter().diagnose(scenario_policy)

        assert not report.table_present
        assert report.root_cause.category == "table"

    def test_nftables_unreadable(self, engine, reporter, scenario_policy):
        """An unreachable nftables is ranked with missing modules."""
        engine.kernel.unreachable = True

        report = reporter().diagnose(scenario_policy)

        assert report.root_cause.category == "nftables"
        assert report.root_cause.rank == 1

    def test_port_not_allowed(self, engine, reporter):
        """A required port falling through to the default drop is rank 3."""
        applied = parse_policy(scenario_policy_data(control_plane_ports=["tcp/10250"]))
        engine.kernel.load(compile_policy(applied).to_nft_commands())
        engine.kernel.ss_output = SS_OUTPUT

        report = reporter().diagnose(parse_policy(scenario_policy_data()))

        port_findings = [f for f in report.findings if f.category == "port"]
        assert {f.subject for f in port_findings} == {
            "requirement:api-server tcp/6443", "control-plane tcp/6443",
        }
        assert all(f.rank == 3 for f in port_findings)
        assert report.root_cause.category == "port"

    def test_explicit_drop(self, engine, reporter):
        """A required port hit by a drop clause is rank 4."""
        data = scenario_policy_data()
        data["port_sets"]["blocked"] = {"ports": ["tcp/6443"]}
        data["chains"]["input"]["rules"].insert(
            2, {"kind": "admin", "port_set": "blocked", "action": "drop"}
        )
        policy = parse_policy(data)
        engine.kernel.load(compile_policy(policy).to_nft_commands())
        engine.kernel.ss_output = SS_OUTPUT

        report = reporter().diagnose(policy)

        drops = [f for f in report.findings if f.rank == 4]
        assert drops
        assert "explicit rule" in drops[0].message

    def test_not_listening(self, engine, reporter, scenario_policy):
        """A required TCP port without a listener is rank 5."""
        engine.kernel.load(compile_policy(scenario_policy).to_nft_commands())
        engine.kernel.ss_output = "tcp LISTEN 0 4096 0.0.0.0:6443 0.0.0.0:*\n"

        report = reporter().diagnose(scenario_policy)

        assert {f.subject for f in report.findings} == {
            "requirement:kubelet tcp/10250", "control-plane tcp/10250",
        }
        assert all(f.rank == 5 for f in report.findings)

    def test_drift(self, engine, reporter, scenario_policy):
        """A live table compiled from another policy is reported as drift."""
        data = scenario_policy_data()
        data["port_sets"]["web"] = {"ports": ["tcp/443"]}
        data["chains"]["input"]["rules"].append({"kind": "service", "port_set": "web"})
        engine.kernel.load(compile_policy(parse_policy(data)).to_nft_commands())
        engine.kernel.ss_output = SS_OUTPUT

        report = reporter().diagnose(scenario_policy)

        assert [f.category for f in report.findings] == ["drift"]
        assert report.root_cause.subject == "input"
        assert report.root_cause.rank == 6

    def test_requirement_probed_from_its_cidr_set(self, engine, reporter):
        """A requirement with probe_from is sourced from that set, like verify."""
        data = scenario_policy_data()
        data["cidr_sets"]["lan"] = {"cidrs": ["10.0.0.0/24"]}
        data["port_sets"]["flannel"] = {"ports": ["udp/8472"]}
        data["chains"]["input"]["rules"].append(
            {"kind": "overlay", "port_set": "flannel", "cidr_set": "lan"}
        )
        data["requirements"] = ["api-server", "kubelet", {"name": "overlay", "probe_from": "lan"}]
        policy = parse_policy(data)
        engine.kernel.load(compile_policy(policy).to_nft_commands())
        engine.kernel.ss_output = SS_OUTPUT

        report = reporter().diagnose(policy)

        assert [f for f in report.findings if f.category == "port"] == []
        assert report.ok

    def test_range_checked_at_both_ends(self, engine, reporter):
        """A reachable range is reported when its last port is not admitted."""
        data = scenario_policy_data()
        data["port_sets"]["node-ports"] = {"ports": ["tcp/30000-31000"], "reachable": True}
        data["chains"]["input"]["rules"].append({"kind": "node-port", "port_set": "node-ports"})
        engine.kernel.load(compile_policy(parse_policy(data)).to_nft_commands())
        engine.kernel.ss_output = SS_OUTPUT

        data["port_sets"]["node-ports"]["ports"] = ["tcp/30000-32767"]
        report = reporter().diagnose(parse_policy(data))

        port_findings = [f for f in report.findings if f.category == "port"]
        assert [f.subject for f in port_findings] == ["node-ports tcp/30000-32767"]
        assert port_findings[0].rank == 3

    def test_example_policy_on_healthy_node(self, engine, reporter):
        """The shipped example policy, applied on a healthy node, has no findings."""
        policy = load_policy(EXAMPLE_POLICY)
        engine.kernel.load(compile_policy(policy).to_nft_commands())
        engine.kernel.ss_output = EXAMPLE_SS_OUTPUT

        report = reporter().diagnose(policy)

        assert report.findings == []
        assert report.ok

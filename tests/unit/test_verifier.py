"""Unit tests for post-apply verification."""

import pytest
from unittest.mock import MagicMock

from k3sfw.services.compiler import compile_policy
from k3sfw.services.policy import parse_policy
from k3sfw.services.ruleset import LiveTable
from k3sfw.services.verifier import (
    CheckResult,
    Verifier,
    _interface_from_glob,
    failed_checks,
)

from conftest import FakeNftKernel, scenario_policy_data


def _live(policy) -> LiveTable:
    kernel = FakeNftKernel()
    kernel.load(compile_policy(policy).to_nft_commands())
    return LiveTable.from_nft(kernel.list_table("inet", "k3s"), "inet", "k3s")


def _by_name(results: list[CheckResult]) -> dict[str, CheckResult]:
    return {r.name: r for r in results}


class TestVerify:
    """Tests for the rule-evaluation check battery."""

    def test_scenario_passes(self, ctx, scenario_policy):
        """Should pass every check for the compiled scenario policy."""
        results = Verifier(ctx).verify(scenario_policy, _live(scenario_policy))

        assert failed_checks(results) == []
        names = set(_by_name(results))
        assert {
            "reachable:control-plane:tcp/6443",
            "reachable:control-plane:tcp/10250",
            "requirement:api-server",
            "requirement:kubelet",
            "required:control-plane",
            "nat:0:forward",
            "nat:0:masquerade",
            "policy:input",
            "policy:forward",
            "policy:output",
        } <= names

    def test_empty_required_set_fails(self, ctx):
        """An empty set required for the role should fail its checks."""
        policy = parse_policy(scenario_policy_data(control_plane_ports=[]))
        results = _by_name(Verifier(ctx).verify(policy, _live(policy)))

        assert not results["required:control-plane"].passed
        assert results["required:control-plane"].observed == "0 port(s)"
        assert not results["requirement:api-server"].passed
        assert "policy of input" in results["requirement:api-server"].observed

    def test_every_check_runs(self, ctx):
        """A failure should not stop later checks."""
        policy = parse_policy(scenario_policy_data(control_plane_ports=[]))
        results = Verifier(ctx).verify(policy, _live(policy))

        assert any(r.name == "policy:output" for r in results)

    def test_range_probes_both_ends(self, ctx):
        """A reachable port range is probed at its first and last port."""
        data = scenario_policy_data()
        data["port_sets"]["node-ports"] = {"ports": ["tcp/30000-32767"], "reachable": True}
        data["chains"]["input"]["rules"].append({"kind": "node-port", "port_set": "node-ports"})
        policy = parse_policy(data)

        results = _by_name(Verifier(ctx).verify(policy, _live(policy)))
        assert results["reachable:node-ports:tcp/30000"].passed
        assert results["reachable:node-ports:tcp/32767"].passed

    def test_probe_from_uses_cidr_set(self, ctx):
        """probe_from sources the probe from the named CIDR set."""
        data = scenario_policy_data()
        data["cidr_sets"]["lan"] = {"cidrs": ["10.0.0.0/24"]}
        data["port_sets"]["flannel"] = {"ports": ["udp/8472"], "reachable": True, "probe_from": "lan"}
        data["chains"]["input"]["rules"].append(
            {"kind": "overlay", "port_set": "flannel", "cidr_set": "lan"}
        )
        policy = parse_policy(data)

        result = _by_name(Verifier(ctx).verify(policy, _live(policy)))["reachable:flannel:udp/8472"]
        assert result.passed
        assert "10.0.0.1" in result.expected

    def test_missing_nat_fails(self, ctx):
        """Without a NAT rule in the live table the masquerade check fails."""
        policy = parse_policy(scenario_policy_data())
        data = scenario_policy_data()
        data["nat"] = []
        live = _live(parse_policy(data))

        results = _by_name(Verifier(ctx).verify(policy, live))
        assert results["nat:0:forward"].passed
        assert not results["nat:0:masquerade"].passed

    def test_absent_table(self, ctx, scenario_policy):
        """An absent table fails the default policy checks."""
        results = _by_name(Verifier(ctx).verify(scenario_policy, None))

        assert results["policy:input"].observed == "missing"
        assert not results["policy:input"].passed
        assert not results["nat:0:masquerade"].passed


class TestSocketProbes:
    """Tests for optional TCP connect probes."""

    def _policy(self, **verification):
        data = scenario_policy_data()
        data["verification"] = {"socket_probes": True, **verification}
        return parse_policy(data)

    def test_connect_targets(self, ctx):
        """Should connect once per TCP requirement and reachable port."""
        connect = MagicMock(return_value=None)
        policy = self._policy()

        results = Verifier(ctx, connect=connect).verify(policy, _live(policy))

        sockets = [r for r in results if r.name.startswith("socket:")]
        assert {r.name for r in sockets} == {
            "socket:api-server",
            "socket:kubelet",
            "socket:control-plane/6443",
            "socket:control-plane/10250",
        }
        assert all(r.passed for r in sockets)
        ports = sorted(call.args[1] for call in connect.call_args_list)
        assert ports == [6443, 6443, 10250, 10250]

    def test_connect_failure(self, ctx):
        """A refused connection fails the socket check."""
        connect = MagicMock(side_effect=lambda host, port, timeout: (
            "Connection refused" if port == 10250 else None
        ))
        policy = self._policy()

        results = _by_name(Verifier(ctx, connect=connect).verify(policy, _live(policy)))
        assert results["socket:api-server"].passed
        assert not results["socket:kubelet"].passed
        assert results["socket:kubelet"].observed == "Connection refused"

    def test_engine_default_timeout(self, ctx):
        """Without a policy timeout the engine default applies."""
        connect = MagicMock(return_value=None)
        policy = self._policy()

        Verifier(ctx, connect=connect, default_timeout=1.5).verify(policy, _live(policy))

        assert {call.args[2] for call in connect.call_args_list} == {1.5}

    def test_policy_timeout_overrides(self, ctx):
        """An explicit policy timeout beats the engine default."""
        connect = MagicMock(return_value=None)
        policy = self._policy(timeout=0.5)

        Verifier(ctx, connect=connect, default_timeout=1.5).verify(policy, _live(policy))

        assert {call.args[2] for call in connect.call_args_list} == {0.5}

    def test_disabled_by_default(self, ctx, scenario_policy):
        """No sockets are opened unless the policy enables them."""
        connect = MagicMock()
        Verifier(ctx, connect=connect).verify(scenario_policy, _live(scenario_policy))
        connect.assert_not_called()


@pytest.mark.parametrize("pattern,expected", [
    ("cni*", "cni0"),
    ("flannel.?", "flannel.0"),
    ("eth0", "eth0"),
])
def test_interface_from_glob(pattern, expected):
    assert _interface_from_glob(pattern) == expected

"""Post-apply verification.

The check battery is derived mechanically from the policy, so coverage
grows with the policy. Every check runs; a single failure is enough for
the applier to roll back. Rule-evaluation probes are pure reads of the
live table; optional socket probes connect with a bounded timeout.
"""

import concurrent.futures
import ipaddress
import socket
from dataclasses import dataclass
from typing import Callable, Optional

from k3sfw.core.context import ExecutionContext
from k3sfw.services.policy import Policy, PortSpec
from k3sfw.services.ruleset import LiveTable, Packet, Verdict


NAT_PROBE_DESTINATION_V4 = "198.51.100.10"
NAT_PROBE_DESTINATION_V6 = "2001:db8::10"
NAT_PROBE_PORT = 443
DEFAULT_CLUSTER_INTERFACE = "cni0"
MAX_SOCKET_WORKERS = 8


@dataclass
class CheckResult:
    """Outcome of one verification check."""
    name: str
    expected: str
    observed: str
    passed: bool

    def __str__(self) -> str:
        mark = "PASS" if self.passed else "FAIL"
        return f"[{mark}] {self.name}: expected {self.expected}, observed {self.observed}"


def _interface_from_glob(pattern: str) -> str:
    """A concrete interface name matching a glob (cni* -> cni0)."""
    name = pattern.replace("*", "0").replace("?", "0")
    return name.replace("[", "").replace("]", "")


def probe_source(policy: Policy, probe_from: Optional[str] = None) -> str:
    """Source address for a synthetic packet: first host of probe_from, else the probe source."""
    if probe_from:
        host = policy.cidr_sets[probe_from].first_host()
        if host:
            return host
    return policy.verification.probe_source


def probe_destination(policy: Policy, source: str) -> str:
    """Target address in the same family as source."""
    target = policy.verification.target_address
    if ipaddress.ip_address(target).version == ipaddress.ip_address(source).version:
        return target
    return "::1" if ipaddress.ip_address(source).version == 6 else "127.0.0.1"


def probe_ports(spec: PortSpec) -> list[int]:
    """Ports to probe for one entry; a range is probed at both ends."""
    return [spec.first, spec.last] if spec.is_range else [spec.first]


def input_packet(policy: Policy, protocol: str, port: int, source: str) -> Packet:
    """A new connection arriving on the input hook."""
    return Packet(
        saddr=source,
        daddr=probe_destination(policy, source),
        protocol=protocol,
        dport=port,
        iifname=policy.verification.egress_interface,
    )


def tcp_connect(host: str, port: int, timeout: float) -> Optional[str]:
    """Try a TCP connect; return None on success or the failure reason."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return None
    except socket.timeout:
        return f"timed out after {timeout:g}s"
    except OSError as e:
        return e.strerror or str(e)


class Verifier:
    """Runs the check battery for one policy against the live table."""

    def __init__(
        self,
        ctx: ExecutionContext,
        *,
        connect: Callable[[str, int, float], Optional[str]] = tcp_connect,
        default_timeout: float = 3.0,
    ) -> None:
        self.ctx = ctx
        self._connect = connect
        self.default_timeout = default_timeout

    def verify(self, policy: Policy, live: Optional[LiveTable]) -> list[CheckResult]:
        """Run every check; never short-circuits."""
        results: list[CheckResult] = []
        results.extend(self._reachability_checks(policy, live))
        results.extend(self._requirement_checks(policy, live))
        results.extend(self._required_set_checks(policy))
        results.extend(self._nat_checks(policy, live))
        results.extend(self._policy_checks(policy, live))
        if policy.verification.socket_probes:
            results.extend(self._socket_checks(policy))

        for result in results:
            if result.passed:
                self.ctx.console.verbose(str(result))
            else:
                self.ctx.console.debug(str(result))
        return results

    # =====================================================================
    # Rule-evaluation probes
    # =====================================================================

    def _input_probe(
        self,
        name: str,
        policy: Policy,
        live: Optional[LiveTable],
        protocol: str,
        port: int,
        source: str,
    ) -> CheckResult:
        packet = input_packet(policy, protocol, port, source)
        verdict = _evaluate(live, packet, "input")
        return CheckResult(
            name=name,
            expected=f"accept for new {packet.describe()}",
            observed=verdict.describe(),
            passed=verdict.action == "accept",
        )

    def _reachability_checks(self, policy: Policy, live: Optional[LiveTable]) -> list[CheckResult]:
        results = []
        for set_name in sorted(policy.port_sets):
            port_set = policy.port_sets[set_name]
            if not port_set.reachable:
                continue
            source = probe_source(policy, port_set.probe_from)
            for spec in sorted(port_set.ports, key=PortSpec.sort_key):
                for port in probe_ports(spec):
                    results.append(self._input_probe(
                        f"reachable:{set_name}:{spec.protocol}/{port}",
                        policy, live, spec.protocol, port, source,
                    ))
        return results

    def _requirement_checks(self, policy: Policy, live: Optional[LiveTable]) -> list[CheckResult]:
        results = []
        for req in policy.effective_requirements():
            source = probe_source(policy, req.probe_from)
            results.append(self._input_probe(
                f"requirement:{req.name}",
                policy, live, req.port.protocol, req.port.first, source,
            ))
        return results

    def _required_set_checks(self, policy: Policy) -> list[CheckResult]:
        results = []
        for set_name in sorted(policy.port_sets):
            port_set = policy.port_sets[set_name]
            if port_set.required_for != policy.role:
                continue
            count = len(port_set.ports)
            results.append(CheckResult(
                name=f"required:{set_name}",
                expected=f"at least one port for role {policy.role}",
                observed=f"{count} port(s)",
                passed=count > 0,
            ))
        return results

    def _nat_checks(self, policy: Policy, live: Optional[LiveTable]) -> list[CheckResult]:
        results = []
        for i, nat in enumerate(policy.nat):
            source = policy.cidr_sets[nat.source].first_host()
            if source is None:
                for stage in ("forward", "masquerade"):
                    results.append(CheckResult(
                        name=f"nat:{i}:{stage}",
                        expected="no check (source set empty)",
                        observed="source set empty",
                        passed=True,
                    ))
                continue

            globs = policy.interface_globs(nat.exclude_interfaces)
            iifname = _interface_from_glob(globs[0]) if globs else DEFAULT_CLUSTER_INTERFACE
            version = ipaddress.ip_address(source).version
            packet = Packet(
                saddr=source,
                daddr=NAT_PROBE_DESTINATION_V4 if version == 4 else NAT_PROBE_DESTINATION_V6,
                protocol="tcp",
                dport=NAT_PROBE_PORT,
                iifname=iifname,
                oifname=policy.verification.egress_interface,
            )

            forward = _evaluate(live, packet, "forward")
            results.append(CheckResult(
                name=f"nat:{i}:forward",
                expected=f"not dropped in forward for {packet.describe()}",
                observed=forward.describe(),
                passed=forward.action not in ("drop", "reject"),
            ))

            if live is None:
                nat_verdict = Verdict(action="accept", chain="<table absent>")
            else:
                nat_verdict = live.evaluate_nat(packet)
            results.append(CheckResult(
                name=f"nat:{i}:masquerade",
                expected=f"masquerade on {packet.oifname}",
                observed=nat_verdict.describe(),
                passed=nat_verdict.action == "masquerade",
            ))
        return results

    def _policy_checks(self, policy: Policy, live: Optional[LiveTable]) -> list[CheckResult]:
        results = []
        for chain_name, chain_policy in policy.chains.items():
            chain = live.base_chain(chain_name) if live else None
            observed = chain.policy if chain and chain.policy else "missing"
            results.append(CheckResult(
                name=f"policy:{chain_name}",
                expected=chain_policy.policy,
                observed=observed,
                passed=observed == chain_policy.policy,
            ))
        return results

    # =====================================================================
    # Socket probes
    # =====================================================================

    def _socket_targets(self, policy: Policy) -> list[tuple[str, int]]:
        targets: dict[str, int] = {}
        for req in policy.effective_requirements():
            if req.port.protocol == "tcp":
                targets[req.name] = req.port.first
        for set_name in sorted(policy.port_sets):
            port_set = policy.port_sets[set_name]
            if not port_set.reachable:
                continue
            for spec in port_set.by_protocol("tcp"):
                if not spec.is_range:
                    targets[f"{set_name}/{spec.first}"] = spec.first
        return sorted(targets.items())

    def _socket_checks(self, policy: Policy) -> list[CheckResult]:
        host = policy.verification.target_address
        settings = policy.verification
        # an explicit policy timeout beats the engine default
        timeout = settings.timeout if "timeout" in settings.model_fields_set else self.default_timeout
        targets = self._socket_targets(policy)
        if not targets:
            return []

        outcomes: dict[str, Optional[str]] = {}
        workers = min(MAX_SOCKET_WORKERS, len(targets))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:
            future_to_name = {
                pool.submit(self._connect, host, port, timeout): name
                for name, port in targets
            }
            for future in concurrent.futures.as_completed(future_to_name):
                outcomes[future_to_name[future]] = future.result()

        results = []
        for name, port in targets:
            failure = outcomes[name]
            results.append(CheckResult(
                name=f"socket:{name}",
                expected=f"tcp connect to {host}:{port}",
                observed="connected" if failure is None else failure,
                passed=failure is None,
            ))
        return results


def _evaluate(live: Optional[LiveTable], packet: Packet, hook: str) -> Verdict:
    if live is None:
        return Verdict(action="accept", chain="<table absent>")
    return live.evaluate(packet, hook)


def failed_checks(results: list[CheckResult]) -> list[CheckResult]:
    return [r for r in results if not r.passed]

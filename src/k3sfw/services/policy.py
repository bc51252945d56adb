"""Network policy model.

The policy is the operator-authored description of the desired firewall
state: CIDR sets, port sets, interface patterns, chain policies, NAT rules
and the collaborator ports that must stay reachable. It is loaded once per
invocation, validated, linted, and never mutated afterwards.
"""

import ipaddress
import re
from pathlib import Path
from typing import Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from k3sfw.core.exceptions import LintError, MalformedCIDR, ValidationError
from k3sfw.core.output import console


MIN_PORT = 1
MAX_PORT = 65535

Role = Literal["control-plane", "agent"]
Protocol = Literal["tcp", "udp"]
Action = Literal["accept", "drop"]

ClauseKind = Literal[
    "loopback",
    "established",
    "admin",
    "icmp",
    "control-plane",
    "cluster",
    "service",
    "overlay",
    "node-port",
    "interface",
]

# Emission order inside a chain; reordering this changes firewall behaviour.
KIND_PRIORITY: tuple[str, ...] = (
    "loopback",
    "established",
    "admin",
    "icmp",
    "control-plane",
    "cluster",
    "service",
    "overlay",
    "node-port",
    "interface",
)

FAST_PATH_KINDS = frozenset({"loopback", "established"})
PORT_KINDS = frozenset({"admin", "control-plane", "service", "overlay", "node-port"})

# Collaborator ports the orchestrator relies on.
KNOWN_REQUIREMENTS: dict[str, str] = {
    "api-server": "tcp/6443",
    "kubelet": "tcp/10250",
    "overlay": "udp/8472",
    "proxy-health": "tcp/10256",
}

DEFAULT_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "control-plane": ("api-server", "kubelet"),
    "agent": ("kubelet",),
}

_PORT_RE = re.compile(r"^(tcp|udp)/(\d+)(?:-(\d+))?$")
_SET_NAME_RE = re.compile(r"[^a-z0-9_]")


def sanitize_set_name(name: str) -> str:
    """Map a policy name to an nftables-safe identifier."""
    return _SET_NAME_RE.sub("_", name.lower())


class PortSpec(BaseModel):
    """One transport-layer service: a protocol and a port or port range."""

    model_config = {"frozen": True}

    protocol: Protocol
    first: int = Field(ge=MIN_PORT, le=MAX_PORT)
    last: int = Field(ge=MIN_PORT, le=MAX_PORT)

    @model_validator(mode="before")
    @classmethod
    def parse_string(cls, data):
        if isinstance(data, str):
            match = _PORT_RE.match(data.strip().lower())
            if not match:
                raise ValueError(
                    f"Invalid port '{data}', expected 'tcp/6443' or 'udp/30000-32767'"
                )
            proto, first, last = match.groups()
            return {"protocol": proto, "first": int(first), "last": int(last or first)}
        if isinstance(data, dict) and "port" in data:
            data = dict(data)
            port = data.pop("port")
            data.setdefault("first", port)
            data.setdefault("last", port)
        return data

    @model_validator(mode="after")
    def check_order(self) -> "PortSpec":
        if self.first > self.last:
            raise ValueError(f"Port range {self.first}-{self.last} is not ordered")
        return self

    @property
    def is_range(self) -> bool:
        return self.first != self.last

    def sort_key(self) -> tuple[str, int, int]:
        return (self.protocol, self.first, self.last)

    def __str__(self) -> str:
        if self.is_range:
            return f"{self.protocol}/{self.first}-{self.last}"
        return f"{self.protocol}/{self.first}"


class CIDRSet(BaseModel):
    """Named collection of IPv4/IPv6 prefixes with union semantics."""

    cidrs: list[str] = Field(default_factory=list)
    cluster_networks: bool = False

    @model_validator(mode="before")
    @classmethod
    def accept_plain_list(cls, data):
        if isinstance(data, list):
            return {"cidrs": data}
        return data

    @property
    def networks(self) -> list[Union[ipaddress.IPv4Network, ipaddress.IPv6Network]]:
        """Parsed prefixes, host bits cleared."""
        return [ipaddress.ip_network(c.strip(), strict=False) for c in self.cidrs]

    def collapsed(self, version: int) -> list[Union[ipaddress.IPv4Network, ipaddress.IPv6Network]]:
        """Non-overlapping, sorted prefixes of one address family."""
        nets = [n for n in self.networks if n.version == version]
        return sorted(ipaddress.collapse_addresses(nets))

    def first_host(self) -> Optional[str]:
        """First usable address of the first prefix, used as a probe source."""
        nets = self.networks
        if not nets:
            return None
        net = nets[0]
        if net.num_addresses == 1:
            return str(net.network_address)
        return str(net.network_address + 1)


class PortSet(BaseModel):
    """Named collection of port specs plus reachability flags."""

    ports: list[PortSpec] = Field(default_factory=list)
    reachable: bool = False
    required_for: Optional[Role] = None
    probe_from: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def accept_plain_list(cls, data):
        if isinstance(data, list):
            return {"ports": data}
        return data

    def by_protocol(self, protocol: str) -> list[PortSpec]:
        return sorted(
            (p for p in self.ports if p.protocol == protocol),
            key=PortSpec.sort_key,
        )


class Clause(BaseModel):
    """One allow/deny clause inside a chain policy."""

    kind: ClauseKind
    action: Action = "accept"
    port_set: Optional[str] = None
    cidr_set: Optional[str] = None
    interfaces: Optional[str] = None
    direction: Literal["source", "destination", "both"] = "source"
    interface_direction: Literal["in", "out", "both"] = "in"
    comment: Optional[str] = None

    @property
    def priority(self) -> int:
        return KIND_PRIORITY.index(self.kind)

    def describe(self) -> str:
        parts = [self.kind, self.action]
        if self.port_set:
            parts.append(f"ports={self.port_set}")
        if self.cidr_set:
            parts.append(f"cidrs={self.cidr_set}")
        if self.interfaces:
            parts.append(f"interfaces={self.interfaces}")
        return " ".join(parts)


class ChainPolicy(BaseModel):
    """Default action plus ordered clauses for one hook."""

    policy: Action = "drop"
    rules: list[Clause] = Field(default_factory=list)


class Chains(BaseModel):
    input: ChainPolicy = Field(default_factory=ChainPolicy)
    forward: ChainPolicy = Field(default_factory=ChainPolicy)
    output: ChainPolicy = Field(default_factory=lambda: ChainPolicy(policy="accept"))

    @field_validator("input", "forward")
    @classmethod
    def must_default_drop(cls, v: ChainPolicy) -> ChainPolicy:
        if v.policy != "drop":
            raise ValueError("input and forward chains must default to drop")
        return v

    def items(self) -> list[tuple[str, ChainPolicy]]:
        return [("input", self.input), ("forward", self.forward), ("output", self.output)]


class NatRule(BaseModel):
    """Masquerade traffic from a cluster source set leaving non-cluster interfaces."""

    source: str
    exclude_interfaces: list[str] = Field(default_factory=list)
    action: Literal["masquerade"] = "masquerade"


class Requirement(BaseModel):
    """A collaborator port that must stay reachable on the input hook."""

    name: str
    port: PortSpec
    probe_from: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def expand_known(cls, data):
        if isinstance(data, str):
            if data not in KNOWN_REQUIREMENTS:
                raise ValueError(
                    f"Unknown requirement '{data}', "
                    f"expected one of: {', '.join(sorted(KNOWN_REQUIREMENTS))}"
                )
            return {"name": data, "port": KNOWN_REQUIREMENTS[data]}
        if isinstance(data, dict) and "port" not in data and data.get("name") in KNOWN_REQUIREMENTS:
            return {**data, "port": KNOWN_REQUIREMENTS[data["name"]]}
        return data

    @field_validator("port")
    @classmethod
    def single_port(cls, v: PortSpec) -> PortSpec:
        if v.is_range:
            raise ValueError("A requirement names a single port, not a range")
        return v


class VerificationSettings(BaseModel):
    """Inputs for the post-apply check battery."""

    probe_source: str = "192.0.2.10"
    egress_interface: str = "eth0"
    socket_probes: bool = False
    target_address: str = "127.0.0.1"
    timeout: float = Field(default=3.0, gt=0, le=60)

    @field_validator("probe_source", "target_address")
    @classmethod
    def must_be_address(cls, v: str) -> str:
        try:
            ipaddress.ip_address(v)
        except ValueError as e:
            raise ValueError(f"'{v}' is not an IP address") from e
        return v


class Policy(BaseModel):
    """Root of a network policy document."""

    role: Role = "control-plane"
    cidr_sets: dict[str, CIDRSet] = Field(default_factory=dict)
    port_sets: dict[str, PortSet] = Field(default_factory=dict)
    interface_patterns: dict[str, list[str]] = Field(default_factory=dict)
    chains: Chains = Field(default_factory=Chains)
    nat: list[NatRule] = Field(default_factory=list)
    requirements: Optional[list[Requirement]] = None
    verification: VerificationSettings = Field(default_factory=VerificationSettings)

    @field_validator("interface_patterns")
    @classmethod
    def patterns_not_empty(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        for name, patterns in v.items():
            if not patterns:
                raise ValueError(f"Interface pattern '{name}' is empty")
            if any(not p or not p.strip() for p in patterns):
                raise ValueError(f"Interface pattern '{name}' contains an empty entry")
        return v

    @model_validator(mode="after")
    def check_references(self) -> "Policy":
        # Raised directly (not as ValueError) so the caller sees the
        # CIDR-specific exception type.
        for set_name, cidr_set in self.cidr_sets.items():
            for entry in cidr_set.cidrs:
                try:
                    ipaddress.ip_network(entry.strip(), strict=False)
                except ValueError:
                    raise MalformedCIDR(entry, field=f"cidr_sets.{set_name}.cidrs")

        flagged = [n for n, s in self.cidr_sets.items() if s.cluster_networks]
        if len(flagged) > 1:
            raise ValidationError(
                "Only one CIDR set may be marked cluster_networks",
                field="cidr_sets",
                details=[f"Marked: {', '.join(flagged)}"],
            )

        _check_unique_names("cidr_sets", self.cidr_sets)
        _check_unique_names("port_sets", self.port_sets)

        for chain_name, chain in self.chains.items():
            for i, clause in enumerate(chain.rules):
                self._check_clause(f"chains.{chain_name}.rules.{i}", chain_name, clause)

        for i, rule in enumerate(self.nat):
            field = f"nat.{i}"
            self._require_ref(self.cidr_sets, rule.source, f"{field}.source", "CIDR set")
            for j, name in enumerate(rule.exclude_interfaces):
                self._require_ref(
                    self.interface_patterns, name,
                    f"{field}.exclude_interfaces.{j}", "interface pattern",
                )

        for name, port_set in self.port_sets.items():
            if port_set.probe_from:
                self._require_ref(
                    self.cidr_sets, port_set.probe_from,
                    f"port_sets.{name}.probe_from", "CIDR set",
                )
        for i, req in enumerate(self.requirements or []):
            if req.probe_from:
                self._require_ref(
                    self.cidr_sets, req.probe_from,
                    f"requirements.{i}.probe_from", "CIDR set",
                )
        return self

    def _check_clause(self, field: str, chain_name: str, clause: Clause) -> None:
        if clause.port_set:
            self._require_ref(self.port_sets, clause.port_set, f"{field}.port_set", "port set")
        if clause.cidr_set:
            self._require_ref(self.cidr_sets, clause.cidr_set, f"{field}.cidr_set", "CIDR set")
        if clause.interfaces:
            self._require_ref(
                self.interface_patterns, clause.interfaces,
                f"{field}.interfaces", "interface pattern",
            )

        if clause.kind in FAST_PATH_KINDS and clause.action != "accept":
            raise ValidationError(
                f"'{clause.kind}' clauses are part of the fast path and must accept",
                field=f"{field}.action",
            )
        if clause.kind == "loopback" and chain_name != "input":
            raise ValidationError(
                "'loopback' clauses are only valid in the input chain",
                field=f"{field}.kind",
            )
        if clause.kind in PORT_KINDS and not clause.port_set:
            raise ValidationError(
                f"'{clause.kind}' clause needs a port_set",
                field=f"{field}.port_set",
            )
        if clause.kind == "cluster" and not clause.cidr_set:
            raise ValidationError(
                "'cluster' clause needs a cidr_set",
                field=f"{field}.cidr_set",
            )
        if clause.kind == "interface" and not clause.interfaces:
            raise ValidationError(
                "'interface' clause needs interfaces",
                field=f"{field}.interfaces",
            )
        if clause.interfaces:
            hook_lacks = {"input": "out", "output": "in"}.get(chain_name)
            if hook_lacks and clause.interface_direction in (hook_lacks, "both"):
                missing = "output" if hook_lacks == "out" else "input"
                raise ValidationError(
                    f"The {chain_name} hook has no {missing} interface; "
                    f"interface_direction '{clause.interface_direction}' cannot match there",
                    field=f"{field}.interface_direction",
                )

    @staticmethod
    def _require_ref(table: dict, name: str, field: str, what: str) -> None:
        if name not in table:
            known = ", ".join(sorted(table)) or "none defined"
            raise ValidationError(
                f"Unknown {what} '{name}'",
                field=field,
                hint=f"Defined: {known}",
            )

    @property
    def cluster_networks(self) -> Optional[str]:
        """Name of the CIDR set marked cluster_networks, if any."""
        for name, cidr_set in self.cidr_sets.items():
            if cidr_set.cluster_networks:
                return name
        return None

    def effective_requirements(self) -> list[Requirement]:
        """Declared requirements, or the role defaults when omitted."""
        if self.requirements is not None:
            return list(self.requirements)
        return [Requirement.model_validate(n) for n in DEFAULT_REQUIREMENTS[self.role]]

    def interface_globs(self, names: list[str]) -> list[str]:
        """Patterns of the named interface groups, de-duplicated in order."""
        seen: list[str] = []
        for name in names:
            for pattern in self.interface_patterns[name]:
                if pattern not in seen:
                    seen.append(pattern)
        return seen


def _check_unique_names(field: str, named: dict) -> None:
    seen: dict[str, str] = {}
    for name in named:
        key = sanitize_set_name(name)
        if key in seen:
            raise ValidationError(
                f"Names '{seen[key]}' and '{name}' map to the same set name '{key}'",
                field=field,
            )
        seen[key] = name


def lint_policy(policy: Policy) -> list[str]:
    """Return warnings for policies that are valid but likely to break the cluster."""
    warnings: list[str] = []

    cluster = policy.cluster_networks
    if cluster is None:
        warnings.append("No CIDR set is marked cluster_networks")
    else:
        for chain_name in ("input", "forward"):
            chain = getattr(policy.chains, chain_name)
            if not any(
                c.action == "accept" and c.cidr_set == cluster for c in chain.rules
            ):
                warnings.append(
                    f"Chain '{chain_name}' has no accept clause for cluster networks "
                    f"'{cluster}'; pod and service traffic will be dropped"
                )

    for name, port_set in policy.port_sets.items():
        if port_set.required_for == policy.role and not port_set.ports:
            warnings.append(
                f"Port set '{name}' is required for role '{policy.role}' but is empty"
            )

    return warnings


def _format_loc(loc: tuple) -> str:
    return ".".join(str(part) for part in loc)


def parse_policy(data: dict, *, strict: bool = False, source: str = "<policy>") -> Policy:
    """Validate a policy mapping.

    Args:
        data: Parsed policy document
        strict: Promote lint warnings to a LintError
        source: Where the document came from (for messages)

    Returns:
        Validated policy

    Raises:
        ValidationError: On the first invalid field
        MalformedCIDR: When a CIDR entry does not parse
        LintError: When strict and lint produced warnings
    """
    if not isinstance(data, dict):
        raise ValidationError(f"Policy document must be a mapping: {source}")

    try:
        policy = Policy.model_validate(data)
    except PydanticValidationError as e:
        errors = e.errors()
        first = errors[0]
        field = _format_loc(first["loc"])
        raise ValidationError(
            f"Invalid policy field '{field}': {first['msg']}",
            field=field,
            details=[f"{_format_loc(err['loc'])}: {err['msg']}" for err in errors],
        ) from e

    warnings = lint_policy(policy)
    if warnings and strict:
        raise LintError(warnings)
    for warning in warnings:
        console.warn(warning)

    return policy


def load_policy(path: Path, *, strict: bool = False) -> Policy:
    """Load and validate a policy document from YAML."""
    if not path.exists():
        raise ValidationError(f"Policy file not found: {path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValidationError(
            f"Invalid YAML in policy file: {path}",
            details=[str(e)],
        ) from e
    except OSError as e:
        raise ValidationError(
            f"Cannot read policy file: {path}",
            details=[str(e)],
        ) from e

    return parse_policy(data, strict=strict, source=str(path))

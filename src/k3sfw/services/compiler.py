"""Rule compiler: policy model to a complete nftables table.

The compiler is a pure function. It emits named sets first, then the
filter chains with the fast path and clauses in fixed kind priority, then
the NAT postrouting chain. Identical policies produce byte-identical
output; the generation number is left at 0 and assigned by the applier.
"""

import hashlib
import json
from dataclasses import dataclass, replace
from typing import Any, Optional

from k3sfw.services.policy import (
    FAST_PATH_KINDS,
    KIND_PRIORITY,
    CIDRSet,
    Clause,
    Policy,
    PortSet,
    sanitize_set_name,
)


DEFAULT_TABLE = "k3s"
FAMILY = "inet"
JSON_SCHEMA_VERSION = 1
MAX_COMMENT_LENGTH = 128

NAT_CHAIN = "postrouting"
NAT_PRIORITY = 100  # srcnat


@dataclass(frozen=True)
class SetDef:
    """A named set in the managed table."""
    name: str
    type: str
    elements: tuple
    flags: tuple[str, ...] = ("interval",)

    def to_nft(self, table: str) -> dict[str, Any]:
        return {
            "set": {
                "family": FAMILY,
                "table": table,
                "name": self.name,
                "type": self.type,
                "flags": list(self.flags),
                "elem": list(self.elements),
            }
        }


@dataclass(frozen=True)
class RuleDef:
    """One rule: a list of nftables JSON expressions ending in a verdict."""
    expr: tuple
    comment: Optional[str] = None

    def to_nft(self, table: str, chain: str) -> dict[str, Any]:
        rule: dict[str, Any] = {
            "family": FAMILY,
            "table": table,
            "chain": chain,
            "expr": list(self.expr),
        }
        if self.comment:
            rule["comment"] = self.comment
        return {"rule": rule}


@dataclass(frozen=True)
class ChainDef:
    """A base chain with its ordered rules."""
    name: str
    type: str
    hook: str
    priority: int
    policy: str
    rules: tuple[RuleDef, ...] = ()

    def to_nft(self, table: str) -> dict[str, Any]:
        return {
            "chain": {
                "family": FAMILY,
                "table": table,
                "name": self.name,
                "type": self.type,
                "hook": self.hook,
                "prio": self.priority,
                "policy": self.policy,
            }
        }


@dataclass(frozen=True)
class CompiledRuleSet:
    """Fully resolved, self-contained rule set for the managed table."""
    table: str
    sets: tuple[SetDef, ...]
    chains: tuple[ChainDef, ...]
    generation: int = 0

    def to_nft_commands(self) -> dict[str, Any]:
        """libnftables JSON batch replacing the managed table in one transaction.

        The table is added then deleted so the delete never fails on a
        missing table, then recreated with its full contents.
        """
        table_obj = {"table": {"family": FAMILY, "name": self.table}}
        commands: list[dict[str, Any]] = [
            {"metainfo": {"json_schema_version": JSON_SCHEMA_VERSION}},
            {"add": table_obj},
            {"delete": table_obj},
            {"add": table_obj},
        ]
        for set_def in self.sets:
            commands.append({"add": set_def.to_nft(self.table)})
        for chain in self.chains:
            commands.append({"add": chain.to_nft(self.table)})
        for chain in self.chains:
            for rule in chain.rules:
                commands.append({"add": rule.to_nft(self.table, chain.name)})
        return {"nftables": commands}

    def render_json(self) -> str:
        """Canonical JSON rendering; identical input gives identical bytes."""
        return json.dumps(self.to_nft_commands(), sort_keys=True, indent=2) + "\n"

    @property
    def digest(self) -> str:
        """SHA-256 of the canonical rendering (generation excluded)."""
        return hashlib.sha256(self.render_json().encode()).hexdigest()

    def with_generation(self, generation: int) -> "CompiledRuleSet":
        return replace(self, generation=generation)

    def chain(self, name: str) -> Optional[ChainDef]:
        for chain in self.chains:
            if chain.name == name:
                return chain
        return None

    @property
    def rule_count(self) -> int:
        return sum(len(c.rules) for c in self.chains)

    def render_nft(self) -> str:
        """nft script rendering for inspection."""
        lines = [f"table {FAMILY} {self.table} {{"]
        for set_def in self.sets:
            lines.append(f"\tset {set_def.name} {{")
            lines.append(f"\t\ttype {set_def.type}")
            if set_def.flags:
                lines.append(f"\t\tflags {', '.join(set_def.flags)}")
            elements = ", ".join(_value_text(e) for e in set_def.elements)
            lines.append(f"\t\telements = {{ {elements} }}")
            lines.append("\t}")
        for chain in self.chains:
            lines.append(f"\tchain {chain.name} {{")
            lines.append(
                f"\t\ttype {chain.type} hook {chain.hook} priority {chain.priority}; "
                f"policy {chain.policy};"
            )
            for rule in chain.rules:
                text = " ".join(_expr_text(e) for e in rule.expr)
                if rule.comment:
                    text += f' comment "{rule.comment}"'
                lines.append(f"\t\t{text}")
            lines.append("\t}")
        lines.append("}")
        return "\n".join(lines) + "\n"


# =========================================================================
# Expression builders (libnftables JSON)
# =========================================================================


def _match(left: dict[str, Any], right: Any, op: str = "==") -> dict[str, Any]:
    return {"match": {"op": op, "left": left, "right": right}}


def _meta(key: str) -> dict[str, Any]:
    return {"meta": {"key": key}}


def _payload(protocol: str, field_name: str) -> dict[str, Any]:
    return {"payload": {"protocol": protocol, "field": field_name}}


def _verdict(action: str) -> dict[str, Any]:
    return {action: None}


def _names(values: list[str]) -> Any:
    if len(values) == 1:
        return values[0]
    return {"set": list(values)}


def _fast_path(chain_name: str) -> list[RuleDef]:
    rules = []
    if chain_name == "input":
        rules.append(RuleDef(
            expr=(_match(_meta("iif"), "lo"), _verdict("accept")),
            comment="loopback",
        ))
    rules.append(RuleDef(
        expr=(
            _match({"ct": {"key": "state"}}, ["established", "related"], op="in"),
            _verdict("accept"),
        ),
        comment="established",
    ))
    rules.append(RuleDef(
        expr=(_match({"ct": {"key": "state"}}, "invalid", op="in"), _verdict("drop")),
        comment="invalid",
    ))
    return rules


def _sanitize_comment(text: str) -> str:
    text = "".join(c if c.isprintable() and c != '"' else " " for c in text).strip()
    return text[:MAX_COMMENT_LENGTH]


def _comment(clause: Clause) -> str:
    return _sanitize_comment(clause.comment or clause.describe())


# =========================================================================
# Compiler
# =========================================================================


class RuleCompiler:
    """Compiles one policy into a CompiledRuleSet."""

    def __init__(self, policy: Policy, table: str = DEFAULT_TABLE) -> None:
        self.policy = policy
        self.table = table
        self._sets: dict[str, SetDef] = {}

    def compile(self) -> CompiledRuleSet:
        self._sets = {}
        for name in sorted(self.policy.cidr_sets):
            self._add_cidr_sets(name, self.policy.cidr_sets[name])
        for name in sorted(self.policy.port_sets):
            self._add_port_sets(name, self.policy.port_sets[name])

        chains = []
        for chain_name, chain_policy in self.policy.chains.items():
            rules: list[RuleDef] = []
            if chain_name in ("input", "forward"):
                rules.extend(_fast_path(chain_name))
            clauses = sorted(chain_policy.rules, key=lambda c: KIND_PRIORITY.index(c.kind))
            for clause in clauses:
                if clause.kind in FAST_PATH_KINDS:
                    continue
                rules.extend(self._clause_rules(clause))
            chains.append(ChainDef(
                name=chain_name,
                type="filter",
                hook=chain_name,
                priority=0,
                policy=chain_policy.policy,
                rules=tuple(rules),
            ))

        if self.policy.nat:
            chains.append(ChainDef(
                name=NAT_CHAIN,
                type="nat",
                hook="postrouting",
                priority=NAT_PRIORITY,
                policy="accept",
                rules=tuple(self._nat_rules()),
            ))

        return CompiledRuleSet(
            table=self.table,
            sets=tuple(self._sets[n] for n in sorted(self._sets)),
            chains=tuple(chains),
        )

    def _add_cidr_sets(self, name: str, cidr_set: CIDRSet) -> None:
        base = sanitize_set_name(name)
        for version, suffix, set_type in ((4, "v4", "ipv4_addr"), (6, "v6", "ipv6_addr")):
            nets = cidr_set.collapsed(version)
            if not nets:
                continue
            elements = []
            for net in nets:
                if net.num_addresses == 1:
                    elements.append(str(net.network_address))
                else:
                    elements.append(
                        {"prefix": {"addr": str(net.network_address), "len": net.prefixlen}}
                    )
            set_name = f"{base}_{suffix}"
            self._sets[set_name] = SetDef(name=set_name, type=set_type, elements=tuple(elements))

    def _add_port_sets(self, name: str, port_set: PortSet) -> None:
        base = sanitize_set_name(name)
        for protocol in ("tcp", "udp"):
            ranges = _merge_ranges([(p.first, p.last) for p in port_set.by_protocol(protocol)])
            if not ranges:
                continue
            elements = [lo if lo == hi else {"range": [lo, hi]} for lo, hi in ranges]
            set_name = f"{base}_{protocol}"
            self._sets[set_name] = SetDef(
                name=set_name, type="inet_service", elements=tuple(elements),
            )

    def _cidr_matches(self, clause: Clause) -> Optional[list[list[dict[str, Any]]]]:
        """Alternative address matches for a clause; None when the set is empty."""
        if not clause.cidr_set:
            return [[]]
        base = sanitize_set_name(clause.cidr_set)
        fields = {
            "source": ["saddr"],
            "destination": ["daddr"],
            "both": ["saddr", "daddr"],
        }[clause.direction]
        alternatives = []
        for field_name in fields:
            for suffix, proto in (("v4", "ip"), ("v6", "ip6")):
                set_name = f"{base}_{suffix}"
                if set_name in self._sets:
                    alternatives.append([_match(_payload(proto, field_name), f"@{set_name}")])
        return alternatives or None

    def _port_matches(self, clause: Clause) -> Optional[list[list[dict[str, Any]]]]:
        if clause.kind == "icmp":
            return [[_match(_meta("l4proto"), {"set": ["icmp", "ipv6-icmp"]})]]
        if not clause.port_set:
            return [[]]
        base = sanitize_set_name(clause.port_set)
        alternatives = []
        for protocol in ("tcp", "udp"):
            set_name = f"{base}_{protocol}"
            if set_name in self._sets:
                alternatives.append([_match(_payload(protocol, "dport"), f"@{set_name}")])
        return alternatives or None

    def _interface_matches(self, clause: Clause) -> list[list[dict[str, Any]]]:
        if not clause.interfaces:
            return [[]]
        globs = self.policy.interface_globs([clause.interfaces])
        keys = {
            "in": ["iifname"],
            "out": ["oifname"],
            "both": ["iifname", "oifname"],
        }[clause.interface_direction]
        return [[_match(_meta(key), _names(globs))] for key in keys]

    def _clause_rules(self, clause: Clause) -> list[RuleDef]:
        # An empty referenced set matches nothing, so it yields no rules.
        cidr_alts = self._cidr_matches(clause)
        port_alts = self._port_matches(clause)
        if cidr_alts is None or port_alts is None:
            return []

        comment = _comment(clause)
        rules = []
        for iface in self._interface_matches(clause):
            for cidr in cidr_alts:
                for port in port_alts:
                    expr = tuple(iface + cidr + port + [_verdict(clause.action)])
                    rules.append(RuleDef(expr=expr, comment=comment))
        return rules

    def _nat_rules(self) -> list[RuleDef]:
        rules = []
        for i, nat in enumerate(self.policy.nat):
            base = sanitize_set_name(nat.source)
            globs = self.policy.interface_globs(nat.exclude_interfaces)
            for suffix, proto in (("v4", "ip"), ("v6", "ip6")):
                set_name = f"{base}_{suffix}"
                if set_name not in self._sets:
                    continue
                expr = [_match(_payload(proto, "saddr"), f"@{set_name}")]
                if globs:
                    expr.append(_match(_meta("oifname"), _names(globs), op="!="))
                expr.append(_verdict(nat.action))
                comment = _sanitize_comment(f"nat {i} {nat.source}")
                rules.append(RuleDef(expr=tuple(expr), comment=comment))
        return rules


def _merge_ranges(ranges: list[tuple[int, int]]) -> list[tuple[int, int]]:
    """Merge overlapping or adjacent port ranges; interval sets reject overlaps."""
    merged: list[tuple[int, int]] = []
    for lo, hi in sorted(ranges):
        if merged and lo <= merged[-1][1] + 1:
            merged[-1] = (merged[-1][0], max(merged[-1][1], hi))
        else:
            merged.append((lo, hi))
    return merged


def compile_policy(policy: Policy, table: str = DEFAULT_TABLE) -> CompiledRuleSet:
    """Compile a validated policy. Never fails for a validated policy."""
    return RuleCompiler(policy, table=table).compile()


# =========================================================================
# Text rendering
# =========================================================================


def _value_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict):
        if "prefix" in value:
            return f"{value['prefix']['addr']}/{value['prefix']['len']}"
        if "range" in value:
            lo, hi = value["range"]
            return f"{lo}-{hi}"
        if "set" in value:
            return "{ " + ", ".join(_value_text(v) for v in value["set"]) + " }"
    if isinstance(value, list):
        return ",".join(_value_text(v) for v in value)
    return str(value)


def _left_text(left: dict[str, Any]) -> str:
    if "meta" in left:
        key = left["meta"]["key"]
        return key if key in ("iif", "iifname", "oif", "oifname") else f"meta {key}"
    if "payload" in left:
        return f"{left['payload']['protocol']} {left['payload']['field']}"
    if "ct" in left:
        return f"ct {left['ct']['key']}"
    return json.dumps(left, sort_keys=True)


def _expr_text(expr: dict[str, Any]) -> str:
    if "match" in expr:
        m = expr["match"]
        op = "" if m["op"] in ("==", "in") else f"{m['op']} "
        right = m["right"]
        if isinstance(right, str) and m["left"].get("meta", {}).get("key") in (
            "iif", "iifname", "oif", "oifname",
        ):
            text = f'"{right}"'
        elif isinstance(right, dict) and "set" in right and m["left"].get("meta", {}).get("key") in (
            "iifname", "oifname",
        ):
            text = "{ " + ", ".join(f'"{v}"' for v in right["set"]) + " }"
        else:
            text = _value_text(right)
        return f"{_left_text(m['left'])} {op}{text}"
    if len(expr) == 1:
        key = next(iter(expr))
        if expr[key] is None:
            return key
    return json.dumps(expr, sort_keys=True)

"""Live rule set model.

Parses `nft -j list table` output for the managed table and evaluates
synthetic packets against it: rules in order, first terminal verdict
wins, otherwise the chain's default policy. Expressions the evaluator
does not understand never match, so an unknown rule cannot make a
packet look accepted.
"""

import fnmatch
import ipaddress
from dataclasses import dataclass, field
from typing import Any, Optional

from k3sfw.core.exceptions import ValidationError


TERMINAL_VERDICTS = frozenset({"accept", "drop", "reject", "masquerade", "snat", "dnat"})

# Keys nft adds to listed objects that carry no semantics.
VOLATILE_KEYS = frozenset({"handle", "index"})


@dataclass
class Packet:
    """A synthetic packet as seen by one hook."""
    saddr: str
    daddr: str
    protocol: str = "tcp"
    dport: Optional[int] = None
    sport: int = 40000
    iifname: str = ""
    oifname: str = ""
    ct_state: str = "new"

    @property
    def version(self) -> int:
        return ipaddress.ip_address(self.saddr).version

    def describe(self) -> str:
        port = f"/{self.dport}" if self.dport is not None else ""
        return f"{self.protocol}{port} {self.saddr} -> {self.daddr}"


@dataclass
class Verdict:
    """Outcome of evaluating a packet against a chain."""
    action: str
    chain: str
    rule_index: Optional[int] = None
    comment: Optional[str] = None

    @property
    def from_policy(self) -> bool:
        return self.rule_index is None

    def describe(self) -> str:
        if self.from_policy:
            return f"{self.action} (policy of {self.chain})"
        where = f"{self.chain} rule #{self.rule_index}"
        if self.comment:
            where += f" '{self.comment}'"
        return f"{self.action} ({where})"


@dataclass
class LiveRule:
    expr: list[dict[str, Any]]
    comment: Optional[str] = None
    handle: Optional[int] = None

    @property
    def verdict(self) -> Optional[str]:
        for stmt in self.expr:
            for key in stmt:
                if key in TERMINAL_VERDICTS:
                    return key
        return None


@dataclass
class LiveChain:
    name: str
    type: Optional[str] = None
    hook: Optional[str] = None
    priority: Optional[int] = None
    policy: Optional[str] = None
    rules: list[LiveRule] = field(default_factory=list)


@dataclass
class LiveTable:
    """The managed table as currently loaded in the kernel."""
    family: str
    name: str
    sets: dict[str, list[Any]] = field(default_factory=dict)
    chains: dict[str, LiveChain] = field(default_factory=dict)

    @classmethod
    def from_nft(cls, payload: dict[str, Any], family: str, name: str) -> Optional["LiveTable"]:
        """Build from `nft -j` output; None when the table is not present.

        Raises:
            ValidationError: If the payload is not nft JSON
        """
        if not isinstance(payload, dict) or not isinstance(payload.get("nftables"), list):
            raise ValidationError("Not an nftables JSON document")

        table: Optional[LiveTable] = None
        pending_rules: list[dict[str, Any]] = []

        for obj in payload["nftables"]:
            if not isinstance(obj, dict):
                continue
            if "table" in obj:
                t = obj["table"]
                if t.get("family") == family and t.get("name") == name:
                    table = cls(family=family, name=name)
            elif "set" in obj and table is not None:
                s = obj["set"]
                if _owned(s, family, name):
                    table.sets[s["name"]] = [_unwrap_elem(e) for e in s.get("elem", [])]
            elif "chain" in obj and table is not None:
                c = obj["chain"]
                if _owned(c, family, name):
                    table.chains[c["name"]] = LiveChain(
                        name=c["name"],
                        type=c.get("type"),
                        hook=c.get("hook"),
                        priority=c.get("prio"),
                        policy=c.get("policy"),
                    )
            elif "rule" in obj:
                pending_rules.append(obj["rule"])

        if table is None:
            return None

        for r in pending_rules:
            if not _owned(r, family, name):
                continue
            chain = table.chains.get(r.get("chain"))
            if chain is None:
                raise ValidationError(f"Rule references unknown chain '{r.get('chain')}'")
            chain.rules.append(LiveRule(
                expr=list(r.get("expr", [])),
                comment=r.get("comment"),
                handle=r.get("handle"),
            ))
        return table

    def base_chain(self, hook: str, chain_type: str = "filter") -> Optional[LiveChain]:
        candidates = [
            c for c in self.chains.values() if c.hook == hook and c.type == chain_type
        ]
        if not candidates:
            return None
        return sorted(candidates, key=lambda c: (c.priority or 0, c.name))[0]

    def canonical(self) -> dict[str, Any]:
        """Structure with kernel handles removed, for equality checks."""
        return {
            "family": self.family,
            "name": self.name,
            "sets": {n: _strip(v) for n, v in sorted(self.sets.items())},
            "chains": {
                n: {
                    "type": c.type,
                    "hook": c.hook,
                    "priority": c.priority,
                    "policy": c.policy,
                    "rules": [
                        {"expr": _strip(r.expr), "comment": r.comment} for r in c.rules
                    ],
                }
                for n, c in sorted(self.chains.items())
            },
        }

    # =====================================================================
    # Evaluation
    # =====================================================================

    def evaluate(self, packet: Packet, hook: str = "input") -> Verdict:
        """Verdict of the filter base chain on hook for packet.

        A hook without a filter chain in this table accepts.
        """
        chain = self.base_chain(hook)
        if chain is None:
            return Verdict(action="accept", chain=f"<no {hook} chain>")
        verdict = self._run_chain(chain, packet, depth=0)
        if verdict is not None:
            return verdict
        return Verdict(action=chain.policy or "accept", chain=chain.name)

    def evaluate_nat(self, packet: Packet) -> Verdict:
        """Verdict of the postrouting NAT chain; 'accept' means not translated."""
        chain = self.base_chain("postrouting", chain_type="nat")
        if chain is None:
            return Verdict(action="accept", chain="<no postrouting chain>")
        verdict = self._run_chain(chain, packet, depth=0)
        if verdict is not None:
            return verdict
        return Verdict(action=chain.policy or "accept", chain=chain.name)

    def _run_chain(self, chain: LiveChain, packet: Packet, depth: int) -> Optional[Verdict]:
        if depth > 16:
            raise ValidationError(f"Jump depth exceeded in chain '{chain.name}'")
        for i, rule in enumerate(chain.rules):
            if not self._rule_matches(rule, packet):
                continue
            for stmt in rule.expr:
                if "match" in stmt:
                    continue
                key = next(iter(stmt), None)
                if key in TERMINAL_VERDICTS:
                    return Verdict(action=key, chain=chain.name, rule_index=i, comment=rule.comment)
                if key == "return":
                    return None
                if key in ("jump", "goto"):
                    target = self.chains.get(stmt[key].get("target"))
                    if target is None:
                        continue
                    verdict = self._run_chain(target, packet, depth + 1)
                    if verdict is not None or key == "goto":
                        return verdict
        return None

    def _rule_matches(self, rule: LiveRule, packet: Packet) -> bool:
        return all(
            self._match(stmt["match"], packet) for stmt in rule.expr if "match" in stmt
        )

    def _match(self, match: dict[str, Any], packet: Packet) -> bool:
        value = _left_value(match.get("left"), packet)
        if value is None:
            return False
        op = match.get("op", "==")
        hit = self._contains(match.get("right"), value)
        if op in ("==", "in"):
            return hit
        if op == "!=":
            return not hit
        return False

    def _contains(self, right: Any, value: Any) -> bool:
        if isinstance(right, str) and right.startswith("@"):
            elements = self.sets.get(right[1:])
            if elements is None:
                return False
            return any(_element_matches(e, value) for e in elements)
        if isinstance(right, dict) and "set" in right:
            return any(_element_matches(_unwrap_elem(e), value) for e in right["set"])
        if isinstance(right, list):
            return any(_element_matches(e, value) for e in right)
        return _element_matches(right, value)


def _owned(obj: dict[str, Any], family: str, name: str) -> bool:
    return obj.get("family") == family and obj.get("table") == name


def _unwrap_elem(e: Any) -> Any:
    if isinstance(e, dict) and "elem" in e:
        return e["elem"].get("val")
    return e


def _strip(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip(v) for k, v in value.items() if k not in VOLATILE_KEYS}
    if isinstance(value, list):
        return [_strip(v) for v in value]
    return value


def _left_value(left: Any, packet: Packet) -> Any:
    """Value of a match's left-hand side for packet; None if not applicable."""
    if not isinstance(left, dict):
        return None
    if "meta" in left:
        key = left["meta"].get("key")
        if key in ("iif", "iifname"):
            return packet.iifname
        if key in ("oif", "oifname"):
            return packet.oifname
        if key == "l4proto":
            return packet.protocol
        if key == "nfproto":
            return "ipv4" if packet.version == 4 else "ipv6"
        return None
    if "payload" in left:
        proto = left["payload"].get("protocol")
        field_name = left["payload"].get("field")
        if proto in ("ip", "ip6"):
            if (proto == "ip") != (packet.version == 4):
                return None
            if field_name == "saddr":
                return ipaddress.ip_address(packet.saddr)
            if field_name == "daddr":
                return ipaddress.ip_address(packet.daddr)
            return None
        if proto in ("tcp", "udp", "th"):
            if proto != "th" and proto != packet.protocol:
                return None
            if packet.protocol not in ("tcp", "udp"):
                return None
            if field_name == "dport":
                return packet.dport
            if field_name == "sport":
                return packet.sport
        return None
    if "ct" in left:
        if left["ct"].get("key") == "state":
            return packet.ct_state
        return None
    return None


def _element_matches(element: Any, value: Any) -> bool:
    if value is None:
        return False
    if isinstance(element, dict):
        if "prefix" in element:
            if not isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
                return False
            prefix = element["prefix"]
            try:
                net = ipaddress.ip_network(f"{prefix['addr']}/{prefix['len']}", strict=False)
            except ValueError:
                return False
            return net.version == value.version and value in net
        if "range" in element:
            lo, hi = element["range"]
            if isinstance(value, int):
                return int(lo) <= value <= int(hi)
            if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
                try:
                    return ipaddress.ip_address(lo) <= value <= ipaddress.ip_address(hi)
                except (TypeError, ValueError):
                    return False
            return False
        return False
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        try:
            return ipaddress.ip_address(str(element)) == value
        except ValueError:
            return False
    if isinstance(value, int):
        try:
            return int(element) == value
        except (TypeError, ValueError):
            return False
    if isinstance(element, str) and element.endswith("*"):
        return fnmatch.fnmatchcase(str(value), element)
    return str(element) == str(value)

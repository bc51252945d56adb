"""nftables backend.

The only code that invokes the `nft` binary. Reading and writing are
separate capabilities: every component gets an NftReader, only the
applier and the snapshot restore path are handed an NftWriter.
"""

import json
from typing import Any, Optional

from k3sfw.core.context import ExecutionContext
from k3sfw.core.exceptions import ExecutionError
from k3sfw.core.executor import CommandExecutor


DEFAULT_BINARY = "nft"
DEFAULT_FAMILY = "inet"


class NftReader:
    """Read-only access to the live ruleset."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        *,
        table: str,
        family: str = DEFAULT_FAMILY,
        binary: str = DEFAULT_BINARY,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.table = table
        self.family = family
        self.binary = binary

    def _list(self, args: list[str]) -> dict[str, Any]:
        result = self.executor.run(
            [self.binary, "-j", *args],
            read_only=True,
        )
        try:
            return json.loads(result.stdout or '{"nftables": []}')
        except json.JSONDecodeError as e:
            raise ExecutionError(
                f"Unparseable output from '{self.binary} -j {' '.join(args)}'",
                details=[str(e)],
            ) from e

    def is_available(self) -> bool:
        """Check that nft runs and the kernel answers."""
        try:
            self.list_tables()
        except ExecutionError:
            return False
        return True

    def list_tables(self) -> list[tuple[str, str]]:
        """(family, name) of every table in the ruleset."""
        payload = self._list(["list", "tables"])
        return [
            (obj["table"]["family"], obj["table"]["name"])
            for obj in payload.get("nftables", [])
            if isinstance(obj, dict) and "table" in obj
        ]

    def table_exists(self) -> bool:
        return (self.family, self.table) in self.list_tables()

    def list_table(self) -> Optional[dict[str, Any]]:
        """Verbatim JSON listing of the managed table, or None when absent."""
        if not self.table_exists():
            return None
        return self._list(["list", "table", self.family, self.table])


class NftWriter:
    """Write access: loads one JSON batch per call as a single transaction."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        *,
        binary: str = DEFAULT_BINARY,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.binary = binary

    def check(self, batch: dict[str, Any]) -> None:
        """Dry-run the batch in the kernel without committing it (nft -c)."""
        self.executor.run(
            [self.binary, "-c", "-j", "-f", "-"],
            input=json.dumps(batch),
            read_only=True,
            description="Checking rule set against the kernel",
        )

    def load(self, batch: dict[str, Any], *, description: Optional[str] = None) -> None:
        """Commit the batch atomically; nft applies all of it or none of it."""
        self.executor.run(
            [self.binary, "-j", "-f", "-"],
            input=json.dumps(batch),
            description=description,
        )


def delete_table_batch(family: str, table: str) -> dict[str, Any]:
    """Batch removing a table whether or not it exists."""
    table_obj = {"table": {"family": family, "name": table}}
    return {
        "nftables": [
            {"metainfo": {"json_schema_version": 1}},
            {"add": table_obj},
            {"delete": table_obj},
        ]
    }


def listing_to_batch(listing: dict[str, Any], family: str, table: str) -> dict[str, Any]:
    """Turn a `nft -j list table` document back into a replacing batch.

    Raises:
        ValueError: If the listing does not describe the table
    """
    objects = listing.get("nftables") if isinstance(listing, dict) else None
    if not isinstance(objects, list):
        raise ValueError("listing has no 'nftables' array")

    table_obj = {"table": {"family": family, "name": table}}
    commands: list[dict[str, Any]] = [
        {"metainfo": {"json_schema_version": 1}},
        {"add": table_obj},
        {"delete": table_obj},
    ]
    found = False
    ordered: dict[str, list[dict[str, Any]]] = {"table": [], "set": [], "chain": [], "rule": []}

    for obj in objects:
        if not isinstance(obj, dict):
            continue
        for kind in ordered:
            if kind not in obj:
                continue
            body = dict(obj[kind])
            if body.get("family") != family:
                continue
            owner = body.get("name") if kind == "table" else body.get("table")
            if owner != table:
                continue
            body.pop("handle", None)
            if kind == "table":
                found = True
            if kind == "rule" and "expr" not in body:
                raise ValueError(f"rule without expressions in chain {body.get('chain')}")
            ordered[kind].append({kind: body})

    if not found:
        raise ValueError(f"listing does not contain table {family} {table}")

    for kind in ("table", "set", "chain", "rule"):
        for obj in ordered[kind]:
            commands.append({"add": obj})
    return {"nftables": commands}

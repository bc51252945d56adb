"""State snapshots of the managed table.

Provides:
- capture() of the live managed table (or its absence) before a mutation
- restore() of a snapshot in a single nft transaction
- A bounded on-disk snapshot log with pinning
- The applied-generation record used for monotonic generation numbers
"""

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from k3sfw.core.context import ExecutionContext
from k3sfw.core.exceptions import CaptureError, ExecutionError, RestoreError, ValidationError
from k3sfw.core.locking import EngineLock
from k3sfw.services.nftables import NftReader, NftWriter, delete_table_batch, listing_to_batch
from k3sfw.services.ruleset import LiveTable


SNAPSHOT_SUFFIX = ".json"
APPLIED_FILE = "applied.yaml"
DEFAULT_RETENTION = 5


@dataclass
class Snapshot:
    """A captured copy of the managed table, used only for rollback."""
    id: str
    timestamp: str
    generation: int
    family: str
    table: str
    listing: Optional[dict[str, Any]] = None

    @property
    def absent(self) -> bool:
        """True when the managed table did not exist at capture time."""
        return self.listing is None

    def live_table(self) -> Optional[LiveTable]:
        if self.listing is None:
            return None
        return LiveTable.from_nft(self.listing, self.family, self.table)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "generation": self.generation,
            "family": self.family,
            "table": self.table,
            "absent": self.absent,
            "listing": self.listing,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Snapshot":
        listing = d.get("listing")
        if d.get("absent"):
            listing = None
        elif not isinstance(listing, dict):
            raise ValueError("snapshot has neither a listing nor the absent marker")
        return cls(
            id=str(d["id"]),
            timestamp=str(d["timestamp"]),
            generation=int(d.get("generation", 0)),
            family=str(d["family"]),
            table=str(d["table"]),
            listing=listing,
        )

    def __str__(self) -> str:
        state = "table absent" if self.absent else f"generation {self.generation}"
        return f"{self.id} ({state})"


@dataclass
class AppliedRecord:
    """The generation currently believed live."""
    generation: int
    digest: Optional[str]
    timestamp: str
    snapshot_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "generation": self.generation,
            "digest": self.digest,
            "timestamp": self.timestamp,
            "snapshot_id": self.snapshot_id,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "AppliedRecord":
        return cls(
            generation=int(d.get("generation", 0)),
            digest=d.get("digest"),
            timestamp=str(d.get("timestamp", "")),
            snapshot_id=d.get("snapshot_id"),
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotLog:
    """Ordered snapshot files in one directory, newest last."""

    def __init__(self, directory: Path, retention: int = DEFAULT_RETENTION) -> None:
        self.directory = directory
        self.retention = retention

    def _ensure_directory(self) -> None:
        self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)

    def path_for(self, snapshot_id: str) -> Path:
        return self.directory / f"{snapshot_id}{SNAPSHOT_SUFFIX}"

    def new_id(self) -> str:
        """Sortable id; a numeric suffix keeps ids unique within one microsecond."""
        base = _now().strftime("%Y%m%dT%H%M%S%fZ")
        candidate = base
        n = 1
        while self.path_for(candidate).exists():
            candidate = f"{base}-{n}"
            n += 1
        return candidate

    def append(self, snapshot: Snapshot) -> Path:
        """Persist a snapshot; the write is atomic (temp file + rename)."""
        self._ensure_directory()
        path = self.path_for(snapshot.id)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(snapshot.to_dict(), f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        return path

    def ids(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob(f"*{SNAPSHOT_SUFFIX}"))

    def get(self, snapshot_id: str) -> Snapshot:
        """Load one snapshot.

        Raises:
            ValidationError: If no snapshot has that id
            RestoreError: If the file is unreadable or malformed
        """
        path = self.path_for(snapshot_id)
        if not path.exists():
            known = ", ".join(self.ids()[-5:]) or "none"
            raise ValidationError(
                f"Snapshot not found: {snapshot_id}",
                hint=f"Recent snapshots: {known}",
            )
        try:
            with open(path) as f:
                return Snapshot.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise RestoreError(
                f"Snapshot {snapshot_id} is malformed",
                snapshot_path=path,
                details=[str(e)],
            ) from e

    def snapshots(self) -> list[Snapshot]:
        return [self.get(i) for i in self.ids()]

    def latest(self) -> Optional[Snapshot]:
        ids = self.ids()
        if not ids:
            return None
        return self.get(ids[-1])

    def prune(self, keep: Optional[int] = None, pinned: Iterable[str] = ()) -> list[str]:
        """Delete all but the newest `keep` snapshots; pinned ids are never deleted.

        Returns:
            Ids that were removed
        """
        keep = self.retention if keep is None else keep
        pinned = set(pinned)
        ids = self.ids()
        excess = ids[:-keep] if keep > 0 else ids
        removed = []
        for snapshot_id in excess:
            if snapshot_id in pinned:
                continue
            self.path_for(snapshot_id).unlink(missing_ok=True)
            removed.append(snapshot_id)
        return removed

    # =====================================================================
    # Applied generation record
    # =====================================================================

    @property
    def applied_path(self) -> Path:
        return self.directory / APPLIED_FILE

    def read_applied(self) -> Optional[AppliedRecord]:
        if not self.applied_path.exists():
            return None
        try:
            with open(self.applied_path) as f:
                data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            raise CaptureError(
                f"Cannot read applied generation record: {self.applied_path}",
                details=[str(e)],
            ) from e
        return AppliedRecord.from_dict(data)

    def write_applied(self, record: AppliedRecord) -> None:
        self._ensure_directory()
        tmp = self.applied_path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            yaml.dump(record.to_dict(), f, default_flow_style=False, sort_keys=False)
        os.replace(tmp, self.applied_path)

    def next_generation(self, digest: str) -> int:
        """Generation for a rule set: unchanged for the same digest, else +1."""
        record = self.read_applied()
        if record is None:
            return 1
        if record.digest == digest:
            return record.generation
        return record.generation + 1


class Snapshotter:
    """Captures and restores the managed table."""

    def __init__(
        self,
        ctx: ExecutionContext,
        reader: NftReader,
        log: SnapshotLog,
        lock: EngineLock,
    ) -> None:
        self.ctx = ctx
        self.reader = reader
        self.log = log
        self.lock = lock

    def capture(self) -> Snapshot:
        """Read the managed table into a Snapshot (not yet persisted).

        Raises:
            CaptureError: If nftables cannot be read
        """
        with self.lock.exclusive():
            try:
                listing = self.reader.list_table()
            except ExecutionError as e:
                raise CaptureError(
                    "Cannot read the live rule set; nftables is unreachable",
                    hint="Check that the nft binary is installed and the nf_tables module is loaded",
                    details=e.details or [e.message],
                ) from e

            record = self.log.read_applied()
            snapshot = Snapshot(
                id=self.log.new_id(),
                timestamp=_now().isoformat(),
                generation=record.generation if record else 0,
                family=self.reader.family,
                table=self.reader.table,
                listing=listing,
            )
        self.ctx.console.debug(f"Captured snapshot {snapshot}")
        return snapshot

    def restore(self, snapshot: Snapshot, writer: NftWriter) -> None:
        """Replace the managed table with the snapshot in one transaction.

        Raises:
            RestoreError: If the snapshot is malformed or nft rejects it
        """
        path = self.log.path_for(snapshot.id)
        if snapshot.family != self.reader.family or snapshot.table != self.reader.table:
            raise RestoreError(
                f"Snapshot {snapshot.id} is for table {snapshot.family} {snapshot.table}, "
                f"not {self.reader.family} {self.reader.table}",
                snapshot_path=path,
            )

        if snapshot.absent:
            batch = delete_table_batch(snapshot.family, snapshot.table)
        else:
            try:
                batch = listing_to_batch(snapshot.listing, snapshot.family, snapshot.table)
            except ValueError as e:
                raise RestoreError(
                    f"Snapshot {snapshot.id} is malformed",
                    snapshot_path=path,
                    details=[str(e)],
                ) from e

        with self.lock.exclusive():
            try:
                writer.load(batch, description=f"Restoring snapshot {snapshot.id}")
            except ExecutionError as e:
                raise RestoreError(
                    f"nftables rejected snapshot {snapshot.id}",
                    snapshot_path=path,
                    unreachable=e.return_code is None,
                    details=e.details,
                ) from e

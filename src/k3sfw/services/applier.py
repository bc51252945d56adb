"""Enforcement applier.

The only component that replaces the live managed table. One apply is:

    capture -> persist snapshot -> write (single nft transaction)
            -> verify -> success: record generation, prune
                      -> failure: restore snapshot once, report

The whole sequence runs under the exclusive engine lock and is never
retried. SIGINT/SIGTERM during the write or verify steps count as a
failure: the snapshot is restored once and the apply reports interruption.
"""

import signal
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Optional

from k3sfw.core.audit import AuditEventType, AuditLogger, AuditResult, get_audit_logger
from k3sfw.core.context import ExecutionContext
from k3sfw.core.exceptions import (
    ApplyInterrupted,
    BootstrapRefused,
    CaptureError,
    ExecutionError,
    RestoreError,
    ValidationError,
    VerificationFailed,
)
from k3sfw.core.locking import EngineLock
from k3sfw.services.compiler import CompiledRuleSet
from k3sfw.services.nftables import NftReader, NftWriter
from k3sfw.services.policy import Policy
from k3sfw.services.ruleset import LiveTable
from k3sfw.services.snapshot import AppliedRecord, Snapshot, SnapshotLog, Snapshotter
from k3sfw.services.verifier import CheckResult, Verifier, failed_checks


class Applier:
    """Serialized, verified, single-shot-rollback apply of a compiled rule set."""

    def __init__(
        self,
        ctx: ExecutionContext,
        *,
        reader: NftReader,
        writer: NftWriter,
        snapshotter: Snapshotter,
        verifier: Verifier,
        log: SnapshotLog,
        lock: EngineLock,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self.ctx = ctx
        self.reader = reader
        self.writer = writer
        self.snapshotter = snapshotter
        self.verifier = verifier
        self.log = log
        self.lock = lock
        self.audit = audit or get_audit_logger()
        self.last_results: list[CheckResult] = []
        self._ignore_signals = False

    def apply(
        self,
        compiled: CompiledRuleSet,
        policy: Policy,
        *,
        bootstrap: bool = False,
    ) -> int:
        """Apply compiled, verify it against policy, roll back on failure.

        Returns:
            The applied generation number

        Raises:
            BootstrapRefused: bootstrap requested but the managed table exists
            CaptureError: pre-apply snapshot impossible (nothing was changed)
            ExecutionError: nft rejected the rule set (nothing was changed)
            VerificationFailed: checks failed, previous state restored
            ApplyInterrupted: signal received, previous state restored
            RestoreError: the automatic rollback failed too
        """
        with self.lock.exclusive():
            snapshot = self._pre_apply_snapshot(bootstrap)
            snapshot_path = self.log.append(snapshot)
            self.ctx.console.info(f"Pre-apply snapshot {snapshot.id} saved to {snapshot_path}")

            generation = self.log.next_generation(compiled.digest)
            compiled = compiled.with_generation(generation)
            params = {
                "generation": generation,
                "digest": compiled.digest,
                "snapshot": snapshot.id,
                "rules": compiled.rule_count,
            }

            self._ignore_signals = False
            with self.audit.correlation("apply"), self._signals_as_interrupts():
                try:
                    self._write(compiled, params)
                    results = self._verify(policy)
                    self.last_results = results
                    failed = failed_checks(results)
                    # From here on the outcome is decided: roll back or commit.
                    self._ignore_signals = True
                except (KeyboardInterrupt, ApplyInterrupted) as e:
                    self._ignore_signals = True
                    self.ctx.console.warn("Apply interrupted, restoring previous rule set")
                    self._rollback(snapshot, reason="interrupted")
                    raise ApplyInterrupted(
                        "Apply interrupted; previous rules restored",
                        hint="Re-run 'k3sfw apply' to try again",
                    ) from e

                if failed:
                    self.audit.log_operation(
                        AuditEventType.FIREWALL_VERIFY,
                        AuditResult.FAILURE,
                        target_type="table",
                        target_name=compiled.table,
                        operation="verify",
                        parameters={**params, "failed": [r.name for r in failed]},
                    )
                    self._rollback(snapshot, reason="verification failed")
                    raise VerificationFailed(failed, generation=generation)

                self.log.write_applied(AppliedRecord(
                    generation=generation,
                    digest=compiled.digest,
                    timestamp=datetime.now(timezone.utc).isoformat(),
                    snapshot_id=snapshot.id,
                ))
                removed = self.log.prune(pinned={snapshot.id})
                if removed:
                    self.ctx.console.verbose(f"Pruned {len(removed)} old snapshot(s)")
                    self.audit.log_success(
                        AuditEventType.SNAPSHOT_PRUNE,
                        target_type="snapshot_log",
                        target_name=str(self.log.directory),
                        parameters={"removed": removed},
                    )

                self.audit.log_success(
                    AuditEventType.FIREWALL_APPLY,
                    target_type="table",
                    target_name=compiled.table,
                    message=f"Generation {generation} applied",
                    parameters=params,
                )
        return generation

    def _pre_apply_snapshot(self, bootstrap: bool) -> Snapshot:
        if not bootstrap:
            return self.snapshotter.capture()

        try:
            exists = self.reader.table_exists()
        except ExecutionError as e:
            raise CaptureError(
                "Cannot prove the managed table is absent; nftables is unreachable",
                details=e.details or [e.message],
            ) from e
        if exists:
            raise BootstrapRefused(
                f"Bootstrap refused: table {self.reader.family} {self.reader.table} already exists",
                hint="Run 'k3sfw apply' without --bootstrap so the current rules are snapshotted",
            )
        self.ctx.console.info("Bootstrap mode: managed table absent, rollback will remove it")
        return Snapshot(
            id=self.log.new_id(),
            timestamp=datetime.now(timezone.utc).isoformat(),
            generation=0,
            family=self.reader.family,
            table=self.reader.table,
            listing=None,
        )

    def _write(self, compiled: CompiledRuleSet, params: dict) -> None:
        try:
            self.writer.load(
                compiled.to_nft_commands(),
                description=f"Loading generation {compiled.generation} "
                            f"({compiled.rule_count} rules) in one transaction",
            )
        except ExecutionError as e:
            self.audit.log_failure(
                AuditEventType.FIREWALL_APPLY,
                target_type="table",
                target_name=compiled.table,
                error=e.message,
                parameters=params,
            )
            e.hint = e.hint or "nft rejected the batch as a whole; the live rule set is unchanged"
            raise

    def _verify(self, policy: Policy) -> list[CheckResult]:
        try:
            listing = self.reader.list_table()
            live = (
                LiveTable.from_nft(listing, self.reader.family, self.reader.table)
                if listing is not None else None
            )
        except (ExecutionError, ValidationError) as e:
            return [CheckResult(
                name="live:read",
                expected="readable managed table",
                observed=e.message,
                passed=False,
            )]
        return self.verifier.verify(policy, live)

    def _rollback(self, snapshot: Snapshot, reason: str) -> None:
        """Restore the pre-apply snapshot exactly once; later signals are ignored."""
        self._ignore_signals = True
        try:
            self.snapshotter.restore(snapshot, self.writer)
        except RestoreError as e:
            self.audit.log_failure(
                AuditEventType.FIREWALL_RESTORE,
                target_type="snapshot",
                target_name=snapshot.id,
                error=e.message,
                parameters={"reason": reason},
            )
            raise RestoreError(
                f"Apply failed ({reason}) and automatic rollback failed: {e.message}",
                snapshot_path=self.log.path_for(snapshot.id),
                details=e.details,
            ) from e

        self.ctx.console.warn(f"Rolled back to snapshot {snapshot.id} ({reason})")
        self.audit.log_operation(
            AuditEventType.FIREWALL_ROLLBACK,
            AuditResult.ROLLED_BACK,
            target_type="snapshot",
            target_name=snapshot.id,
            operation="automatic rollback",
            message=reason,
        )

    @contextmanager
    def _signals_as_interrupts(self) -> Generator[None, None, None]:
        """Turn SIGTERM/SIGINT into ApplyInterrupted for the enclosed block."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def handler(signum, frame):
            if not self._ignore_signals:
                raise ApplyInterrupted(f"Received signal {signum}")

        previous = {
            sig: signal.signal(sig, handler) for sig in (signal.SIGTERM, signal.SIGINT)
        }
        try:
            yield
        finally:
            for sig, old in previous.items():
                signal.signal(sig, old)

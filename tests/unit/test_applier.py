"""Unit tests for the enforcement applier."""

import json
import signal

import pytest
from unittest.mock import patch

from k3sfw.core.exceptions import (
    ApplyInterrupted,
    BootstrapRefused,
    CaptureError,
    ExecutionError,
    RestoreError,
    VerificationFailed,
)
from k3sfw.services.compiler import compile_policy
from k3sfw.services.policy import parse_policy
from k3sfw.services.ruleset import LiveTable

from conftest import scenario_policy_data


def _audit_events(engine) -> list[dict]:
    path = engine.audit.log_path
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]


def _compile(data):
    policy = parse_policy(data)
    return policy, compile_policy(policy)


class TestApplySuccess:
    """Tests for a verified apply."""

    def test_apply_loads_and_records_generation(self, engine, scenario_policy):
        """Should load the table, record generation 1 and keep the snapshot."""
        compiled = compile_policy(scenario_policy)

        generation = engine.applier.apply(compiled, scenario_policy)

        assert generation == 1
        assert ("inet", "k3s") in engine.kernel.tables
        record = engine.log.read_applied()
        assert record.generation == 1
        assert record.digest == compiled.digest
        assert record.snapshot_id == engine.log.ids()[0]
        assert all(r.passed for r in engine.applier.last_results)

    def test_idempotent(self, engine, scenario_policy):
        """Applying the same policy twice should not change live state."""
        compiled = compile_policy(scenario_policy)

        first = engine.applier.apply(compiled, scenario_policy)
        live_first = engine.kernel.live_listing()
        second = engine.applier.apply(compiled, scenario_policy)

        assert first == second
        assert LiveTable.from_nft(engine.kernel.live_listing(), "inet", "k3s").canonical() == \
            LiveTable.from_nft(live_first, "inet", "k3s").canonical()

    def test_changed_policy_bumps_generation(self, engine, scenario_policy):
        """A different rule set should get the next generation."""
        engine.applier.apply(compile_policy(scenario_policy), scenario_policy)

        data = scenario_policy_data()
        data["port_sets"]["web"] = {"ports": ["tcp/443"], "reachable": True}
        data["chains"]["input"]["rules"].append({"kind": "service", "port_set": "web"})
        policy, compiled = _compile(data)

        assert engine.applier.apply(compiled, policy) == 2

    def test_scenario_probes_pass(self, engine, scenario_policy):
        """Probes for tcp/6443 and tcp/10250 should be accepted."""
        engine.applier.apply(compile_policy(scenario_policy), scenario_policy)

        results = {r.name: r for r in engine.applier.last_results}
        assert results["requirement:api-server"].passed
        assert results["requirement:kubelet"].passed
        assert results["reachable:control-plane:tcp/6443"].passed
        assert results["reachable:control-plane:tcp/10250"].passed

    def test_old_snapshots_pruned(self, engine, scenario_policy):
        """Should prune to the retention limit after success."""
        compiled = compile_policy(scenario_policy)
        for _ in range(engine.log.retention + 2):
            engine.applier.apply(compiled, scenario_policy)

        assert len(engine.log.ids()) == engine.log.retention

    def test_audit_trail(self, engine, scenario_policy):
        """Should audit the apply with generation and digest."""
        compiled = compile_policy(scenario_policy)
        engine.applier.apply(compiled, scenario_policy)

        events = _audit_events(engine)
        apply_events = [e for e in events if e["event_type"] == "firewall.apply"]
        assert apply_events[-1]["result"] == "success"
        assert apply_events[-1]["parameters"]["digest"] == compiled.digest
        assert apply_events[-1]["correlation_id"].startswith("apply_")


class TestApplyRollback:
    """Tests for verification failure and automatic rollback."""

    def test_atomic_rollback(self, engine, scenario_policy):
        """A failing verification should restore exactly the pre-apply table."""
        engine.applier.apply(compile_policy(scenario_policy), scenario_policy)
        before = engine.kernel.live_listing()
        record_before = engine.log.read_applied()

        policy, compiled = _compile(scenario_policy_data(control_plane_ports=[]))
        with pytest.raises(VerificationFailed) as exc_info:
            engine.applier.apply(compiled, policy)

        failed = {c.name for c in exc_info.value.failed_checks}
        assert {"requirement:api-server", "requirement:kubelet", "required:control-plane"} <= failed
        assert exc_info.value.exit_code == 2
        assert LiveTable.from_nft(engine.kernel.live_listing(), "inet", "k3s").canonical() == \
            LiveTable.from_nft(before, "inet", "k3s").canonical()
        assert engine.log.read_applied() == record_before

    def test_rollback_to_absent(self, engine):
        """A failing first apply should leave no managed table behind."""
        policy, compiled = _compile(scenario_policy_data(control_plane_ports=[]))

        with pytest.raises(VerificationFailed):
            engine.applier.apply(compiled, policy)

        assert engine.kernel.tables == {}
        assert engine.log.read_applied() is None

    def test_rollback_audited(self, engine):
        """Should audit the verification failure and the rollback."""
        policy, compiled = _compile(scenario_policy_data(control_plane_ports=[]))
        with pytest.raises(VerificationFailed):
            engine.applier.apply(compiled, policy)

        kinds = [(e["event_type"], e["result"]) for e in _audit_events(engine)]
        assert ("firewall.verify", "failure") in kinds
        assert ("firewall.rollback", "rolled_back") in kinds

    def test_rollback_failure(self, engine):
        """A rejected restore should raise RestoreError naming the snapshot."""
        policy, compiled = _compile(scenario_policy_data(control_plane_ports=[]))
        original_load = engine.kernel.load

        def load(batch, commit=True):
            original_load(batch, commit)
            if commit:
                engine.kernel.fail_loads.append("Device or resource busy")

        with patch.object(engine.kernel, "load", side_effect=load):
            with pytest.raises(RestoreError) as exc_info:
                engine.applier.apply(compiled, policy)

        assert exc_info.value.exit_code == 3
        assert exc_info.value.snapshot_path == engine.log.path_for(engine.log.ids()[0])
        assert "rollback failed" in exc_info.value.message

    def test_unreadable_live_table_rolls_back(self, engine, scenario_policy):
        """If the table cannot be read after the write, the apply is reverted."""
        compiled = compile_policy(scenario_policy)
        original = engine.reader.list_table
        calls = {"n": 0}

        def list_table():
            calls["n"] += 1
            if calls["n"] == 2:
                raise ExecutionError("listing failed", return_code=1)
            return original()

        with patch.object(engine.reader, "list_table", side_effect=list_table):
            with pytest.raises(VerificationFailed) as exc_info:
                engine.applier.apply(compiled, scenario_policy)

        assert [c.name for c in exc_info.value.failed_checks] == ["live:read"]
        assert engine.kernel.tables == {}

    def test_interrupt_restores(self, engine, scenario_policy):
        """An interrupt during verification restores once and reports exit 2."""
        compiled = compile_policy(scenario_policy)

        with patch.object(engine.verifier, "verify", side_effect=KeyboardInterrupt):
            with pytest.raises(ApplyInterrupted) as exc_info:
                engine.applier.apply(compiled, scenario_policy)

        assert exc_info.value.exit_code == 2
        assert engine.kernel.tables == {}
        assert engine.log.read_applied() is None

    def test_signal_after_failed_verification_still_restores(self, engine, scenario_policy):
        """SIGTERM between a failed verification and the rollback must not skip the restore."""
        engine.applier.apply(compile_policy(scenario_policy), scenario_policy)
        before = engine.kernel.live_listing()
        policy, compiled = _compile(scenario_policy_data(control_plane_ports=[]))

        def log_operation(*args, **kwargs):
            signal.raise_signal(signal.SIGTERM)

        with patch.object(engine.audit, "log_operation", side_effect=log_operation):
            with pytest.raises(VerificationFailed):
                engine.applier.apply(compiled, policy)

        assert LiveTable.from_nft(engine.kernel.live_listing(), "inet", "k3s").canonical() == \
            LiveTable.from_nft(before, "inet", "k3s").canonical()
        assert engine.log.read_applied().generation == 1

    def test_signal_after_successful_verification_commits(self, engine, scenario_policy):
        """SIGTERM once every check passed should not leave an unrecorded generation."""
        previous_handler = signal.getsignal(signal.SIGTERM)
        compiled = compile_policy(scenario_policy)
        original = engine.log.write_applied

        def write_applied(record):
            signal.raise_signal(signal.SIGTERM)
            original(record)

        with patch.object(engine.log, "write_applied", side_effect=write_applied):
            generation = engine.applier.apply(compiled, scenario_policy)

        assert generation == 1
        assert ("inet", "k3s") in engine.kernel.tables
        assert engine.log.read_applied().digest == compiled.digest
        assert signal.getsignal(signal.SIGTERM) == previous_handler


class TestApplyRefusals:
    """Tests for applies that never touch live state."""

    def test_nft_rejects_batch(self, engine, scenario_policy):
        """A rejected load leaves the live set unchanged and exits 4."""
        engine.kernel.fail_loads.append("Could not process rule: No such file or directory")

        with pytest.raises(ExecutionError) as exc_info:
            engine.applier.apply(compile_policy(scenario_policy), scenario_policy)

        assert exc_info.value.exit_code == 4
        assert "unchanged" in exc_info.value.hint
        assert engine.kernel.tables == {}

    def test_capture_failure_aborts(self, engine, scenario_policy):
        """No mutation happens when the pre-apply snapshot fails."""
        engine.kernel.unreachable = True

        with pytest.raises(CaptureError):
            engine.applier.apply(compile_policy(scenario_policy), scenario_policy)

        assert engine.kernel.loads == []
        assert engine.log.ids() == []

    def test_bootstrap_refused_when_table_exists(self, engine, scenario_policy):
        """Bootstrap mode must not overwrite prior state."""
        compiled = compile_policy(scenario_policy)
        engine.applier.apply(compiled, scenario_policy)
        loads = len(engine.kernel.loads)

        with pytest.raises(BootstrapRefused) as exc_info:
            engine.applier.apply(compiled, scenario_policy, bootstrap=True)

        assert exc_info.value.exit_code == 1
        assert len(engine.kernel.loads) == loads

    def test_bootstrap_on_clean_host(self, engine, scenario_policy):
        """Bootstrap mode applies when the table is absent."""
        generation = engine.applier.apply(
            compile_policy(scenario_policy), scenario_policy, bootstrap=True,
        )

        assert generation == 1
        assert engine.log.get(engine.log.ids()[0]).absent

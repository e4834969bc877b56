"""
Tests for the action executor.
"""

import threading

from cloudsweep.actions.executor import ActionExecutor
from cloudsweep.actions.locks import KeyedLock
from cloudsweep.core.cancel import CancelToken
from cloudsweep.core.models import ActionState, ActionType, ErrorKind, Mode, ResourceKind

from fakes import FakeAdapter, make_finding, make_volume


def _executor(adapter, **kwargs):
    return ActionExecutor({ResourceKind.VOLUME: adapter}, **kwargs)


class TestDryRun:
    """Tests for dry-run and report-only modes."""

    def test_dry_run_never_mutates(self):
        """Test that dry-run reports and calls nothing."""
        adapter = FakeAdapter()
        result = _executor(adapter).execute(make_finding(), Mode.DRY_RUN)

        assert result.state is ActionState.REPORTED
        assert result.dry_run
        assert not result.attempted
        assert "would delete vol-1" in result.detail
        assert adapter.mutations == []
        assert adapter.snapshots == []

    def test_report_only(self):
        """Test the report-only outcome."""
        adapter = FakeAdapter()
        result = _executor(adapter).execute(make_finding(), Mode.REPORT_ONLY)
        assert result.state is ActionState.REPORTED
        assert adapter.mutations == []

    def test_no_remediation(self):
        """Test findings without a remediation are skipped."""
        result = _executor(FakeAdapter()).execute(make_finding(remediation=None), Mode.APPLY_FORCE)
        assert result.state is ActionState.SKIPPED
        assert result.action is None


class TestApply:
    """Tests for the apply modes."""

    def test_force_deletes_after_snapshot(self):
        """Test that a destructive action takes a backup first."""
        adapter = FakeAdapter()
        result = _executor(adapter).execute(make_finding(), Mode.APPLY_FORCE)

        assert result.state is ActionState.APPLIED
        assert result.attempted and result.succeeded
        assert result.undo_reference == "snap-vol-1"
        assert adapter.mutations == [("vol-1", ActionType.DELETE)]

    def test_confirm_accepted(self):
        """Test that an accepted prompt applies the action."""
        asked = []
        adapter = FakeAdapter()
        executor = _executor(adapter, confirm=lambda f: asked.append(f.resource.id) or True)

        result = executor.execute(make_finding(), Mode.APPLY_WITH_CONFIRM)

        assert asked == ["vol-1"]
        assert result.state is ActionState.APPLIED

    def test_confirm_declined(self):
        """Test that a declined prompt skips the action."""
        adapter = FakeAdapter()
        result = _executor(adapter, confirm=lambda f: False).execute(make_finding(), Mode.APPLY_WITH_CONFIRM)

        assert result.state is ActionState.SKIPPED
        assert result.detail == "declined"
        assert adapter.mutations == []
        assert adapter.snapshots == []

    def test_confirm_without_callback_declines(self):
        """Test that no confirmation callback means no action."""
        adapter = FakeAdapter()
        result = _executor(adapter).execute(make_finding(), Mode.APPLY_WITH_CONFIRM)
        assert result.state is ActionState.SKIPPED
        assert adapter.mutations == []

    def test_delete_is_idempotent(self):
        """Test that deleting an already deleted resource succeeds."""
        adapter = FakeAdapter()
        executor = _executor(adapter)
        first = executor.execute(make_finding(), Mode.APPLY_FORCE)
        second = executor.execute(make_finding(), Mode.APPLY_FORCE)

        assert first.state is ActionState.APPLIED
        assert second.state is ActionState.APPLIED
        assert second.succeeded
        assert second.detail == "already absent"
        assert second.undo_reference is None
        assert second.error is None
        assert adapter.snapshots == ["snap-vol-1"]
        assert adapter.mutations == [("vol-1", ActionType.DELETE)]

    def test_delete_without_backup_is_idempotent(self):
        """Test that a repeated delete of a kind without backups succeeds."""
        adapter = FakeAdapter(reversible_actions=frozenset())
        executor = _executor(adapter)
        executor.execute(make_finding(), Mode.APPLY_FORCE)
        second = executor.execute(make_finding(), Mode.APPLY_FORCE)

        assert second.state is ActionState.APPLIED
        assert second.attempted
        assert second.detail == "already absent"
        assert adapter.snapshots == []

    def test_backup_failure_blocks_delete(self):
        """Test that a failed snapshot prevents the delete."""
        adapter = FakeAdapter(snapshot_fails=True)
        result = _executor(adapter).execute(make_finding(), Mode.APPLY_FORCE)

        assert result.state is ActionState.FAILED
        assert not result.attempted
        assert result.error.kind is ErrorKind.PRECHECK_FAILED
        assert result.error.resource_id == "vol-1"
        assert adapter.mutations == []

    def test_provider_failure_message(self):
        """Test that known provider codes get a readable message."""
        adapter = FakeAdapter(fail_ids={"vol-1"})
        result = _executor(adapter).execute(make_finding(), Mode.APPLY_FORCE)

        assert result.state is ActionState.FAILED
        assert result.attempted and not result.succeeded
        assert result.error.kind is ErrorKind.PROVIDER_ERROR
        assert result.error.message == "Volume is attached to an instance"
        assert "currently attached" in result.error.details["provider_message"]

    def test_protected_resource(self):
        """Test that protected resources are never touched."""
        adapter = FakeAdapter()
        volume = make_volume("vol-1", tags={"cloudsweep:protect": "true"})
        result = _executor(adapter).execute(make_finding(volume), Mode.APPLY_FORCE)

        assert result.state is ActionState.SKIPPED
        assert result.detail == "resource is protected"
        assert adapter.mutations == []

    def test_unsupported_action(self):
        """Test that unsupported actions are skipped."""
        adapter = FakeAdapter(supported_actions={ActionType.DELETE})
        result = _executor(adapter).execute(make_finding(remediation=ActionType.STOP), Mode.APPLY_FORCE)
        assert result.state is ActionState.SKIPPED
        assert "not supported" in result.detail

    def test_missing_adapter(self):
        """Test findings whose kind has no adapter."""
        executor = ActionExecutor({})
        result = executor.execute(make_finding(), Mode.APPLY_FORCE)
        assert result.state is ActionState.SKIPPED


class TestCancellation:
    """Tests for cancellation and concurrency."""

    def test_cancelled_before_start(self):
        """Test that no mutation starts after cancellation."""
        adapter = FakeAdapter()
        token = CancelToken()
        token.cancel("deadline exceeded")
        result = _executor(adapter, cancel=token).execute(make_finding(), Mode.APPLY_FORCE)

        assert result.state is ActionState.SKIPPED
        assert result.detail == "cancelled"
        assert adapter.mutations == []

    def test_cancelled_while_confirming(self):
        """Test cancellation observed after the prompt."""
        adapter = FakeAdapter()
        token = CancelToken()

        def confirm(finding):
            token.cancel("user interrupt")
            return True

        result = _executor(adapter, confirm=confirm, cancel=token).execute(
            make_finding(), Mode.APPLY_WITH_CONFIRM
        )
        assert result.state is ActionState.SKIPPED
        assert adapter.mutations == []

    def test_one_mutation_per_resource(self):
        """Test that two findings on one resource never mutate concurrently."""
        adapter = FakeAdapter(mutation_delay=0.05, supported_actions={ActionType.STOP})
        volume = make_volume("vol-1")
        findings = [
            make_finding(volume, rule_name=f"rule-{i}", remediation=ActionType.STOP) for i in range(4)
        ]
        results = _executor(adapter, max_workers=4).execute_all(findings, Mode.APPLY_FORCE)

        assert [r.state for r in results] == [ActionState.APPLIED] * 4
        assert adapter.max_in_flight["vol-1"] == 1
        assert len(adapter.mutations) == 4

    def test_results_keep_finding_order(self):
        """Test that execute_all returns results in input order."""
        adapter = FakeAdapter()
        findings = [make_finding(make_volume(f"vol-{i}")) for i in range(6)]
        results = _executor(adapter, max_workers=3).execute_all(findings, Mode.APPLY_FORCE)
        assert [r.finding.resource.id for r in results] == [f"vol-{i}" for i in range(6)]

    def test_progress_callback(self):
        """Test that every result is reported."""
        seen = []
        adapter = FakeAdapter()
        _executor(adapter, progress_callback=seen.append).execute_all(
            [make_finding(make_volume("vol-1")), make_finding(make_volume("vol-2"))],
            Mode.DRY_RUN,
        )
        assert sorted(r.finding.resource.id for r in seen) == ["vol-1", "vol-2"]


class TestKeyedLock:
    """Tests for KeyedLock."""

    def test_locks_are_dropped(self):
        """Test that unused keys are forgotten."""
        locks = KeyedLock()
        with locks.hold("a"):
            assert locks.held_keys() == ["a"]
        assert locks.held_keys() == []

    def test_different_keys_do_not_block(self):
        """Test that distinct keys can be held at once."""
        locks = KeyedLock()
        entered = threading.Event()

        def other():
            with locks.hold("b"):
                entered.set()

        with locks.hold("a"):
            thread = threading.Thread(target=other)
            thread.start()
            assert entered.wait(1.0)
            thread.join()

"""
Tests for ApplyEngine

Validates:
- No-op on empty staging
- Mixed batch (existing + new file) apply
- History monotonicity
- Rollback under injected failure in every phase
- Phase 1 stops after the first failed write
- Snapshot failure aborts before mutation
- Missing staged content
- Rollback issues surfaced in the error message
- Per-feature serialization of concurrent applies
"""

import os
import threading
import logging

import pytest

import selfmod.apply as apply_module
from selfmod import (
    ApplyEngine,
    ApplyState,
    FeatureStatus,
    FileStagingStore,
    HistoryLog,
    MissingStagedContent,
    MutationFailure,
    SelfModService,
    SnapshotFailure,
    SnapshotStore
)


@pytest.fixture
def mixed_batch(service, source_root):
    """a.ts exists with "old"; b/new.ts is new."""
    (source_root / "a.ts").write_text("old")
    (source_root / "keep.txt").write_text("untouched")
    service.stage_file("feat", "a.ts", "X")
    service.stage_file("feat", "b/new.ts", "Y")
    return service


# ==================== Happy path ====================

def test_apply_noop_when_nothing_staged(service, config):
    """Empty staging returns the sentinel result and changes nothing."""
    result = service.apply("feat", "nothing")

    assert result.batch_index == -1
    assert result.files == []
    assert result.message == "No staged files to apply"
    assert result.is_noop
    assert service.history.get_history("feat") == []
    assert not config.snapshots_dir("feat").exists()


def test_apply_mixed_batch(mixed_batch, source_root, find_artifacts):
    """Existing file is replaced, new file is created, staging cleared."""
    service = mixed_batch

    result = service.apply("feat", "first batch")

    assert result.batch_index == 0
    assert result.files == ["a.ts", "b/new.ts"]
    assert result.message == "first batch"

    assert (source_root / "a.ts").read_text() == "X"
    assert (source_root / "b" / "new.ts").read_text() == "Y"
    assert (source_root / "keep.txt").read_text() == "untouched"

    assert service.staging.list_staged_files("feat") == []
    assert find_artifacts(source_root) == []

    history = service.history.get_history("feat")
    assert len(history) == 1
    assert history[0].batch_index == 0
    assert history[0].files == ["a.ts", "b/new.ts"]
    assert history[0].message == "first batch"

    assert service.features.get_feature("feat").status == FeatureStatus.APPLIED


def test_apply_then_restore_snapshot(mixed_batch, source_root):
    """Restoring batch 0 brings back "old" and removes the new file."""
    service = mixed_batch
    service.apply("feat")

    restored = service.snapshots.restore_snapshot("feat", 0, source_root)

    assert restored == ["a.ts", "b/new.ts"]
    assert (source_root / "a.ts").read_text() == "old"
    assert not (source_root / "b" / "new.ts").exists()


def test_history_indices_are_contiguous(service, source_root):
    """N applies give N entries with indices 0..N-1."""
    for i in range(4):
        service.stage_file("feat", f"file_{i}.txt", f"content {i}")
        result = service.apply("feat", f"batch {i}")
        assert result.batch_index == i

    history = service.history.get_history("feat")
    assert [entry.batch_index for entry in history] == [0, 1, 2, 3]
    assert [s.batch_index for s in service.snapshots.list_snapshots("feat")] == [0, 1, 2, 3]


def test_apply_binary_content(service, source_root):
    """Bytes are written unchanged."""
    payload = bytes(range(256))
    service.stage_file("feat", "blob.bin", payload)

    service.apply("feat")

    assert (source_root / "blob.bin").read_bytes() == payload


def test_after_apply_hook_sees_state_history(config, source_root):
    """The attempt walks the happy-path states in order."""
    attempts = []
    service = SelfModService(config, source_root, hooks={"after_apply": attempts.append})
    service.stage_file("feat", "a.txt", "A")

    service.apply("feat")

    assert len(attempts) == 1
    states = [entry["state"] for entry in attempts[0].status_history]
    assert states == [
        ApplyState.SNAPSHOTTING.value,
        ApplyState.WRITING.value,
        ApplyState.BACKING_UP.value,
        ApplyState.PROMOTING.value,
        ApplyState.CLEANING.value,
        ApplyState.APPLIED.value
    ]


# ==================== Rollback ====================

@pytest.mark.parametrize("hook,failing_path", [
    ("before_write", "a.ts"),
    ("before_write", "b/new.ts"),
    ("before_backup", "a.ts"),
    ("before_promote", "a.ts"),
    ("before_promote", "b/new.ts"),
])
def test_injected_failure_restores_tree(config, source_root, read_tree, find_artifacts, hook, failing_path):
    """A failure anywhere in phases 1-3 leaves the tree byte-identical."""

    def fail(op):
        if op.relative_path == failing_path:
            raise OSError(f"injected failure for {op.relative_path}")

    service = SelfModService(config, source_root, hooks={hook: fail})
    (source_root / "a.ts").write_text("old")
    (source_root / "keep.txt").write_text("untouched")
    service.stage_file("feat", "a.ts", "X")
    service.stage_file("feat", "b/new.ts", "Y")

    before = read_tree(source_root)

    with pytest.raises(MutationFailure) as exc_info:
        service.apply("feat", "doomed")

    assert "Atomic apply failed" in str(exc_info.value)
    assert "injected failure" in str(exc_info.value)
    assert exc_info.value.rollback_issues == []

    assert read_tree(source_root) == before
    assert find_artifacts(source_root) == []

    # Staging and history untouched
    assert service.staging.list_staged_files("feat") == ["a.ts", "b/new.ts"]
    assert service.history.get_history("feat") == []


def test_failure_after_first_promote(config, source_root):
    """a.ts promoted, b/new.ts fails: a.ts is back to "old", b/new.ts absent."""
    promoted = []

    def before_promote(op):
        if op.relative_path == "b/new.ts":
            raise OSError("promote failed")

    service = SelfModService(config, source_root, hooks={"before_promote": before_promote})
    service.engine.config = config.model_copy(update={"max_workers": 1})
    (source_root / "a.ts").write_text("old")
    service.stage_file("feat", "a.ts", "X")
    service.stage_file("feat", "b/new.ts", "Y")

    original_promote = service.engine._promote

    def tracking_promote(op):
        original_promote(op)
        promoted.append(op.relative_path)

    service.engine._promote = tracking_promote

    with pytest.raises(MutationFailure):
        service.apply("feat")

    assert promoted == ["a.ts"]
    assert (source_root / "a.ts").read_text() == "old"
    assert not (source_root / "b" / "new.ts").exists()
    assert not (source_root / "b").exists()


def test_write_phase_stops_after_first_failure(config, source_root, read_tree, find_artifacts):
    """With one worker, no write starts after the first one fails."""
    attempted = []

    def before_write(op):
        attempted.append(op.relative_path)
        if op.relative_path == "a.ts":
            raise OSError("disk full")

    service = SelfModService(config, source_root, hooks={"before_write": before_write})
    service.engine.config = config.model_copy(update={"max_workers": 1})
    (source_root / "a.ts").write_text("old")
    for name in ("a.ts", "b.ts", "c.ts", "d.ts"):
        service.stage_file("feat", name, name.upper())
    before = read_tree(source_root)

    with pytest.raises(MutationFailure):
        service.apply("feat")

    assert attempted == ["a.ts"]
    assert read_tree(source_root) == before
    assert find_artifacts(source_root) == []


def test_snapshot_failure_aborts_before_mutation(service, source_root, config):
    """A path that cannot be snapshotted stops the apply with nothing touched."""
    (source_root / "a.ts").write_text("old")
    (source_root / "dir.ts").mkdir()
    service.stage_file("feat", "a.ts", "X")
    service.stage_file("feat", "dir.ts", "not a directory")

    with pytest.raises(SnapshotFailure):
        service.apply("feat")

    assert (source_root / "a.ts").read_text() == "old"
    assert (source_root / "dir.ts").is_dir()
    assert service.staging.list_staged_files("feat") == ["a.ts", "dir.ts"]
    assert service.history.get_history("feat") == []
    assert service.snapshots.list_snapshots("feat") == []
    # No partial snapshot directories left behind
    assert list(config.snapshots_dir("feat").iterdir()) == []


class _LossyStaging(FileStagingStore):
    """Lists a file whose content cannot be read."""

    def __init__(self, config, missing):
        super().__init__(config)
        self.missing = missing

    def read_staged(self, feature_id, relative_path):
        if relative_path == self.missing:
            return None
        return super().read_staged(feature_id, relative_path)


def test_missing_staged_content(config, source_root, read_tree, find_artifacts):
    """Missing content raises MissingStagedContent and rolls back."""
    staging = _LossyStaging(config, missing="b.txt")
    history = HistoryLog(config)
    engine = ApplyEngine(config, staging, SnapshotStore(config), history)

    (source_root / "a.txt").write_text("old a")
    staging.stage_file("feat", "a.txt", "new a")
    staging.stage_file("feat", "b.txt", "new b")
    before = read_tree(source_root)

    with pytest.raises(MissingStagedContent) as exc_info:
        engine.apply_batch("feat", source_root)

    assert "Missing staged content for b.txt" in str(exc_info.value)
    assert isinstance(exc_info.value, MutationFailure)
    assert read_tree(source_root) == before
    assert find_artifacts(source_root) == []
    assert history.get_history("feat") == []


def test_rollback_issues_are_reported(config, source_root, monkeypatch):
    """If a backup cannot be restored the error lists it and the backup survives."""
    real_replace = os.replace

    def broken_restore(src, dst):
        if ".bak." in str(src):
            raise OSError("restore refused")
        return real_replace(src, dst)

    def before_promote(op):
        if op.relative_path == "b/new.ts":
            monkeypatch.setattr(apply_module.os, "replace", broken_restore)
            raise OSError("promote failed")

    service = SelfModService(config, source_root, hooks={"before_promote": before_promote})
    service.engine.config = config.model_copy(update={"max_workers": 1})
    (source_root / "a.ts").write_text("old")
    service.stage_file("feat", "a.ts", "X")
    service.stage_file("feat", "b/new.ts", "Y")

    with pytest.raises(MutationFailure) as exc_info:
        service.apply("feat")

    message = str(exc_info.value)
    assert "Rollback issues:" in message
    assert "Failed restoring backup a.ts" in message
    assert len(exc_info.value.rollback_issues) == 1
    assert not exc_info.value.rollback_clean

    backups = list(source_root.glob("a.ts.bak.*"))
    assert len(backups) == 1
    assert backups[0].read_text() == "old"


def test_backup_cleanup_failure_is_not_fatal(service, source_root, monkeypatch, caplog, find_artifacts):
    """Post-success backup removal errors are logged only."""
    (source_root / "a.ts").write_text("old")
    service.stage_file("feat", "a.ts", "X")

    def refuse(path):
        raise OSError("busy")

    monkeypatch.setattr(apply_module, "remove_if_exists", refuse)

    with caplog.at_level(logging.WARNING, logger="selfmod.apply"):
        result = service.apply("feat")

    assert result.batch_index == 0
    assert (source_root / "a.ts").read_text() == "X"
    assert "could not remove backup" in caplog.text
    assert len(find_artifacts(source_root)) == 1
    assert service.staging.list_staged_files("feat") == []


# ==================== Concurrency ====================

def test_concurrent_applies_are_serialized(service, source_root):
    """Two simultaneous applies for one feature commit exactly one batch."""
    service.stage_file("feat", "a.txt", "A")
    service.stage_file("feat", "b.txt", "B")

    results = []
    errors = []
    barrier = threading.Barrier(2)

    def run():
        barrier.wait()
        try:
            results.append(service.apply("feat"))
        except Exception as e:  # pragma: no cover - surfaced by assertion below
            errors.append(e)

    threads = [threading.Thread(target=run) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sorted(r.batch_index for r in results) == [-1, 0]
    assert len(service.history.get_history("feat")) == 1
    assert (source_root / "a.txt").read_text() == "A"
    assert not service.lock_manager.is_locked("feat")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

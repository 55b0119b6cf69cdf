"""
Tests for HistoryLog
"""

import json

import pytest

from selfmod import HistoryEntry, HistoryLog


@pytest.fixture
def log(config):
    return HistoryLog(config)


def _entries(count):
    return [HistoryEntry(batch_index=i, files=[f"f{i}.txt"], message=f"m{i}") for i in range(count)]


def test_missing_history_reads_empty(log):
    assert log.read_history("feat") == []
    assert log.get_history("feat") == []


def test_corrupt_history_reads_empty(log, config):
    """Unparseable or wrongly shaped storage counts as no history."""
    path = config.history_path("feat")
    path.parent.mkdir(parents=True)

    path.write_text("{not json")
    assert log.read_history("feat") == []

    path.write_text(json.dumps({"batchIndex": 0}))
    assert log.read_history("feat") == []


def test_history_is_stored_camel_case(log, config):
    """On-disk format is a JSON array of {batchIndex, files, message, appliedAt}."""
    log.append_entry("feat", HistoryEntry(batch_index=0, files=["a.ts", "b/new.ts"], message="first"))

    raw = json.loads(config.history_path("feat").read_text())

    assert isinstance(raw, list)
    assert set(raw[0]) == {"batchIndex", "files", "message", "appliedAt"}
    assert raw[0]["batchIndex"] == 0
    assert raw[0]["files"] == ["a.ts", "b/new.ts"]
    assert isinstance(raw[0]["appliedAt"], int)


def test_write_history_leaves_no_temp_files(log, config):
    log.write_history("feat", _entries(3))

    names = [p.name for p in config.feature_dir("feat").iterdir()]
    assert names == ["history.json"]
    assert len(log.read_history("feat")) == 3


def test_remove_last_history_entries(log):
    log.write_history("feat", _entries(5))

    remaining = log.remove_last_history_entries("feat", 2)

    assert [e.batch_index for e in remaining] == [0, 1, 2]
    assert [e.batch_index for e in log.get_history("feat")] == [0, 1, 2]


def test_remove_last_history_entries_clamps(log):
    """Counts beyond the length empty the log; negative counts do nothing."""
    log.write_history("feat", _entries(2))

    assert len(log.remove_last_history_entries("feat", -3)) == 2
    assert log.remove_last_history_entries("feat", 10) == []
    assert log.get_history("feat") == []

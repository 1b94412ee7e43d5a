"""Tests for the scheduler."""

from unittest.mock import MagicMock

import pytest

from davsync.core.scheduler import Scheduler
from davsync.errors import ConfigError, TransferError


class TestSelect:
    """Tests for file selection."""

    def test_all_files(self, workspace) -> None:
        other = workspace.make_entry("notes", "notes.txt")
        scheduler = Scheduler(workspace.engine(), [workspace.entry, other])

        assert scheduler.select() == [workspace.entry, other]

    def test_single_file(self, workspace) -> None:
        other = workspace.make_entry("notes", "notes.txt")
        scheduler = Scheduler(workspace.engine(), [workspace.entry, other])

        assert scheduler.select("notes") == [other]

    def test_unknown_identifier(self, workspace) -> None:
        scheduler = Scheduler(workspace.engine(), [workspace.entry])

        with pytest.raises(ConfigError, match="nope"):
            scheduler.run_once("nope")


class TestRunOnce:
    """A single pass over the configured files."""

    def test_syncs_every_file(self, workspace) -> None:
        other = workspace.make_entry("notes", "notes.txt")
        workspace.entry.local_path.write_bytes(b"A")
        other.local_path.write_bytes(b"B")

        results = Scheduler(workspace.engine(), [workspace.entry, other]).run_once()

        assert [r.identifier for r in results] == ["doc", "notes"]
        assert all(r.success for r in results)
        assert workspace.client.resources["https://ex/notes.txt"] == b"B"

    def test_restricted_to_identifier(self, workspace) -> None:
        other = workspace.make_entry("notes", "notes.txt")
        workspace.entry.local_path.write_bytes(b"A")
        other.local_path.write_bytes(b"B")

        results = Scheduler(workspace.engine(), [workspace.entry, other]).run_once("notes")

        assert [r.identifier for r in results] == ["notes"]
        assert "https://ex/doc.txt" not in workspace.client.resources


class TestRunForever:
    """Fixed-interval repetition."""

    def test_sleeps_between_passes_only(self, workspace) -> None:
        workspace.entry.local_path.write_bytes(b"A")
        sleep = MagicMock()
        passes = []
        scheduler = Scheduler(workspace.engine(), [workspace.entry], sleep=sleep)

        scheduler.run_forever(5, on_pass=passes.append, max_passes=3)

        assert len(passes) == 3
        assert sleep.call_count == 2
        sleep.assert_called_with(300)
        assert passes[0][0].action == "upload"
        assert passes[1][0].skipped

    def test_picks_up_changes_between_passes(self, workspace) -> None:
        workspace.entry.local_path.write_bytes(b"A")
        url = workspace.entry.remote_url

        def change_remote(seconds: float) -> None:
            workspace.client.remote_write(url, b"from elsewhere")

        Scheduler(workspace.engine(), [workspace.entry], sleep=change_remote).run_forever(1, max_passes=2)

        assert workspace.entry.local_path.read_bytes() == b"from elsewhere"

    def test_failed_pass_does_not_stop_the_loop(self, workspace) -> None:
        engine = MagicMock()
        engine.sync_all.side_effect = [TransferError("server down", 503), []]
        passes = []

        Scheduler(engine, [workspace.entry], sleep=lambda s: None).run_forever(
            1, on_pass=passes.append, max_passes=2
        )

        assert engine.sync_all.call_count == 2
        assert passes == [[]]

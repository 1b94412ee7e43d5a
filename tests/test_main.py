"""Tests for the command line."""

import signal
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from davsync.core.state import Action
from davsync.main import build_parser, confirm_overwrite, main
from davsync.models.config import FileEntry

URL = "https://ex/doc.txt"


@pytest.fixture(autouse=True)
def _restore_sigterm():
    previous = signal.getsignal(signal.SIGTERM)
    yield
    signal.signal(signal.SIGTERM, previous)


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    (tmp_path / "home").mkdir()
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "base_url": "https://ex/",
        "state_dir": str(tmp_path / "state"),
        "files": [{"id": "doc", "path": str(tmp_path / "home" / "doc.txt")}],
        "settings": {"lock_retry_delay": 0},
    }))
    return path


@pytest.fixture
def local_file(tmp_path: Path) -> Path:
    return tmp_path / "home" / "doc.txt"


@pytest.fixture
def cli(config_path: Path, fake_client):
    """Run main() against the in-memory server."""
    def run(*argv: str) -> int:
        with patch("davsync.main.WebDavClient", return_value=fake_client):
            return main(["-c", str(config_path), *argv])
    return run


class TestParser:
    """Tests for argument parsing."""

    def test_overwrite_flags_are_exclusive(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["sync", "--overwrite-local", "--overwrite-remote"])

    def test_sync_identifier_optional(self) -> None:
        args = build_parser().parse_args(["sync"])

        assert args.identifier is None
        assert args.repeat is None

    def test_put_requires_identifier(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["put"])


class TestCommands:
    """End-to-end command runs."""

    def test_no_command_prints_help(self, capsys) -> None:
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_missing_config(self, tmp_path: Path, capsys) -> None:
        assert main(["-c", str(tmp_path / "absent.yaml"), "status"]) == 2
        assert "Configuration error" in capsys.readouterr().out

    def test_sync_uploads(self, cli, fake_client, local_file: Path, capsys) -> None:
        local_file.write_bytes(b"hello")

        assert cli("sync") == 0

        assert fake_client.resources[URL] == b"hello"
        assert fake_client.locks == {}
        assert "Summary" in capsys.readouterr().out

    def test_sync_unknown_identifier(self, cli) -> None:
        assert cli("sync", "nope") == 2

    def test_conflict_exits_nonzero(self, cli, fake_client, local_file: Path, capsys) -> None:
        local_file.write_bytes(b"A")
        assert cli("sync") == 0
        local_file.write_bytes(b"B")
        fake_client.remote_write(URL, b"C")
        capsys.readouterr()

        assert cli("sync") == 1

        out = capsys.readouterr().out
        assert "CONFLICT" in out
        assert local_file.read_bytes() == b"B"
        assert fake_client.resources[URL] == b"C"

    def test_conflict_resolved_by_policy(self, cli, fake_client, local_file: Path) -> None:
        local_file.write_bytes(b"A")
        cli("sync")
        local_file.write_bytes(b"B")
        fake_client.remote_write(URL, b"C")

        assert cli("sync", "--overwrite-local", "--force") == 0

        assert local_file.read_bytes() == b"C"

    def test_declined_overwrite_exits_nonzero(self, cli, fake_client, local_file: Path, capsys) -> None:
        local_file.write_bytes(b"A")
        cli("sync")
        local_file.write_bytes(b"BB")
        fake_client.remote_write(URL, b"C")
        capsys.readouterr()

        with patch("davsync.main.sys.stdin") as stdin:
            stdin.isatty.return_value = False
            assert cli("sync", "--overwrite-local") == 1

        assert local_file.read_bytes() == b"BB"
        assert "doc" in capsys.readouterr().out

    def test_client_closed_after_command(self, cli, fake_client, local_file: Path) -> None:
        local_file.write_bytes(b"hello")

        cli("put", "doc")

        assert fake_client.closed

    def test_dry_run_transfers_nothing(self, cli, fake_client, local_file: Path, capsys) -> None:
        local_file.write_bytes(b"hello")

        assert cli("sync", "--dry-run") == 0

        assert fake_client.transfers == []
        assert "DRY RUN" in capsys.readouterr().out

    def test_put_then_get(self, cli, fake_client, local_file: Path) -> None:
        local_file.write_bytes(b"hello")
        assert cli("put", "doc") == 0
        local_file.unlink()

        assert cli("get", "doc") == 0

        assert local_file.read_bytes() == b"hello"

    def test_get_missing_remote_fails(self, cli, capsys) -> None:
        assert cli("get", "doc") == 1
        assert "FAILED" in capsys.readouterr().out

    def test_repeat_must_be_positive(self, cli) -> None:
        assert cli("sync", "--repeat", "0") == 2

    def test_status(self, cli, local_file: Path, capsys) -> None:
        local_file.write_bytes(b"hello")
        cli("sync")
        capsys.readouterr()

        assert cli("status") == 0

        out = capsys.readouterr().out
        assert "doc" in out
        assert "Never" not in out


class TestConfirmOverwrite:
    """Tests for the interactive confirmation hook."""

    def test_refuses_without_terminal(self, tmp_path: Path) -> None:
        entry = FileEntry("doc", tmp_path / "doc.txt", URL)

        with patch("davsync.main.sys.stdin") as stdin:
            stdin.isatty.return_value = False
            assert confirm_overwrite(entry, Action.UPLOAD) is False

    def test_asks_on_terminal(self, tmp_path: Path) -> None:
        entry = FileEntry("doc", tmp_path / "doc.txt", URL)

        with patch("davsync.main.sys.stdin") as stdin, \
                patch("davsync.main.Confirm.ask", return_value=True) as ask:
            stdin.isatty.return_value = True
            assert confirm_overwrite(entry, Action.DOWNLOAD) is True

        assert "local" in ask.call_args.args[0]

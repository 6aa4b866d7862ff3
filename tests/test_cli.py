"""Test the command-line interface"""

import pytest
from click.testing import CliRunner

from nautune import __version__
from nautune.cli import cli
from nautune.core.database import DownloadIndex

from tests.conftest import make_track, seed_completed


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workspace(temp_dir, monkeypatch):
    """Working directory with a config.yaml and no session variables"""
    monkeypatch.chdir(temp_dir)
    for name in ("NAUTUNE_PASSWORD", "NAUTUNE_ACCESS_TOKEN", "NAUTUNE_USER_ID"):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)

    output_dir = temp_dir / "out"
    (temp_dir / "config.yaml").write_text(
        "server:\n"
        "  url: http://127.0.0.1:9\n"
        "  username: alice\n"
        "output:\n"
        f"  directory: \"{output_dir}\"\n",
        encoding="utf-8",
    )
    return output_dir


class TestCommandLine:
    """Test option parsing and exit codes"""

    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "download" in result.output
        assert "cleanup" in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert __version__ in result.output

    def test_cleanup_policies_are_exclusive(self, runner):
        result = runner.invoke(cli, ["cleanup", "--older-than", "3", "--free-mb", "5"])

        assert result.exit_code == 2
        assert "Only one cleanup policy" in result.output

    def test_cleanup_all_is_exclusive(self, runner):
        result = runner.invoke(cli, ["cleanup", "--all", "--enforce-limit"])

        assert result.exit_code == 2
        assert "Only one cleanup policy" in result.output

    def test_missing_config(self, runner, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)

        result = runner.invoke(cli, ["libraries"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestOfflineCommands:
    """Test browsing downloaded music without a server"""

    def test_offline_libraries(self, runner, workspace):
        result = runner.invoke(cli, ["--offline", "libraries"])

        assert result.exit_code == 0, result.output
        assert "offline_downloads" in result.output
        assert (workspace / "downloads.db").exists()
        assert (workspace / "logs").is_dir()

    def test_offline_albums(self, runner, workspace):
        workspace.mkdir(parents=True, exist_ok=True)
        index = DownloadIndex(workspace / "downloads.db")
        seed_completed(index, workspace / "tracks", make_track("t1", album="Blue Train"))
        index.close()

        result = runner.invoke(cli, ["--offline", "albums"])

        assert result.exit_code == 0, result.output
        assert "Blue Train" in result.output

    def test_cleanup_all(self, runner, workspace):
        workspace.mkdir(parents=True, exist_ok=True)
        index = DownloadIndex(workspace / "downloads.db")
        seed_completed(index, workspace / "tracks", make_track("t1"))
        seed_completed(index, workspace / "tracks", make_track("t2"))
        index.close()

        result = runner.invoke(cli, ["cleanup", "--all"])

        assert result.exit_code == 0, result.output
        assert "Removed 2 tracks" in result.output
        assert list((workspace / "tracks").glob("*.flac")) == []

    def test_downloads_listing(self, runner, workspace):
        workspace.mkdir(parents=True, exist_ok=True)
        index = DownloadIndex(workspace / "downloads.db")
        seed_completed(index, workspace / "tracks", make_track("t1", name="Locomotion"))
        index.close()

        result = runner.invoke(cli, ["downloads", "--status", "completed"])

        assert result.exit_code == 0, result.output
        assert "Locomotion" in result.output


class TestOnlineErrors:
    """Test online commands without a usable session"""

    def test_online_without_session(self, runner, workspace):
        result = runner.invoke(cli, ["libraries"])

        assert result.exit_code == 4
        assert "not available" in result.output

    def test_library_required(self, runner, workspace):
        result = runner.invoke(cli, ["albums"])

        assert result.exit_code == 4
        assert "No library selected" in result.output

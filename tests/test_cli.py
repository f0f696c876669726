"""Tests for CLI commands.

Tests all gitserve CLI commands using Click's CliRunner:
- run: Detached and foreground runs from a real repository
- list: Reconciliation notes, pruning notes and the table
- stop / stop-all: Signaling and summaries
- logs: Tail of captured output
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
from click.testing import CliRunner
from rich.console import Console

from gitserve import __version__
from gitserve.cli import main
from gitserve.config import ENV_HOME, ENV_RETENTION, ENV_SHELL
from gitserve.core.models import InstanceStatus, utc_now
from gitserve.core.store import InstanceStore


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def wide_console(mocker, monkeypatch):
    """Keep Rich from wrapping tables and isolate from the user's env."""
    for name in (ENV_HOME, ENV_RETENTION, ENV_SHELL):
        monkeypatch.delenv(name, raising=False)
    mocker.patch("gitserve.cli.console", Console(width=200))


@pytest.fixture
def home(tmp_path: Path) -> Path:
    return tmp_path / "home"


@pytest.fixture
def home_store(home: Path) -> InstanceStore:
    """Store that the CLI will open for ``--home home``."""
    return InstanceStore(home / "store")


def invoke(cli_runner: CliRunner, home: Path, *args: str):
    return cli_runner.invoke(main, ["--home", str(home), *args])


class TestVersion:
    def test_version(self, cli_runner):
        result = cli_runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestListCommand:
    """Tests for 'gitserve list'."""

    def test_list_empty(self, cli_runner, home):
        result = invoke(cli_runner, home, "list")

        assert result.exit_code == 0
        assert "No active or recently stopped instances found." in result.output

    def test_list_shows_table(self, cli_runner, home, home_store, make_instance):
        home_store.add(
            make_instance("i1", status=InstanceStatus.CREATED, name="main-i1", port=3000)
        )

        result = invoke(cli_runner, home, "list")

        assert result.exit_code == 0
        assert "main-i1" in result.output
        assert "3000" in result.output
        assert "created" in result.output

    def test_list_reports_auto_update(
        self, cli_runner, home, home_store, make_instance, dead_pgid
    ):
        home_store.add(make_instance("i1", status=InstanceStatus.RUNNING, pid=dead_pgid))

        result = invoke(cli_runner, home, "list")

        assert result.exit_code == 0
        assert "Auto-updated ID i1" in result.output
        assert "'running' -> 'exited_unexpectedly'" in result.output
        assert InstanceStore(home / "store").get("i1").status == (
            InstanceStatus.EXITED_UNEXPECTEDLY
        )

    def test_list_prunes_expired(
        self, cli_runner, home, home_store, make_instance, make_workspace
    ):
        workspace = make_workspace("myproj")
        home_store.add(
            make_instance(
                "old",
                status=InstanceStatus.STOPPED,
                path=workspace,
                stop_time=utc_now() - timedelta(seconds=90),
            )
        )

        result = invoke(cli_runner, home, "list")

        assert result.exit_code == 0
        assert "Pruned instance ID old" in result.output
        assert "No active or recently stopped instances found." in result.output
        assert not workspace.exists()
        assert len(InstanceStore(home / "store")) == 0

    def test_list_corrupt_store(self, cli_runner, home):
        (home / "store").mkdir(parents=True)
        (home / "store" / InstanceStore.INSTANCES_FILE).write_text("{broken")

        result = invoke(cli_runner, home, "list")

        assert result.exit_code == 1
        assert "failed to initialize instance store" in result.output


class TestStopCommand:
    """Tests for 'gitserve stop'."""

    def test_stop_exited_process(self, cli_runner, home, home_store, make_instance, dead_pgid):
        home_store.add(make_instance("i1", status=InstanceStatus.RUNNING, pid=dead_pgid))

        result = invoke(cli_runner, home, "stop", "i1")

        assert result.exit_code == 0
        assert "exited_or_not_found" in result.output

    def test_stop_unknown_id(self, cli_runner, home):
        result = invoke(cli_runner, home, "stop", "ghost")

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "ghost" in result.output

    def test_stop_not_running(self, cli_runner, home, home_store, make_instance):
        home_store.add(make_instance("i1", status=InstanceStatus.STOPPED))

        result = invoke(cli_runner, home, "stop", "i1")

        assert result.exit_code == 1
        assert "not in a 'running' state" in result.output

    def test_stop_pid_zero(self, cli_runner, home, home_store, make_instance):
        home_store.add(make_instance("i1", status=InstanceStatus.RUNNING, pid=0))

        result = invoke(cli_runner, home, "stop", "i1")

        assert result.exit_code == 1
        assert "PID 0" in result.output
        assert InstanceStore(home / "store").get("i1").status == InstanceStatus.ERROR_PID_ZERO


class TestStopAllCommand:
    """Tests for 'gitserve stop-all'."""

    def test_empty_store(self, cli_runner, home):
        result = invoke(cli_runner, home, "stop-all")

        assert result.exit_code == 0
        assert "No instances found to stop." in result.output

    def test_project_filter(
        self, cli_runner, home, home_store, make_instance, dead_pgid, tmp_path
    ):
        home_store.add(
            make_instance(
                "a", status=InstanceStatus.RUNNING, pid=dead_pgid, path=tmp_path / "1" / "myproj"
            )
        )
        home_store.add(
            make_instance(
                "b", status=InstanceStatus.RUNNING, pid=dead_pgid, path=tmp_path / "2" / "other"
            )
        )

        result = invoke(cli_runner, home, "stop-all", "--project", "MYPROJ")

        assert result.exit_code == 0
        assert "filter: 'MYPROJ'" in result.output
        assert "--- Stop All Summary ---" in result.output
        assert "Skipped b" in result.output
        assert "project name mismatch" in result.output
        store = InstanceStore(home / "store")
        assert store.get("a").status == InstanceStatus.EXITED_OR_NOT_FOUND
        assert store.get("b").status == InstanceStatus.RUNNING

    def test_failure_exit_code(self, cli_runner, home, home_store, make_instance, mocker):
        home_store.add(make_instance("a", status=InstanceStatus.RUNNING, pid=777))
        mocker.patch("gitserve.core.stop.os.killpg", side_effect=PermissionError(1, "denied"))

        result = invoke(cli_runner, home, "stop-all")

        assert result.exit_code == 1
        assert "Error processing a" in result.output


class TestLogsCommand:
    """Tests for 'gitserve logs'."""

    def test_shows_stdout_tail(self, cli_runner, home, home_store, make_instance, make_workspace):
        workspace = make_workspace()
        home_store.add(make_instance("i1", path=workspace))
        (workspace / "i1.out.log").write_text("".join(f"line {n}\n" for n in range(10)))

        result = invoke(cli_runner, home, "logs", "i1", "-n", "3")

        assert result.exit_code == 0
        assert result.output == "line 7\nline 8\nline 9\n"

    def test_shows_stderr(self, cli_runner, home, home_store, make_instance, make_workspace):
        workspace = make_workspace()
        home_store.add(make_instance("i1", path=workspace))
        (workspace / "i1.err.log").write_text("boom\n")

        result = invoke(cli_runner, home, "logs", "i1", "--stderr")

        assert result.output == "boom\n"

    def test_missing_log_file(self, cli_runner, home, home_store, make_instance, make_workspace):
        home_store.add(make_instance("i1", path=make_workspace()))

        result = invoke(cli_runner, home, "logs", "i1")

        assert result.exit_code == 1
        assert "no log file" in result.output

    def test_unknown_instance(self, cli_runner, home):
        result = invoke(cli_runner, home, "logs", "ghost")
        assert result.exit_code == 1


class TestRunCommand:
    """Tests for 'gitserve run' against a real repository."""

    def test_run_detached(self, cli_runner, home, git_repo):
        result = invoke(
            cli_runner, home, "run", "feature", "--repo", str(git_repo), "-c", "true", "-d"
        )

        assert result.exit_code == 0, result.output
        assert "is running detached" in result.output
        instances = InstanceStore(home / "store").get_all()
        assert len(instances) == 1
        assert instances[0].name.startswith("feature-")
        assert Path(instances[0].path).name == "myproj"

    def test_run_foreground_success(self, cli_runner, home, git_repo):
        result = invoke(cli_runner, home, "run", "--repo", str(git_repo), "-c", "true")

        assert result.exit_code == 0, result.output
        assert "completed with status" in result.output
        assert len(InstanceStore(home / "store")) == 0

    def test_run_foreground_exit_code_propagates(self, cli_runner, home, git_repo):
        result = invoke(cli_runner, home, "run", "--repo", str(git_repo), "-c", "exit 3")

        assert result.exit_code == 3
        assert "exited with code 3" in result.output

    def test_run_bad_ref(self, cli_runner, home, git_repo):
        result = invoke(
            cli_runner, home, "run", "no-such-ref", "--repo", str(git_repo), "-c", "true"
        )

        assert result.exit_code == 1
        assert "failed to checkout" in result.output
        assert list((home / "workspaces").iterdir()) == []

"""
Tests for the command runner contract, the mock runner and the
subprocess runner.
"""

import pytest

from incus_installer.adapters.base import CommandResult, CommandStatus, output_matches
from incus_installer.adapters.mock import MockCommandRunner
from incus_installer.adapters.shell.command import SubprocessCommandRunner
from incus_installer.core.errors import CommandError

# ── CommandResult ────────────────────────────────────────────────────


class TestCommandResult:
    def test_success(self):
        r = CommandResult.success(["echo", "hi"], stdout="hi\n")
        assert r.ok
        assert r.return_code == 0
        assert r.check() is r

    def test_failure(self):
        r = CommandResult.failure(["false"], return_code=2, stderr="boom")
        assert not r.ok
        assert r.status == CommandStatus.FAILED
        assert "exit 2" in r.error

    def test_check_raises_with_diagnostic(self):
        r = CommandResult.failure(["systemctl", "start", "incus"], stderr="Job failed\n")
        with pytest.raises(CommandError) as exc:
            r.check("journalctl -u incus -n 50")
        assert exc.value.diagnostic == "journalctl -u incus -n 50"
        assert "systemctl start incus" in exc.value.message
        assert "Job failed" in exc.value.message
        assert exc.value.kind == "command"

    def test_display_quotes_arguments(self):
        r = CommandResult.success(["dpkg-query", "-W", "-f=${Status}", "incus"])
        assert r.display == "dpkg-query -W '-f=${Status}' incus"

    def test_output_matches_multiline(self):
        assert output_matches("a\nlibcowsql.so.0 => x\n", "^libcowsql")
        assert not output_matches("", "libcowsql")


# ── Mock runner ──────────────────────────────────────────────────────


class TestMockCommandRunner:
    def test_default_success(self):
        mock = MockCommandRunner()
        result = mock.run(["apt-get", "update"])
        assert result.ok
        assert mock.call_count == 1
        assert mock.calls == ["apt-get update"]

    def test_longest_prefix_wins(self):
        mock = MockCommandRunner()
        mock.set_failure("systemctl")
        mock.set_output("systemctl is-active", "active")
        assert mock.run(["systemctl", "is-active", "incus"]).stdout == "active"
        assert not mock.run(["systemctl", "start", "incus"]).ok

    def test_prefix_matches_whole_words(self):
        mock = MockCommandRunner()
        mock.set_failure("make")
        assert not mock.run(["make", "deps"]).ok
        assert mock.run(["makecache"]).ok

    def test_response_carries_actual_command(self):
        mock = MockCommandRunner()
        mock.set_failure("dnf install")
        result = mock.run(["dnf", "install", "-y", "lxc"])
        assert result.command == ["dnf", "install", "-y", "lxc"]

    def test_clear(self):
        mock = MockCommandRunner()
        mock.set_failure("incus storage show")
        assert not mock.run(["incus", "storage", "show", "default"]).ok
        mock.clear("incus storage show")
        assert mock.run(["incus", "storage", "show", "default"]).ok

    def test_missing_tool(self):
        mock = MockCommandRunner()
        mock.set_missing("patchelf")
        assert not mock.which("patchelf")
        assert mock.which("git")
        result = mock.run(["patchelf", "--version"])
        assert result.status == CommandStatus.NOT_FOUND

    def test_expect_applies_to_output(self):
        mock = MockCommandRunner()
        mock.set_output("dpkg-query", "install ok installed")
        assert mock.run(["dpkg-query", "-W", "incus"], expect="install ok installed").ok
        assert not mock.run(["ldconfig", "-p"], expect="libcowsql").ok

    def test_hook_runs_before_response(self):
        mock = MockCommandRunner()
        seen = []
        mock.on("git clone", lambda cmd: seen.append(cmd[-1]))
        mock.run(["git", "clone", "--depth", "1", "url", "/tmp/x"])
        assert seen == ["/tmp/x"]

    def test_records_input(self):
        mock = MockCommandRunner()
        mock.run(["incus", "admin", "init", "--preseed"], input="config: {}\n")
        assert mock.input_for("incus admin init") == "config: {}\n"
        assert mock.input_for("incus launch") is None

    def test_reset(self):
        mock = MockCommandRunner()
        mock.set_failure("x")
        mock.set_missing("y")
        mock.run(["x"])
        mock.reset()
        assert mock.call_count == 0
        assert mock.run(["x"]).ok
        assert mock.which("y")


# ── Subprocess runner ────────────────────────────────────────────────


class TestSubprocessCommandRunner:
    def test_echo(self):
        runner = SubprocessCommandRunner()
        result = runner.run(["echo", "hello"])
        assert result.ok
        assert result.stdout.strip() == "hello"

    def test_non_zero_exit(self):
        runner = SubprocessCommandRunner()
        result = runner.run(["sh", "-c", "echo oops >&2; exit 3"])
        assert result.status == CommandStatus.FAILED
        assert result.return_code == 3
        assert "oops" in result.stderr

    def test_not_found(self):
        runner = SubprocessCommandRunner()
        result = runner.run(["definitely-not-a-real-tool-xyz"])
        assert result.status == CommandStatus.NOT_FOUND
        assert result.return_code is None

    def test_timeout(self):
        runner = SubprocessCommandRunner()
        result = runner.run(["sleep", "5"], timeout=1)
        assert result.status == CommandStatus.TIMEOUT

    def test_expect_mismatch_is_failure(self):
        runner = SubprocessCommandRunner()
        assert runner.run(["echo", "libraft"], expect="libcowsql").status == CommandStatus.FAILED
        assert runner.run(["echo", "libcowsql.so.0"], expect="libcowsql").ok

    def test_input_and_env(self, tmp_path):
        runner = SubprocessCommandRunner()
        result = runner.run(
            ["sh", "-c", 'cat; echo "$GREETING"'],
            input="from stdin\n",
            env={"GREETING": "hi"},
            cwd=str(tmp_path),
        )
        assert result.stdout == "from stdin\nhi\n"

    def test_which(self):
        runner = SubprocessCommandRunner()
        assert runner.which("sh")
        assert not runner.which("definitely-not-a-real-tool-xyz")

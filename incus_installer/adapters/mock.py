"""
Mock runner — universal test double for command execution.

Used by tests and ``--dry-run`` style harnesses to drive whole
pipelines without touching the host. Returns success for every
command by default; responses can be scripted per command prefix.
"""

from __future__ import annotations

from collections.abc import Callable

from incus_installer.adapters.base import (
    CommandResult,
    CommandRunner,
    CommandStatus,
    output_matches,
)


class MockCommandRunner(CommandRunner):
    """Scriptable command runner that records every call.

    Responses are keyed by a command prefix (``"systemctl start"``
    matches ``systemctl start incus``). The longest matching prefix
    wins. Hooks registered with ``on()`` run before the response is
    returned, so a test can emulate side effects such as a build
    producing files.
    """

    def __init__(self, runner_name: str = "mock", default_output: str = ""):
        self._name = runner_name
        self._default_output = default_output
        self._responses: dict[str, CommandResult] = {}
        self._hooks: dict[str, Callable[[list[str]], None]] = {}
        self._missing: set[str] = set()
        self._call_log: list[list[str]] = []
        self._inputs: dict[int, str] = {}

    @property
    def name(self) -> str:
        return self._name

    @property
    def call_log(self) -> list[list[str]]:
        """Every command vector this mock has received."""
        return self._call_log

    @property
    def calls(self) -> list[str]:
        """Every command as a single space-joined string."""
        return [" ".join(c) for c in self._call_log]

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    def input_for(self, prefix: str) -> str | None:
        """Stdin passed to the first call starting with ``prefix``."""
        for i, cmd in enumerate(self.calls):
            if cmd.startswith(prefix):
                return self._inputs.get(i)
        return None

    def called(self, prefix: str) -> bool:
        return any(c.startswith(prefix) for c in self.calls)

    def set_response(self, prefix: str, result: CommandResult) -> None:
        self._responses[prefix] = result

    def set_output(self, prefix: str, stdout: str) -> None:
        """Configure a successful response with specific stdout."""
        self._responses[prefix] = CommandResult.success(prefix.split(), stdout=stdout)

    def set_failure(self, prefix: str, stderr: str = "Mock failure", return_code: int = 1) -> None:
        """Configure commands starting with ``prefix`` to fail."""
        self._responses[prefix] = CommandResult.failure(
            prefix.split(), return_code=return_code, stderr=stderr,
        )

    def clear(self, prefix: str) -> None:
        """Drop a scripted response so the prefix falls back to success."""
        self._responses.pop(prefix, None)

    def set_missing(self, *tools: str) -> None:
        """Make ``which()`` report these tools as absent."""
        self._missing.update(tools)

    def on(self, prefix: str, hook: Callable[[list[str]], None]) -> None:
        """Run ``hook(command)`` whenever a command starts with ``prefix``."""
        self._hooks[prefix] = hook

    def which(self, tool: str) -> bool:
        return tool not in self._missing

    def _lookup(self, table: dict, joined: str):
        matches = [p for p in table if joined == p or joined.startswith(p + " ")]
        if not matches:
            return None
        return table[max(matches, key=len)]

    def run(
        self,
        command: list[str],
        *,
        timeout: int = 300,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        input: str | None = None,
        expect: str | None = None,
    ) -> CommandResult:
        joined = " ".join(command)
        if input is not None:
            self._inputs[len(self._call_log)] = input
        self._call_log.append(list(command))

        if command and command[0] in self._missing:
            return CommandResult(
                command=command,
                status=CommandStatus.NOT_FOUND,
                return_code=None,
                error=f"Command not found: {command[0]}",
            )

        hook = self._lookup(self._hooks, joined)
        if hook is not None:
            hook(list(command))

        scripted = self._lookup(self._responses, joined)
        if scripted is None:
            result = CommandResult.success(command, stdout=self._default_output)
        else:
            result = scripted.model_copy(update={"command": list(command)})

        if result.ok and expect is not None and not output_matches(result.stdout, expect):
            return result.model_copy(update={
                "status": CommandStatus.FAILED,
                "error": f"Output did not match {expect!r}",
            })
        return result

    def reset(self) -> None:
        """Clear call log, responses and hooks."""
        self._call_log.clear()
        self._inputs.clear()
        self._responses.clear()
        self._hooks.clear()
        self._missing.clear()

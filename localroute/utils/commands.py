from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass
from typing import Sequence


DEFAULT_COMMAND_TIMEOUT_SECONDS = 120


@dataclass(slots=True)
class CommandResult:
    ok: bool
    command: list[str]
    returncode: int
    stdout: str
    stderr: str

    def as_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "command": self.command,
            "returncode": self.returncode,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }

    def summary(self) -> str:
        output = self.stderr or self.stdout
        return f"`{shlex.join(self.command)}` exited with {self.returncode}" + (f": {output}" if output else "")


def split_command(raw_value: str | Sequence[str], label: str = "command") -> list[str]:
    if isinstance(raw_value, str):
        command = shlex.split(raw_value.strip())
    else:
        command = list(raw_value)
    if not command:
        raise ValueError(f"{label} cannot be empty.")
    return command


class CommandRunner:
    """Runs external processes with a hard timeout and never raises on failure."""

    def __init__(self, timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds

    def run(self, command: Sequence[str], input_text: str | None = None) -> CommandResult:
        command_list = list(command)
        try:
            completed = subprocess.run(
                command_list,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
            returncode = completed.returncode
            stdout = (completed.stdout or "").strip()
            stderr = (completed.stderr or "").strip()
        except FileNotFoundError as exc:
            returncode = 127
            stdout = ""
            stderr = str(exc)
        except subprocess.TimeoutExpired as exc:
            returncode = 124
            stdout = (exc.stdout or "").strip() if isinstance(exc.stdout, str) else ""
            stderr = f"Command timed out after {self.timeout_seconds}s"

        return CommandResult(
            ok=returncode == 0,
            command=command_list,
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
        )

"""Subprocess runner used for every external tool invocation."""

from __future__ import annotations

import locale
import logging
import re
import shutil
import subprocess
import sys
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

Echo = Callable[[str], None]

_READER_GRACE_SECONDS = 5.0

_SECRET_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(--?(?:password|token|secret|api[-_]?key)\s+)([^\s]+)",
        r"((?:password|token|secret|api[-_]?key)\s*=\s*)([^\s]+)",
    )
]


@dataclass(slots=True)
class CommandResult:
    """Result of a command execution."""

    command: str
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_seconds: float = 0.0
    executed: bool = True

    @property
    def ok(self) -> bool:
        return self.executed and not self.timed_out and self.returncode == 0

    @property
    def output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


class CommandRunner:
    """Runs argv lists directly and command strings through ``sh -c``."""

    def __init__(self, executable: str | None = None) -> None:
        self.executable = executable or _default_executable()

    def run(
        self,
        command: str | Sequence[str],
        *,
        cwd: str | None = None,
        timeout: float | None = None,
        stream: bool = False,
        echo: Echo | None = None,
    ) -> CommandResult:
        """Run a command and capture its output.

        With ``stream=True`` stdout and stderr are merged and echoed line by line
        while the command runs, so the operator sees live progress; stdin stays
        inherited for password prompts.
        """
        args = self._argv(command)
        display = command if isinstance(command, str) else " ".join(command)
        self.log_request(display, timeout=timeout, stream=stream)
        started = self.monotonic_now()
        try:
            if stream:
                result = self._run_streaming(args, display, cwd=cwd, timeout=timeout, echo=echo)
            else:
                process = subprocess.run(
                    args,
                    capture_output=True,
                    cwd=cwd,
                    timeout=timeout,
                    check=False,
                    text=False,
                )
                result = CommandResult(
                    command=display,
                    returncode=process.returncode,
                    stdout=_normalize_output(process.stdout),
                    stderr=_normalize_output(process.stderr),
                )
        except subprocess.TimeoutExpired as exc:
            result = CommandResult(
                command=display,
                returncode=124,
                stdout=_normalize_output(exc.stdout),
                stderr=_normalize_output(exc.stderr),
                timed_out=True,
            )
        except FileNotFoundError:
            result = CommandResult(
                command=display,
                returncode=127,
                stdout="",
                stderr=f"executable not found: {args[0]}",
                executed=False,
            )
        result.duration_seconds = self.monotonic_now() - started
        self.log_result(result)
        return result

    def _argv(self, command: str | Sequence[str]) -> list[str]:
        if isinstance(command, str):
            return [self.executable, "-c", command]
        return list(command)

    @staticmethod
    def _run_streaming(
        args: list[str],
        display: str,
        *,
        cwd: str | None,
        timeout: float | None,
        echo: Echo | None,
    ) -> CommandResult:
        write = echo or _echo_stdout
        captured: list[str] = []
        process = subprocess.Popen(
            args,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
        assert process.stdout is not None
        stdout = process.stdout

        def pump() -> None:
            for line in stdout:
                captured.append(line)
                write(line)

        # The deadline is enforced by wait(), so a silent command still times out.
        reader = threading.Thread(target=pump, name="emrys-command-output", daemon=True)
        reader.start()
        try:
            returncode = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
            reader.join(_READER_GRACE_SECONDS)
            raise subprocess.TimeoutExpired(
                args, timeout or 0, output="".join(captured)
            ) from None
        except BaseException:
            process.kill()
            process.wait()
            raise
        # A background child may keep the pipe open after the command exits.
        reader.join(_READER_GRACE_SECONDS)
        if not reader.is_alive():
            stdout.close()
        return CommandResult(
            command=display,
            returncode=returncode,
            stdout="".join(captured),
            stderr="",
        )

    def log_request(self, command: str, *, timeout: float | None, stream: bool) -> None:
        LOGGER.info(
            "command_request",
            extra={
                "command": self._sanitize_command(command),
                "timeout": timeout,
                "stream": stream,
            },
        )

    def log_result(self, result: CommandResult) -> None:
        LOGGER.info(
            "command_result",
            extra={
                "returncode": result.returncode,
                "timed_out": result.timed_out,
                "duration_seconds": round(result.duration_seconds, 4),
                "executed": result.executed,
                "stdout_length": len(result.stdout),
                "stderr_length": len(result.stderr),
            },
        )

    @staticmethod
    def monotonic_now() -> float:
        return time.monotonic()

    def _sanitize_command(self, command: str) -> str:
        sanitized = command
        for pattern in _SECRET_PATTERNS:
            sanitized = pattern.sub(r"\1***", sanitized)
        return sanitized


def _echo_stdout(line: str) -> None:
    sys.stdout.write(line)
    sys.stdout.flush()


def _default_executable() -> str:
    if shutil.which("sh"):
        return "sh"
    return "bash"


def _normalize_output(payload: bytes | str | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload

    for encoding in ("utf-8", "utf-8-sig", locale.getpreferredencoding(False)):
        try:
            return payload.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            continue
    return payload.decode("utf-8", errors="replace")

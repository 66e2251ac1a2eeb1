"""Side-effect-free checks that answer "is this requirement already satisfied?"."""

from __future__ import annotations

import abc
import logging
import shutil
import subprocess
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal
from urllib import request
from urllib.error import URLError

LOGGER = logging.getLogger(__name__)

RequirementKind = Literal["binary", "http", "file", "command_output", "check"]


@dataclass(frozen=True, slots=True)
class Requirement:
    """A named condition a phase must leave satisfied.

    ``target`` is interpreted by ``kind``: an executable name for ``binary``, a
    URL for ``http``, a filesystem path for ``file``, and a command for
    ``command_output`` (satisfied when ``expect`` appears in its stdout).
    ``check`` kinds carry their own callable.
    """

    name: str
    kind: RequirementKind
    target: str = ""
    argv: tuple[str, ...] = ()
    expect: str = ""
    check: Callable[[], bool] | None = field(default=None, compare=False)


@dataclass(slots=True)
class ProbeResult:
    satisfied: bool
    missing: list[str] = field(default_factory=list)


def binary(name: str) -> Requirement:
    return Requirement(name=name, kind="binary", target=name)


def http_endpoint(name: str, url: str) -> Requirement:
    return Requirement(name=name, kind="http", target=url)


def file_exists(name: str, path: str | Path) -> Requirement:
    return Requirement(name=name, kind="file", target=str(path))


def command_output(name: str, argv: Sequence[str], expect: str) -> Requirement:
    return Requirement(name=name, kind="command_output", argv=tuple(argv), expect=expect)


def custom(name: str, check: Callable[[], bool]) -> Requirement:
    return Requirement(name=name, kind="check", check=check)


class StateProbe(abc.ABC):
    """Answers whether requirements hold. Implementations must never raise."""

    @abc.abstractmethod
    def satisfied(self, requirement: Requirement) -> bool:
        """Return true when the requirement already holds on this machine."""

    def missing_requirements(self, requirements: Iterable[Requirement]) -> list[str]:
        """Names of unsatisfied requirements, in declaration order."""
        return [req.name for req in requirements if not self.satisfied(req)]

    def probe(self, requirements: Sequence[Requirement]) -> ProbeResult:
        missing = self.missing_requirements(requirements)
        return ProbeResult(satisfied=not missing, missing=missing)


class SystemProbe(StateProbe):
    """Probes the real machine: PATH lookups, local HTTP, files, command output."""

    def __init__(self, *, http_timeout: float = 2.0, command_timeout: float = 10.0) -> None:
        self.http_timeout = http_timeout
        self.command_timeout = command_timeout

    def satisfied(self, requirement: Requirement) -> bool:
        try:
            result = self._evaluate(requirement)
        except Exception as exc:  # noqa: BLE001 - detection failure means "not yet done"
            LOGGER.debug(
                "probe_error",
                extra={"requirement": requirement.name, "error": str(exc)},
            )
            return False
        LOGGER.debug("probe_result", extra={"requirement": requirement.name, "satisfied": result})
        return result

    def _evaluate(self, requirement: Requirement) -> bool:
        if requirement.kind == "binary":
            return self.binary_on_path(requirement.target)
        if requirement.kind == "http":
            return self.http_ok(requirement.target)
        if requirement.kind == "file":
            return Path(requirement.target).expanduser().exists()
        if requirement.kind == "command_output":
            return self.output_contains(requirement.argv, requirement.expect)
        if requirement.check is not None:
            return bool(requirement.check())
        return False

    @staticmethod
    def binary_on_path(name: str) -> bool:
        return shutil.which(name) is not None

    def http_ok(self, url: str) -> bool:
        try:
            with request.urlopen(url, timeout=self.http_timeout) as resp:  # noqa: S310
                return resp.status == 200
        except (URLError, TimeoutError, OSError, ValueError):
            return False

    def output_contains(self, argv: Sequence[str], expect: str) -> bool:
        try:
            process = subprocess.run(
                list(argv),
                capture_output=True,
                timeout=self.command_timeout,
                check=False,
                text=True,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return process.returncode == 0 and expect in process.stdout

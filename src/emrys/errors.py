"""Error taxonomy for the phased bootstrap engine."""

from __future__ import annotations

from collections.abc import Sequence


class BootstrapError(Exception):
    """Base class for errors that are fatal to the current phase."""


class MutationError(BootstrapError):
    """The configuration document could not be read, parsed, or written."""


class ReconciliationError(BootstrapError):
    """The external apply command exited non-zero."""

    def __init__(self, message: str, *, output: str = "", returncode: int | None = None) -> None:
        self.output = output
        self.returncode = returncode
        detail = message
        if output.strip():
            detail = f"{message}\nOutput:\n{output.rstrip()}"
        super().__init__(detail)


class VerificationError(BootstrapError):
    """Apply succeeded but some requirements are still unsatisfied."""

    def __init__(self, missing: Sequence[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"requirements still missing after apply: {', '.join(self.missing)}")


class ConvergenceTimeout(BootstrapError):
    """A probe did not succeed within the bounded number of attempts."""

    def __init__(self, target: str, *, elapsed: float, attempts: int) -> None:
        self.target = target
        self.elapsed = elapsed
        self.attempts = attempts
        super().__init__(
            f"{target} did not converge after {attempts} attempts ({elapsed:.1f}s elapsed)"
        )


class AnnouncementError(Exception):
    """Speech output failed. Never fatal to a phase."""

"""Invokes the external configuration apply command and waits for convergence."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from emrys.errors import ConvergenceTimeout, ReconciliationError
from emrys.shell import CommandRunner, Echo

LOGGER = logging.getLogger(__name__)

Probe = Callable[[], bool]
Sleep = Callable[[float], None]
Clock = Callable[[], float]

NIX_DAEMON_PROFILE = "/nix/var/nix/profiles/default/etc/profile.d/nix-daemon.sh"

DEFAULT_APPLY_COMMAND = "\n".join(
    [
        "set -e",
        f"if [ -e '{NIX_DAEMON_PROFILE}' ]; then",
        f"  . '{NIX_DAEMON_PROFILE}'",
        "fi",
        "darwin-rebuild switch",
    ]
)


@dataclass(slots=True)
class ReconcileResult:
    """Outcome of one apply invocation."""

    success: bool
    output: str = ""
    returncode: int = 0
    duration_seconds: float = 0.0

    def raise_for_status(self) -> None:
        if not self.success:
            raise ReconciliationError(
                f"apply command failed with exit code {self.returncode}",
                output=self.output,
                returncode=self.returncode,
            )


class ExternalReconciler:
    """Runs the apply command with live output and polls probes until they converge."""

    def __init__(
        self,
        *,
        runner: CommandRunner | None = None,
        apply_command: str = DEFAULT_APPLY_COMMAND,
        timeout: float | None = None,
        echo: Echo | None = None,
        sleep: Sleep = time.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self.runner = runner or CommandRunner()
        self.apply_command = apply_command
        self.timeout = timeout
        self.echo = echo
        self.sleep = sleep
        self.clock = clock

    def apply(self) -> ReconcileResult:
        result = self.runner.run(
            self.apply_command, timeout=self.timeout, stream=True, echo=self.echo
        )
        reconcile = ReconcileResult(
            success=result.ok,
            output=result.output,
            returncode=result.returncode,
            duration_seconds=result.duration_seconds,
        )
        if not reconcile.success:
            LOGGER.error(
                "apply_failed",
                extra={
                    "returncode": result.returncode,
                    "timed_out": result.timed_out,
                    "output_length": len(reconcile.output),
                },
            )
        return reconcile

    def await_convergence(
        self,
        probe: Probe,
        *,
        interval: float,
        max_attempts: int,
        target: str = "probe",
    ) -> int:
        """Poll ``probe`` up to ``max_attempts`` times, ``interval`` seconds apart.

        Returns the attempt number that succeeded. Raises ConvergenceTimeout
        after the last failed attempt; no sleep follows the final attempt.
        """
        if max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        started = self.clock()
        for attempt in range(1, max_attempts + 1):
            if probe():
                LOGGER.info(
                    "convergence_reached",
                    extra={"target": target, "attempt": attempt},
                )
                return attempt
            if attempt < max_attempts:
                self.sleep(interval)
        elapsed = self.clock() - started
        LOGGER.warning(
            "convergence_timeout",
            extra={"target": target, "attempts": max_attempts, "elapsed": round(elapsed, 3)},
        )
        raise ConvergenceTimeout(target, elapsed=elapsed, attempts=max_attempts)

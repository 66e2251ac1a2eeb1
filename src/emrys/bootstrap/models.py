"""Data types shared by the phase controller and the phase definitions."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from emrys.document import Section
from emrys.errors import BootstrapError
from emrys.probe import ProbeResult, Requirement, StateProbe
from emrys.reconciler import ExternalReconciler
from emrys.shell import CommandRunner, Echo

if TYPE_CHECKING:
    from emrys.config import AppConfig
    from emrys.speaker import Speaker

PhaseStatus = Literal["already_complete", "completed", "failed", "skipped"]
Report = Callable[[str], None]
Confirm = Callable[[str], bool]
PhaseAction = Callable[["PhaseContext"], None]


@dataclass(slots=True)
class PhaseContext:
    """Collaborators handed to phase-specific reconcile actions."""

    config: AppConfig
    probe: StateProbe
    reconciler: ExternalReconciler
    runner: CommandRunner
    report: Report = print
    confirm: Confirm = lambda _prompt: False
    speaker: Speaker | None = None
    echo: Echo | None = None
    sleep: Callable[[float], None] = time.sleep


@dataclass(frozen=True, slots=True)
class Phase:
    """A named, ordered unit of bootstrap work.

    ``sections`` are ensured in the configuration document, ``apply`` runs the
    external reconciler afterwards, and ``reconcile`` performs any remaining
    phase-specific actions. ``requirements`` drive both the completeness probe
    and post-apply verification. ``when_complete`` runs on already-complete
    phases and may only warn.
    """

    name: str
    ordinal: int
    title: str
    requirements: tuple[Requirement, ...]
    sections: tuple[Section, ...] = ()
    apply: bool = False
    reconcile: PhaseAction | None = None
    when_complete: PhaseAction | None = None

    def is_complete(self, probe: StateProbe) -> bool:
        return self.check(probe).satisfied

    def check(self, probe: StateProbe) -> ProbeResult:
        return probe.probe(self.requirements)

    def requirement_names(self) -> list[str]:
        return [req.name for req in self.requirements]


@dataclass(slots=True)
class PhaseOutcome:
    phase: str
    status: PhaseStatus
    missing: list[str] = field(default_factory=list)
    document_changed: bool = False
    error: BootstrapError | None = None

    @property
    def ok(self) -> bool:
        return self.status in {"already_complete", "completed"}

"""Runs phases through probe, mutate, apply and verify."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path

from emrys.bootstrap.models import Phase, PhaseContext, PhaseOutcome
from emrys.document import ConfigDocument, Placeholder
from emrys.errors import BootstrapError, VerificationError
from emrys.probe import StateProbe

LOGGER = logging.getLogger(__name__)

ConfirmProceed = Callable[[Phase, list[str]], bool]

BANNER = "=" * 39


class PhaseController:
    """Drives the static, ordered phase list.

    Each call runs exactly the phases requested, in declared order. Earlier
    phases are never run implicitly; if one is incomplete the operator is told
    and ``confirm_proceed`` decides whether the later phase still runs.
    """

    def __init__(
        self,
        phases: Sequence[Phase],
        *,
        context: PhaseContext,
        document_path: str | Path,
        placeholders: Iterable[Placeholder] = (),
        confirm_proceed: ConfirmProceed | None = None,
    ) -> None:
        ordinals = [phase.ordinal for phase in phases]
        if ordinals != sorted(ordinals) or len(set(ordinals)) != len(ordinals):
            msg = "phases must be declared in strictly increasing ordinal order"
            raise ValueError(msg)
        self.phases = list(phases)
        self.context = context
        self.document_path = Path(document_path)
        self.placeholders = list(placeholders)
        self.confirm_proceed = confirm_proceed

    @property
    def probe(self) -> StateProbe:
        return self.context.probe

    def report(self, message: str = "") -> None:
        self.context.report(message)

    def phase(self, name: str) -> Phase:
        for phase in self.phases:
            if phase.name == name or str(phase.ordinal) == name:
                return phase
        msg = f"Unknown phase: {name}"
        raise KeyError(msg)

    def run(self, names: Sequence[str] | None = None) -> list[PhaseOutcome]:
        """Run the requested phases (all when ``names`` is empty) in declared order.

        Stops at the first failed phase.
        """
        if names:
            requested = {self.phase(name).name for name in names}
            selected = [phase for phase in self.phases if phase.name in requested]
        else:
            selected = list(self.phases)

        outcomes: list[PhaseOutcome] = []
        for phase in selected:
            incomplete = self.incomplete_before(phase)
            if incomplete:
                self.report(f"Earlier phases are not complete: {', '.join(incomplete)}")
                if not (self.confirm_proceed and self.confirm_proceed(phase, incomplete)):
                    self.report(f"Skipping phase {phase.ordinal}: {phase.title}")
                    outcomes.append(PhaseOutcome(phase=phase.name, status="skipped"))
                    LOGGER.info(
                        "phase_skipped",
                        extra={"phase": phase.name, "incomplete": incomplete},
                    )
                    break
            outcome = self.run_phase(phase)
            outcomes.append(outcome)
            if not outcome.ok:
                break
        return outcomes

    def incomplete_before(self, phase: Phase) -> list[str]:
        return [
            earlier.name
            for earlier in self.phases
            if earlier.ordinal < phase.ordinal and not earlier.is_complete(self.probe)
        ]

    def run_phase(self, phase: Phase) -> PhaseOutcome:
        self._banner(f"  Phase {phase.ordinal}: {phase.title}")
        LOGGER.info("phase_started", extra={"phase": phase.name})

        initial = phase.check(self.probe)
        if initial.satisfied:
            self.report(f"✓ Phase {phase.ordinal} is already complete!")
            self._when_complete(phase)
            LOGGER.info("phase_already_complete", extra={"phase": phase.name})
            return PhaseOutcome(phase=phase.name, status="already_complete")

        self.report(f"Missing: {', '.join(initial.missing)}")
        self._announce(f"Starting phase {phase.ordinal}, {phase.title}.")

        document_changed = False
        try:
            if phase.sections:
                self.report("Updating system configuration...")
                document_changed = self._mutate(phase)
            if phase.apply:
                self.report("Applying configuration...")
                self.context.reconciler.apply().raise_for_status()
                self.report("✓ Configuration applied successfully")
            if phase.reconcile is not None:
                phase.reconcile(self.context)
            self.report("Verifying...")
            missing = self.probe.missing_requirements(phase.requirements)
            if missing:
                raise VerificationError(missing)
        except BootstrapError as exc:
            LOGGER.error(
                "phase_failed",
                extra={"phase": phase.name, "error_type": type(exc).__name__},
            )
            self.report(f"✗ Phase {phase.ordinal} failed: {exc}")
            self._announce(f"Phase {phase.ordinal} failed.")
            return PhaseOutcome(
                phase=phase.name,
                status="failed",
                missing=list(getattr(exc, "missing", [])),
                document_changed=document_changed,
                error=exc,
            )

        self._banner(f"✓ Phase {phase.ordinal} Bootstrap Complete!")
        self._announce(f"Phase {phase.ordinal} complete.")
        LOGGER.info("phase_completed", extra={"phase": phase.name})
        return PhaseOutcome(
            phase=phase.name,
            status="completed",
            document_changed=document_changed,
        )

    def _mutate(self, phase: Phase) -> bool:
        document = ConfigDocument.load(self.document_path)
        for section in phase.sections:
            document.ensure(section, self.placeholders)
        if document.save():
            self.report(f"✓ Updated configuration at {self.document_path}")
            return True
        self.report(f"✓ Configuration already includes phase {phase.ordinal} declarations")
        return False

    def _when_complete(self, phase: Phase) -> None:
        if phase.when_complete is None:
            return
        try:
            phase.when_complete(self.context)
        except BootstrapError as exc:
            self.report(f"Warning: {exc}")

    def _announce(self, text: str) -> None:
        if self.context.speaker is not None:
            self.context.speaker.enqueue(text)

    def _banner(self, title: str) -> None:
        self.report(BANNER)
        self.report(title)
        self.report(BANNER)

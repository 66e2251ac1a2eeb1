"""Phased, idempotent machine bootstrap."""

from .controller import PhaseController
from .models import Phase, PhaseContext, PhaseOutcome
from .phases import default_phases

__all__ = [
    "Phase",
    "PhaseContext",
    "PhaseController",
    "PhaseOutcome",
    "default_phases",
]

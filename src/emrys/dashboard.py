"""Static text dashboard built from caller-supplied status strings."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

WIDTH = 44


@dataclass(slots=True)
class DashboardStatus:
    inference: str = "Unknown"
    model: str = "Not loaded"
    voice: str = "Unknown"
    phases: Sequence[tuple[str, str]] = field(default_factory=list)


def render_dashboard(status: DashboardStatus) -> str:
    inner = WIDTH - 2
    lines = [
        "╔" + "═" * inner + "╗",
        "║" + " Emrys Status".ljust(inner) + "║",
        "╠" + "═" * inner + "╣",
    ]
    rows = [
        ("Inference server", status.inference),
        ("Model", status.model),
        ("Voice", status.voice),
    ]
    if status.phases:
        rows.append(("", ""))
        rows.extend((f"Phase {name}", state) for name, state in status.phases)
    for label, value in rows:
        text = f" {label:<18}{value}" if label else ""
        lines.append("║" + text[:inner].ljust(inner) + "║")
    lines.append("╚" + "═" * inner + "╝")
    return "\n".join(lines)

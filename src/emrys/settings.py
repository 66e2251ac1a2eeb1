"""Small ``key = value`` configuration files kept beside the bootstrap state."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OWNER_ONLY = 0o600


def read_key_value_file(path: str | Path) -> dict[str, str]:
    target = Path(path).expanduser()
    if not target.is_file():
        return {}
    values: dict[str, str] = {}
    try:
        lines = target.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError):
        LOGGER.warning("settings_unreadable", extra={"path": str(target)})
        return {}
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip()
    return values


def write_key_value_file(
    path: str | Path,
    values: Mapping[str, object],
    *,
    header: Iterable[str] = (),
    comments: Mapping[str, str] | None = None,
    overwrite: bool = False,
) -> bool:
    """Write settings with owner-only permissions. Returns False if the file was kept."""
    target = Path(path).expanduser()
    if target.exists() and not overwrite:
        return False
    target.parent.mkdir(parents=True, exist_ok=True)

    notes = comments or {}
    lines = [f"# {line}" if line else "#" for line in header]
    for key, value in values.items():
        if lines:
            lines.append("")
        if key in notes:
            lines.append(f"# {notes[key]}")
        lines.append(f"{key} = {format_value(value)}")

    fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, OWNER_ONLY)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write("\n".join(lines) + "\n")
    os.chmod(target, OWNER_ONLY)
    LOGGER.info("settings_written", extra={"path": str(target), "keys": list(values)})
    return True


def format_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)

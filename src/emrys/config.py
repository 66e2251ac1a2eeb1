"""Environment-backed application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from emrys.reconciler import DEFAULT_APPLY_COMMAND

DEFAULT_DOCUMENT_PATH = "~/.nixpkgs/darwin-configuration.nix"
DEFAULT_HEALTH_URL = "http://localhost:11434"
DEFAULT_MODEL = "llama3.2"
DEFAULT_VOICE = "Jamie"
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from environment variables and an optional JSON file."""

    document_path: str
    apply_command: str
    apply_timeout: float | None
    health_url: str
    default_model: str
    voice: str
    config_dir: str
    bin_dir: str
    launch_agents_dir: str
    convergence_interval: float
    convergence_attempts: int
    assume_yes: bool
    log_level: str

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_preferred_file_config()
        convergence_from_file = file_config.get("convergence")
        convergence_config = (
            convergence_from_file if isinstance(convergence_from_file, dict) else {}
        )

        return cls(
            document_path=_expand(
                os.getenv("EMRYS_DOCUMENT")
                or _to_optional_string(file_config.get("document_path"))
                or DEFAULT_DOCUMENT_PATH
            ),
            apply_command=(
                os.getenv("EMRYS_APPLY_COMMAND")
                or _to_optional_string(file_config.get("apply_command"))
                or DEFAULT_APPLY_COMMAND
            ),
            apply_timeout=_to_optional_positive_float(
                os.getenv("EMRYS_APPLY_TIMEOUT") or file_config.get("apply_timeout")
            ),
            health_url=(
                os.getenv("EMRYS_HEALTH_URL")
                or _to_optional_string(file_config.get("health_url"))
                or DEFAULT_HEALTH_URL
            ),
            default_model=(
                os.getenv("EMRYS_MODEL")
                or _to_optional_string(file_config.get("default_model"))
                or DEFAULT_MODEL
            ),
            voice=(
                os.getenv("EMRYS_VOICE")
                or _to_optional_string(file_config.get("voice"))
                or DEFAULT_VOICE
            ),
            config_dir=_expand(
                os.getenv("EMRYS_CONFIG_DIR")
                or _to_optional_string(file_config.get("config_dir"))
                or "~/.config/emrys"
            ),
            bin_dir=_expand(
                os.getenv("EMRYS_BIN_DIR")
                or _to_optional_string(file_config.get("bin_dir"))
                or "~/.local/bin"
            ),
            launch_agents_dir=_expand(
                os.getenv("EMRYS_LAUNCH_AGENTS_DIR")
                or _to_optional_string(file_config.get("launch_agents_dir"))
                or "~/Library/LaunchAgents"
            ),
            convergence_interval=_to_positive_float(
                os.getenv("EMRYS_CONVERGENCE_INTERVAL") or convergence_config.get("interval"),
                default=1.0,
            ),
            convergence_attempts=_to_positive_int(
                os.getenv("EMRYS_CONVERGENCE_ATTEMPTS") or convergence_config.get("attempts"),
                default=30,
            ),
            assume_yes=_to_bool(
                os.getenv("EMRYS_ASSUME_YES"),
                default=bool(file_config.get("assume_yes", False)),
            ),
            log_level=_to_log_level(
                os.getenv("EMRYS_LOG_LEVEL") or _to_optional_string(file_config.get("log_level"))
            ),
        )

    @property
    def voice_config_path(self) -> Path:
        return Path(self.config_dir) / "voice.conf"

    @property
    def dashboard_config_path(self) -> Path:
        return Path(self.config_dir) / "tui.conf"


def _expand(value: str) -> str:
    return str(Path(value).expanduser())


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _load_file_config(path_value: str) -> dict[str, object]:
    path = Path(path_value)
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config() -> dict[str, object]:
    explicit_path = os.getenv("EMRYS_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("emrys.config.json")
    local_override = _load_file_config("emrys.config.local.json")
    return _merge_dicts(shared_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _to_log_level(value: str | None) -> str:
    if value is None:
        return "WARNING"
    normalized = value.strip().upper()
    return normalized if normalized in _LOG_LEVELS else "WARNING"


def _to_positive_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default


def _to_positive_float(value: object, *, default: float) -> float:
    parsed = _to_optional_positive_float(value)
    return default if parsed is None else parsed


def _to_optional_positive_float(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if parsed > 0 else None
    return None

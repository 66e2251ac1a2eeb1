"""One-shot package manager bootstrap: Nix, then nix-darwin."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from emrys.bootstrap.templates import DEFAULT_DOCUMENT
from emrys.errors import MutationError, ReconciliationError
from emrys.reconciler import NIX_DAEMON_PROFILE
from emrys.shell import CommandRunner, Echo

LOGGER = logging.getLogger(__name__)

NIX_INSTALL_COMMAND = (
    "curl --proto '=https' --tlsv1.2 -sSf -L https://install.determinate.systems/nix"
    " | sh -s -- install"
)

NIX_DARWIN_INSTALL_COMMAND = "\n".join(
    [
        "set -e",
        f"if [ -e '{NIX_DAEMON_PROFILE}' ]; then",
        f"  . '{NIX_DAEMON_PROFILE}'",
        "fi",
        "nix-build https://github.com/LnL7/nix-darwin/archive/master.tar.gz -A installer",
        "./result/bin/darwin-installer",
    ]
)


def is_nix_installed() -> bool:
    return shutil.which("nix") is not None


def is_nix_darwin_installed(document_path: str | Path) -> bool:
    if shutil.which("darwin-rebuild") is not None:
        return True
    return Path(document_path).expanduser().exists() or Path(
        "/etc/nix/darwin-configuration.nix"
    ).exists()


def write_default_document(document_path: str | Path) -> bool:
    """Write the bundled starting document unless one already exists."""
    target = Path(document_path).expanduser()
    if target.exists():
        return False
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(DEFAULT_DOCUMENT, encoding="utf-8")
    except OSError as exc:
        msg = f"failed to write configuration {target}: {exc}"
        raise MutationError(msg) from exc
    LOGGER.info("default_document_written", extra={"path": str(target)})
    return True


def install_nix(runner: CommandRunner, *, echo: Echo | None = None) -> None:
    _run_installer(runner, NIX_INSTALL_COMMAND, "Nix", echo=echo)


def install_nix_darwin(runner: CommandRunner, *, echo: Echo | None = None) -> None:
    _run_installer(
        runner, NIX_DARWIN_INSTALL_COMMAND, "nix-darwin", cwd=str(Path.home()), echo=echo
    )


def _run_installer(
    runner: CommandRunner,
    command: str,
    label: str,
    *,
    cwd: str | None = None,
    echo: Echo | None = None,
) -> None:
    result = runner.run(command, cwd=cwd, stream=True, echo=echo)
    if not result.ok:
        raise ReconciliationError(
            f"failed to install {label}",
            output=result.output,
            returncode=result.returncode,
        )

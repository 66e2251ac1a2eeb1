"""Command-line interface for emrys."""

from __future__ import annotations

import argparse
import logging
from typing import cast

from .bootstrap import PhaseContext, PhaseController, PhaseOutcome, default_phases
from .bootstrap.models import Phase
from .bootstrap.phases import model_requirement, service_requirement, voice_requirement
from .config import AppConfig
from .dashboard import DashboardStatus, render_dashboard
from .document import owner_placeholder
from .errors import AnnouncementError, BootstrapError
from .installer import (
    install_nix,
    install_nix_darwin,
    is_nix_darwin_installed,
    is_nix_installed,
    write_default_document,
)
from .probe import StateProbe, SystemProbe
from .reconciler import ExternalReconciler
from .settings import read_key_value_file
from .shell import CommandRunner
from .speaker import Speaker, SpeakerConfig

LOGGER = logging.getLogger(__name__)


class CLIArgs(argparse.Namespace):
    command: str | None
    phases: list[str]
    yes: bool
    verbose: bool
    message: str


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="emrys", description="Bootstrap a dedicated assistant host"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run bootstrap phases")
    run_parser.add_argument(
        "phases",
        nargs="*",
        help="Phase names or numbers to run, in declared order. Defaults to all phases.",
    )
    run_parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Proceed without asking when earlier phases are incomplete",
    )

    subparsers.add_parser("status", help="Show the status dashboard")
    subparsers.add_parser("list", help="List phases and whether they are complete")

    setup_parser = subparsers.add_parser("setup", help="Install Nix and nix-darwin")
    setup_parser.add_argument("-y", "--yes", action="store_true", help="Do not ask to confirm")

    say_parser = subparsers.add_parser("say", help="Speak a message and wait for it to finish")
    say_parser.add_argument("message")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args(argv))
    config = AppConfig.from_env()
    logging.basicConfig(level="DEBUG" if args.verbose else config.log_level)

    if args.command is None:
        parser.print_help()
        return 1
    if args.command == "setup":
        return _run_setup(config, assume_yes=args.yes or config.assume_yes)

    speaker = Speaker(load_speaker_config(config))
    try:
        if args.command == "say":
            try:
                speaker.speak_blocking(args.message)
            except AnnouncementError as exc:
                print(f"Voice output failed: {exc}")
                return 1
            return 0

        probe = SystemProbe()
        if args.command == "status":
            print(render_dashboard(collect_status(config, probe)))
            return 0
        if args.command == "list":
            for phase in default_phases(config):
                state = "complete" if phase.is_complete(probe) else "incomplete"
                print(f"{phase.ordinal}. {phase.name:<10} {phase.title} [{state}]")
            return 0

        controller = build_controller(
            config,
            probe=probe,
            speaker=speaker,
            assume_yes=args.yes or config.assume_yes,
        )
        try:
            outcomes = controller.run(args.phases)
        except KeyError as exc:
            print(exc.args[0])
            return 1
        _print_summary(outcomes)
        return 0 if outcomes and all(outcome.ok for outcome in outcomes) else 1
    finally:
        speaker.close()


def build_controller(
    config: AppConfig,
    *,
    probe: StateProbe,
    speaker: Speaker | None,
    assume_yes: bool,
) -> PhaseController:
    runner = CommandRunner()
    context = PhaseContext(
        config=config,
        probe=probe,
        reconciler=ExternalReconciler(
            runner=runner,
            apply_command=config.apply_command,
            timeout=config.apply_timeout,
        ),
        runner=runner,
        report=print,
        confirm=_confirm,
        speaker=speaker,
    )

    def confirm_proceed(phase: Phase, incomplete: list[str]) -> bool:
        if assume_yes:
            return True
        return _confirm(f"Run phase {phase.ordinal} ({phase.name}) anyway?")

    return PhaseController(
        default_phases(config),
        context=context,
        document_path=config.document_path,
        placeholders=[owner_placeholder()],
        confirm_proceed=confirm_proceed,
    )


def load_speaker_config(config: AppConfig) -> SpeakerConfig:
    values = read_key_value_file(config.voice_config_path)
    speaker_config = SpeakerConfig.from_mapping(values)
    if "voice" not in values:
        speaker_config.voice = config.voice
    try:
        speaker_config.validate()
    except ValueError as exc:
        LOGGER.warning(
            "voice_config_invalid",
            extra={"path": str(config.voice_config_path), "error": str(exc)},
        )
        return SpeakerConfig(voice=config.voice)
    return speaker_config


def collect_status(config: AppConfig, probe: StateProbe) -> DashboardStatus:
    running = probe.satisfied(service_requirement(config))
    model_ready = running and probe.satisfied(model_requirement(config.default_model))
    voice_ready = probe.satisfied(voice_requirement(config.voice))
    return DashboardStatus(
        inference="Running" if running else "Stopped",
        model=config.default_model if model_ready else "Not loaded",
        voice=f"Ready ({config.voice})" if voice_ready else "Unavailable",
        phases=[
            (phase.name, "complete" if phase.is_complete(probe) else "incomplete")
            for phase in default_phases(config)
        ],
    )


def _run_setup(config: AppConfig, *, assume_yes: bool) -> int:
    if is_nix_darwin_installed(config.document_path):
        print("✓ nix-darwin is already installed!")
        return 0

    print("⚠ nix-darwin is not installed yet.")
    print("This setup will install Nix (if needed), install nix-darwin and")
    print(f"write a starting configuration to {config.document_path}.")
    if not assume_yes and not _confirm("Would you like to proceed with the installation?"):
        print("Installation cancelled.")
        return 1

    runner = CommandRunner()
    try:
        if is_nix_installed():
            print("✓ Nix is already installed")
        else:
            print("Installing Nix (sudo access may be required)...")
            install_nix(runner)
        if write_default_document(config.document_path):
            print(f"✓ Configuration written to {config.document_path}")
        print("Installing nix-darwin...")
        install_nix_darwin(runner)
    except BootstrapError as exc:
        print(f"Error: {exc}")
        return 1

    print("✓ Setup completed successfully!")
    print("Next: run 'emrys run' to bootstrap the remaining phases.")
    return 0


def _confirm(prompt: str) -> bool:
    while True:
        try:
            choice = input(f"{prompt} [y/n]: ").strip().lower()
        except EOFError:
            return False
        if choice in {"y", "yes"}:
            return True
        if choice in {"n", "no"}:
            return False
        print("Please answer 'y' or 'n'")


def _print_summary(outcomes: list[PhaseOutcome]) -> None:
    print()
    for outcome in outcomes:
        line = f"{outcome.phase}: {outcome.status.replace('_', ' ')}"
        if outcome.missing:
            line = f"{line} (missing: {', '.join(outcome.missing)})"
        print(line)


if __name__ == "__main__":
    raise SystemExit(main())

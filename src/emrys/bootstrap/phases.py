"""The static, ordered list of bootstrap phases."""

from __future__ import annotations

import json
import logging
import os
import shutil
import sys
from pathlib import Path
from urllib import request
from urllib.error import HTTPError, URLError

from emrys import probe as requirements
from emrys.bootstrap import templates
from emrys.bootstrap.models import Phase, PhaseContext
from emrys.config import AppConfig
from emrys.errors import (
    AnnouncementError,
    BootstrapError,
    ConvergenceTimeout,
    ReconciliationError,
    VerificationError,
)
from emrys.settings import write_key_value_file
from emrys.speaker import SpeakerConfig, is_voice_available

LOGGER = logging.getLogger(__name__)

SELF_TEST_MESSAGE = (
    "Hello! I am Emrys, your personal AI assistant. Voice output is working correctly."
)


def default_phases(config: AppConfig) -> list[Phase]:
    return [
        packages_phase(),
        inference_phase(config),
        voice_phase(config),
        dashboard_phase(config),
    ]


def packages_phase() -> Phase:
    return Phase(
        name="packages",
        ordinal=1,
        title="Package Installation",
        requirements=tuple(requirements.binary(name) for name in templates.PACKAGES),
        sections=(
            templates.PACKAGES_SECTION,
            templates.SSH_SECTION,
            templates.AUTO_LOGIN_SECTION,
        ),
        apply=True,
    )


def inference_phase(config: AppConfig) -> Phase:
    return Phase(
        name="inference",
        ordinal=2,
        title="Inference Server Setup",
        requirements=(
            service_requirement(config),
            model_requirement(config.default_model),
        ),
        reconcile=reconcile_inference,
    )


def voice_phase(config: AppConfig) -> Phase:
    return Phase(
        name="voice",
        ordinal=3,
        title="Voice Output Configuration",
        requirements=(
            voice_requirement(config.voice),
            requirements.file_exists("voice-config", config.voice_config_path),
        ),
        sections=(templates.VOICE_SECTION,),
        apply=True,
        reconcile=reconcile_voice,
        when_complete=voice_self_test,
    )


def dashboard_phase(config: AppConfig) -> Phase:
    return Phase(
        name="dashboard",
        ordinal=4,
        title="Status Dashboard",
        requirements=(
            requirements.file_exists("dashboard-launcher", launcher_path(config)),
            requirements.file_exists("dashboard-config", config.dashboard_config_path),
        ),
        reconcile=reconcile_dashboard,
    )


def service_requirement(config: AppConfig) -> requirements.Requirement:
    return requirements.http_endpoint("ollama-service", config.health_url)


def model_requirement(model: str) -> requirements.Requirement:
    return requirements.command_output(f"model:{model}", ["ollama", "list"], model)


def voice_requirement(voice: str) -> requirements.Requirement:
    return requirements.custom(f"voice:{voice}", lambda: is_voice_available(voice))


def launcher_path(config: AppConfig) -> Path:
    return Path(config.bin_dir) / templates.DASHBOARD_LAUNCHER_NAME


def launch_agent_path(config: AppConfig) -> Path:
    return Path(config.launch_agents_dir) / f"{templates.LAUNCH_AGENT_LABEL}.plist"


# Inference server


def reconcile_inference(ctx: PhaseContext) -> None:
    config = ctx.config
    if not ctx.probe.satisfied(requirements.binary("ollama")):
        raise VerificationError(["ollama"])

    service = service_requirement(config)
    if ctx.probe.satisfied(service):
        ctx.report("✓ Ollama service is already running")
    else:
        start_service(ctx)

    check_api(config.health_url)
    ctx.report("✓ Ollama API is accessible and responding")

    model = model_requirement(config.default_model)
    if ctx.probe.satisfied(model):
        ctx.report(f"✓ Model '{config.default_model}' is already installed")
    else:
        ctx.report(f"Downloading model '{config.default_model}'...")
        ctx.report("Note: This may take several minutes depending on your connection")
        result = ctx.runner.run(
            ["ollama", "pull", config.default_model], stream=True, echo=ctx.echo
        )
        if not result.ok:
            raise ReconciliationError(
                f"model download failed for '{config.default_model}'",
                output=result.output,
                returncode=result.returncode,
            )

    verify_model(config.health_url, config.default_model)
    ctx.report(f"✓ Model '{config.default_model}' verified successfully")


def start_service(ctx: PhaseContext) -> None:
    plist = write_launch_agent(ctx)
    ctx.runner.run(["launchctl", "unload", str(plist)])
    result = ctx.runner.run(["launchctl", "load", str(plist)])
    if not result.ok:
        raise ReconciliationError(
            "failed to load launch agent",
            output=result.output,
            returncode=result.returncode,
        )
    ctx.report("Starting Ollama service...")
    service = service_requirement(ctx.config)
    ctx.reconciler.await_convergence(
        lambda: ctx.probe.satisfied(service),
        interval=ctx.config.convergence_interval,
        max_attempts=ctx.config.convergence_attempts,
        target="ollama service",
    )
    ctx.report("✓ Ollama service started successfully")


def write_launch_agent(ctx: PhaseContext) -> Path:
    plist = launch_agent_path(ctx.config)
    if plist.exists():
        ctx.report(f"✓ Launch agent already exists at {plist}")
        return plist
    ollama = shutil.which("ollama")
    if ollama is None:
        raise VerificationError(["ollama"])
    try:
        plist.parent.mkdir(parents=True, exist_ok=True)
        plist.write_text(
            templates.LAUNCH_AGENT_PLIST.format(
                label=templates.LAUNCH_AGENT_LABEL,
                ollama=ollama,
                home=Path.home(),
            ),
            encoding="utf-8",
        )
    except OSError as exc:
        msg = f"failed to create launch agent at {plist}: {exc}"
        raise BootstrapError(msg) from exc
    ctx.report(f"✓ Created launch agent at {plist}")
    return plist


def check_api(base_url: str, timeout: float = 5.0) -> None:
    for path in ("", "/api/tags"):
        url = f"{base_url.rstrip('/')}{path}"
        try:
            with request.urlopen(url, timeout=timeout) as resp:  # noqa: S310
                status = resp.status
        except HTTPError as exc:
            status = exc.code
        except (URLError, TimeoutError, OSError) as exc:
            msg = f"failed to connect to inference API at {url}: {exc}"
            raise ReconciliationError(msg) from exc
        if status != 200:
            msg = f"inference API at {url} returned status {status}"
            raise ReconciliationError(msg)


def verify_model(base_url: str, model: str, timeout: float = 60.0) -> None:
    """Run a one-shot generation to prove the model answers."""
    body = json.dumps(
        {"model": model, "prompt": "Say 'test successful' and nothing else.", "stream": False}
    ).encode("utf-8")
    req = request.Request(
        f"{base_url.rstrip('/')}/api/generate",
        data=body,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with request.urlopen(req, timeout=timeout) as resp:  # noqa: S310
            json.loads(resp.read().decode("utf-8"))
    except HTTPError as exc:
        excerpt = exc.read().decode("utf-8", errors="replace")[:500]
        msg = f"model test failed with status {exc.code}"
        raise ReconciliationError(msg, output=excerpt) from exc
    except (URLError, TimeoutError, OSError) as exc:
        msg = f"failed to test model '{model}': {exc}"
        raise ReconciliationError(msg) from exc
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        msg = f"failed to parse model test response: {exc}"
        raise ReconciliationError(msg) from exc


# Voice output


def reconcile_voice(ctx: PhaseContext) -> None:
    install_voice(ctx)
    write_voice_config(ctx)
    voice_self_test(ctx)


def install_voice(ctx: PhaseContext) -> None:
    voice = ctx.config.voice
    installed = voice_requirement(voice)
    if ctx.probe.satisfied(installed):
        ctx.report(f"✓ {voice} voice is already installed")
        return

    ctx.report(f"⚠ {voice} voice is not installed; installing automatically...")
    for package in _voice_packages(ctx):
        ctx.report(f"Installing voice package: {package}")
        result = ctx.runner.run(
            ["sudo", "softwareupdate", "--install", package, "--verbose"],
            stream=True,
            echo=ctx.echo,
        )
        if not result.ok:
            continue
        try:
            ctx.reconciler.await_convergence(
                lambda: ctx.probe.satisfied(installed),
                interval=1.0,
                max_attempts=3,
                target=f"voice {voice}",
            )
        except ConvergenceTimeout:
            continue
        ctx.report(f"✓ {voice} voice installed successfully")
        return

    ctx.report("⚠ Automatic installation failed. Please install manually:")
    for index, step in enumerate(templates.MANUAL_VOICE_STEPS, start=1):
        ctx.report(f"  {index}. {step.format(voice=voice)}")
    confirmed = ctx.confirm(f"Have you installed the {voice} voice?")
    if not confirmed or not ctx.probe.satisfied(installed):
        raise VerificationError([installed.name])
    ctx.report(f"✓ {voice} voice is now available")


def _voice_packages(ctx: PhaseContext) -> list[str]:
    """Voice packages offered by softwareupdate, then well-known identifiers."""
    voice = ctx.config.voice
    found: list[str] = []
    listing = ctx.runner.run(["softwareupdate", "--list"])
    if listing.ok:
        for raw in listing.stdout.splitlines():
            line = raw.strip()
            lowered = line.lower()
            if voice.lower() not in lowered:
                continue
            if not any(token in lowered for token in ("voice", "en-gb", "en_gb")):
                continue
            if line.startswith(("*", "-")):
                found.append(line.lstrip("*-").strip())
                break
    found.extend(pattern.format(voice=voice) for pattern in templates.VOICE_PACKAGE_IDS)
    return found


def write_voice_config(ctx: PhaseContext) -> None:
    path = ctx.config.voice_config_path
    settings = SpeakerConfig(voice=ctx.config.voice)
    try:
        created = write_key_value_file(
            path,
            settings.to_mapping(),
            header=templates.VOICE_CONFIG_HEADER,
            comments=templates.VOICE_CONFIG_COMMENTS,
        )
    except OSError as exc:
        msg = f"failed to write voice configuration {path}: {exc}"
        raise BootstrapError(msg) from exc
    if created:
        ctx.report(f"✓ Created voice configuration at {path}")
    else:
        ctx.report(f"✓ Voice configuration already exists at {path}")


def voice_self_test(ctx: PhaseContext) -> None:
    """Speak synchronously; a failure is reported, never fatal."""
    if ctx.speaker is None:
        return
    ctx.report("Testing voice output...")
    try:
        ctx.report(f'Speaking: "{SELF_TEST_MESSAGE}"')
        ctx.speaker.speak_blocking(SELF_TEST_MESSAGE)
    except AnnouncementError as exc:
        LOGGER.warning("voice_self_test_failed", extra={"error": str(exc)})
        ctx.report(f"Warning: voice test failed: {exc}")
        return
    ctx.report("✓ Voice output test successful")


# Dashboard


def reconcile_dashboard(ctx: PhaseContext) -> None:
    config_path = ctx.config.dashboard_config_path
    try:
        created = write_key_value_file(
            config_path,
            templates.DASHBOARD_CONFIG,
            header=templates.DASHBOARD_CONFIG_HEADER,
            comments=templates.DASHBOARD_CONFIG_COMMENTS,
        )
    except OSError as exc:
        msg = f"failed to write dashboard configuration {config_path}: {exc}"
        raise BootstrapError(msg) from exc
    if created:
        ctx.report(f"✓ Created dashboard configuration at {config_path}")
    else:
        ctx.report(f"✓ Dashboard configuration already exists at {config_path}")

    launcher = launcher_path(ctx.config)
    try:
        launcher.parent.mkdir(parents=True, exist_ok=True)
        launcher.write_text(
            templates.DASHBOARD_LAUNCHER.format(python=sys.executable), encoding="utf-8"
        )
        os.chmod(launcher, 0o755)
    except OSError as exc:
        msg = f"failed to create dashboard launcher at {launcher}: {exc}"
        raise BootstrapError(msg) from exc
    ctx.report(f"✓ Created dashboard launcher at {launcher}")


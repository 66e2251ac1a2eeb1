from __future__ import annotations

import io
import json
import stat
import sys
from pathlib import Path
from urllib.error import HTTPError, URLError

import pytest

from emrys.bootstrap import PhaseContext, default_phases
from emrys.bootstrap import phases
from emrys.config import AppConfig
from emrys.errors import AnnouncementError, ReconciliationError, VerificationError
from emrys.probe import Requirement, StateProbe
from emrys.reconciler import ExternalReconciler
from emrys.shell import CommandResult
from emrys.settings import read_key_value_file


class FakeProbe(StateProbe):
    def __init__(self, present: set[str] | None = None) -> None:
        self.present = set(present or ())

    def satisfied(self, requirement: Requirement) -> bool:
        return requirement.name in self.present


class FakeRunner:
    """Returns canned results keyed by the command's first two words."""

    def __init__(self, results: dict[tuple[str, ...], CommandResult] | None = None) -> None:
        self.results = results or {}
        self.calls: list[list[str]] = []

    def run(self, command, **_kwargs) -> CommandResult:
        argv = list(command)
        self.calls.append(argv)
        return self.results.get(
            tuple(argv[:2]),
            CommandResult(command=" ".join(argv), returncode=0, stdout="", stderr=""),
        )


class FakeResponse:
    def __init__(self, status: int = 200, body: bytes = b"{}") -> None:
        self.status = status
        self.body = body

    def read(self) -> bytes:
        return self.body

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None


def _failed(argv: str, output: str = "boom") -> CommandResult:
    return CommandResult(command=argv, returncode=1, stdout="", stderr=output)


def _config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        document_path=str(tmp_path / "darwin-configuration.nix"),
        apply_command="true",
        apply_timeout=None,
        health_url="http://localhost:11434",
        default_model="llama3.2",
        voice="Jamie",
        config_dir=str(tmp_path / "config"),
        bin_dir=str(tmp_path / "bin"),
        launch_agents_dir=str(tmp_path / "LaunchAgents"),
        convergence_interval=0.5,
        convergence_attempts=4,
        assume_yes=False,
        log_level="WARNING",
    )


def _context(
    tmp_path: Path,
    *,
    probe: StateProbe | None = None,
    runner: FakeRunner | None = None,
    confirm=lambda _prompt: False,
    speaker=None,
) -> tuple[PhaseContext, list[str], list[float]]:
    reports: list[str] = []
    sleeps: list[float] = []
    runner = runner or FakeRunner()
    ctx = PhaseContext(
        config=_config(tmp_path),
        probe=probe or FakeProbe(),
        reconciler=ExternalReconciler(runner=runner, sleep=sleeps.append),
        runner=runner,
        report=reports.append,
        confirm=confirm,
        speaker=speaker,
        sleep=sleeps.append,
    )
    return ctx, reports, sleeps


def test_default_phases_are_ordered(tmp_path: Path) -> None:
    declared = default_phases(_config(tmp_path))

    assert [p.name for p in declared] == ["packages", "inference", "voice", "dashboard"]
    assert [p.ordinal for p in declared] == [1, 2, 3, 4]
    assert declared[0].requirement_names() == ["ollama", "tmux", "go", "jq"]
    assert declared[1].requirement_names() == ["ollama-service", "model:llama3.2"]
    assert declared[2].requirement_names() == ["voice:Jamie", "voice-config"]


def test_packages_phase_sections_are_marked() -> None:
    phase = phases.packages_phase()

    assert phase.apply is True
    assert all(section.marker.startswith("# Phase 1:") for section in phase.sections)


def test_dashboard_writes_config_and_launcher(tmp_path: Path) -> None:
    ctx, _, _ = _context(tmp_path)

    phases.reconcile_dashboard(ctx)

    config_path = ctx.config.dashboard_config_path
    launcher = phases.launcher_path(ctx.config)
    assert stat.S_IMODE(config_path.stat().st_mode) == 0o600
    assert read_key_value_file(config_path)["default_view"] == "status"
    assert stat.S_IMODE(launcher.stat().st_mode) == 0o755
    assert sys.executable in launcher.read_text(encoding="utf-8")
    assert "-m emrys status" in launcher.read_text(encoding="utf-8")


def test_dashboard_keeps_existing_config(tmp_path: Path) -> None:
    ctx, reports, _ = _context(tmp_path)
    path = ctx.config.dashboard_config_path
    path.parent.mkdir(parents=True)
    path.write_text("theme = dark\n", encoding="utf-8")

    phases.reconcile_dashboard(ctx)

    assert read_key_value_file(path) == {"theme": "dark"}
    assert f"✓ Dashboard configuration already exists at {path}" in reports


def test_voice_config_written_owner_only(tmp_path: Path) -> None:
    ctx, _, _ = _context(tmp_path)

    phases.write_voice_config(ctx)

    path = ctx.config.voice_config_path
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    values = read_key_value_file(path)
    assert values["voice"] == "Jamie"
    assert values["enabled"] == "true"
    assert values["quiet_start"] == "22"


def test_inference_requires_server_binary(tmp_path: Path) -> None:
    ctx, _, _ = _context(tmp_path)

    with pytest.raises(VerificationError) as excinfo:
        phases.reconcile_inference(ctx)

    assert excinfo.value.missing == ["ollama"]


def test_inference_pulls_missing_model(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    requests: list[str] = []

    def fake_urlopen(req, timeout=None):
        url = req if isinstance(req, str) else req.full_url
        requests.append(url)
        return FakeResponse(body=json.dumps({"response": "test successful"}).encode())

    monkeypatch.setattr("emrys.bootstrap.phases.request.urlopen", fake_urlopen)
    probe = FakeProbe({"ollama", "ollama-service"})
    runner = FakeRunner()
    ctx, reports, _ = _context(tmp_path, probe=probe, runner=runner)

    phases.reconcile_inference(ctx)

    assert runner.calls == [["ollama", "pull", "llama3.2"]]
    assert requests == [
        "http://localhost:11434",
        "http://localhost:11434/api/tags",
        "http://localhost:11434/api/generate",
    ]
    assert "✓ Model 'llama3.2' verified successfully" in reports


def test_inference_model_download_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "emrys.bootstrap.phases.request.urlopen", lambda *_a, **_k: FakeResponse()
    )
    probe = FakeProbe({"ollama", "ollama-service"})
    runner = FakeRunner({("ollama", "pull"): _failed("ollama pull", "manifest unknown")})
    ctx, _, _ = _context(tmp_path, probe=probe, runner=runner)

    with pytest.raises(ReconciliationError, match="manifest unknown"):
        phases.reconcile_inference(ctx)


def test_start_service_waits_for_convergence(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("emrys.bootstrap.phases.shutil.which", lambda _name: "/opt/bin/ollama")

    class WarmingProbe(FakeProbe):
        checks = 0

        def satisfied(self, requirement: Requirement) -> bool:
            if requirement.name == "ollama-service":
                self.checks += 1
                return self.checks >= 3
            return super().satisfied(requirement)

    probe = WarmingProbe()
    runner = FakeRunner()
    ctx, reports, sleeps = _context(tmp_path, probe=probe, runner=runner)

    phases.start_service(ctx)

    plist = phases.launch_agent_path(ctx.config)
    assert "<string>/opt/bin/ollama</string>" in plist.read_text(encoding="utf-8")
    assert runner.calls == [
        ["launchctl", "unload", str(plist)],
        ["launchctl", "load", str(plist)],
    ]
    assert sleeps == [0.5, 0.5]
    assert "✓ Ollama service started successfully" in reports


def test_start_service_load_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("emrys.bootstrap.phases.shutil.which", lambda _name: "/opt/bin/ollama")
    runner = FakeRunner({("launchctl", "load"): _failed("launchctl load", "Load failed: 5")})
    ctx, _, _ = _context(tmp_path, runner=runner)

    with pytest.raises(ReconciliationError, match="Load failed: 5"):
        phases.start_service(ctx)


def test_check_api_rejects_error_status(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(url, timeout=None):
        raise HTTPError(url, 500, "Server Error", {}, io.BytesIO(b""))

    monkeypatch.setattr("emrys.bootstrap.phases.request.urlopen", fake_urlopen)

    with pytest.raises(ReconciliationError, match="returned status 500"):
        phases.check_api("http://localhost:11434")


def test_check_api_connection_refused(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(url, timeout=None):
        raise URLError("connection refused")

    monkeypatch.setattr("emrys.bootstrap.phases.request.urlopen", fake_urlopen)

    with pytest.raises(ReconciliationError, match="failed to connect"):
        phases.check_api("http://localhost:11434/")


def test_verify_model_reports_http_body(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout=None):
        raise HTTPError(req.full_url, 404, "Not Found", {}, io.BytesIO(b"model not found"))

    monkeypatch.setattr("emrys.bootstrap.phases.request.urlopen", fake_urlopen)

    with pytest.raises(ReconciliationError) as excinfo:
        phases.verify_model("http://localhost:11434", "llama3.2")

    assert excinfo.value.output == "model not found"
    assert "status 404" in str(excinfo.value)


def test_voice_packages_prefer_listed_update(tmp_path: Path) -> None:
    listing = CommandResult(
        command="softwareupdate --list",
        returncode=0,
        stdout=(
            "Software Update found the following new or updated software:\n"
            "* Label: macOS Sequoia 15.1\n"
            "* com.apple.voice.compact.en-GB.Jamie-1.0\n"
        ),
        stderr="",
    )
    ctx, _, _ = _context(tmp_path, runner=FakeRunner({("softwareupdate", "--list"): listing}))

    packages = phases._voice_packages(ctx)

    assert packages == [
        "com.apple.voice.compact.en-GB.Jamie-1.0",
        "com.apple.voice.compact.en-GB.Jamie",
        "com.apple.voice.premium.en-GB.Jamie",
        "VoiceOver_enGB_Jamie",
    ]


def test_install_voice_declined_manual_install(tmp_path: Path) -> None:
    runner = FakeRunner(
        {("sudo", "softwareupdate"): _failed("sudo softwareupdate", "No such update")}
    )
    prompts: list[str] = []

    def confirm(prompt: str) -> bool:
        prompts.append(prompt)
        return False

    ctx, reports, _ = _context(tmp_path, probe=FakeProbe(), runner=runner, confirm=confirm)

    with pytest.raises(VerificationError) as excinfo:
        phases.install_voice(ctx)

    assert excinfo.value.missing == ["voice:Jamie"]
    assert prompts == ["Have you installed the Jamie voice?"]
    assert "  2. Go to Accessibility > Spoken Content" in reports
    installs = [call for call in runner.calls if call[:2] == ["sudo", "softwareupdate"]]
    assert len(installs) == 3


def test_install_voice_confirmed_manual_install(tmp_path: Path) -> None:
    probe = FakeProbe()
    runner = FakeRunner(
        {("sudo", "softwareupdate"): _failed("sudo softwareupdate", "No such update")}
    )

    def confirm(prompt: str) -> bool:
        probe.present.add("voice:Jamie")
        return True

    ctx, reports, _ = _context(tmp_path, probe=probe, runner=runner, confirm=confirm)

    phases.install_voice(ctx)

    assert "✓ Jamie voice is now available" in reports


def test_install_voice_succeeds_after_package(tmp_path: Path) -> None:
    class InstallingProbe(FakeProbe):
        checks = 0

        def satisfied(self, requirement: Requirement) -> bool:
            if requirement.name == "voice:Jamie":
                self.checks += 1
                return self.checks > 1
            return super().satisfied(requirement)

    runner = FakeRunner()
    ctx, reports, sleeps = _context(tmp_path, probe=InstallingProbe(), runner=runner)

    phases.install_voice(ctx)

    assert "✓ Jamie voice installed successfully" in reports
    assert sleeps == []
    installs = [call for call in runner.calls if call[:2] == ["sudo", "softwareupdate"]]
    assert len(installs) == 1


def test_installed_voice_skips_installation(tmp_path: Path) -> None:
    runner = FakeRunner()
    ctx, reports, _ = _context(tmp_path, probe=FakeProbe({"voice:Jamie"}), runner=runner)

    phases.install_voice(ctx)

    assert runner.calls == []
    assert "✓ Jamie voice is already installed" in reports


def test_voice_self_test_failure_is_a_warning(tmp_path: Path) -> None:
    class BrokenSpeaker:
        def speak_blocking(self, text: str) -> None:
            raise AnnouncementError("say: no audio device")

    ctx, reports, _ = _context(tmp_path, speaker=BrokenSpeaker())

    phases.voice_self_test(ctx)

    assert "Warning: voice test failed: say: no audio device" in reports


def test_voice_self_test_speaks_message(tmp_path: Path) -> None:
    class RecordingSpeaker:
        def __init__(self) -> None:
            self.spoken: list[str] = []

        def speak_blocking(self, text: str) -> None:
            self.spoken.append(text)

    speaker = RecordingSpeaker()
    ctx, reports, _ = _context(tmp_path, speaker=speaker)

    phases.voice_self_test(ctx)

    assert speaker.spoken == [phases.SELF_TEST_MESSAGE]
    assert "✓ Voice output test successful" in reports

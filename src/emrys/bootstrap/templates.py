"""Declarations and file contents written by the bootstrap phases."""

from __future__ import annotations

from emrys.document import OWNER_TOKEN, Section

DEFAULT_DOCUMENT = """{ config, pkgs, lib, ... }:

{
  # Basic nix-darwin configuration for Emrys
  # This is a minimal configuration that will be used during initial setup

  # Set the host platform (will be auto-detected from the system)
  nixpkgs.hostPlatform = lib.mkDefault "aarch64-darwin";

  # Enable nix-darwin
  system.stateVersion = 5;

  # Enable nix flakes and new nix command
  nix.settings.experimental-features = [ "nix-command" "flakes" ];

  # Auto upgrade nix package and the daemon service
  services.nix-daemon.enable = true;

  # Enable Touch ID for sudo
  security.pam.enableSudoTouchIdAuth = true;

  # Basic system packages
  environment.systemPackages = with pkgs; [
    vim
    git
    curl
    wget
  ];

  # System defaults
  system.defaults = {
    dock.autohide = true;
    finder.AppleShowAllExtensions = true;
    NSGlobalDomain.AppleShowAllExtensions = true;
  };

  # Auto-optimize nix store
  nix.optimise.automatic = true;

  # Garbage collection
  nix.gc = {
    automatic = true;
    interval = { Weekday = 0; Hour = 0; Minute = 0; };
    options = "--delete-older-than 30d";
  };
}
"""

PACKAGES = ("ollama", "tmux", "go", "jq")

PACKAGES_SECTION = Section(
    marker="# Phase 1: Bootstrap packages",
    template="\n\n    # Phase 1: Bootstrap packages\n"
    + "\n".join(f"    {name}" for name in PACKAGES),
    container="environment.systemPackages = with pkgs; [",
)

SSH_SECTION = Section(
    marker="# Phase 1: SSH server for remote access",
    template=(
        "\n\n  # Phase 1: SSH server for remote access\n"
        "  services.openssh.enable = true;"
    ),
    existing=("services.openssh",),
)

AUTO_LOGIN_SECTION = Section(
    marker="# Phase 1: Auto-login for dedicated hardware",
    template=(
        "\n\n  # Phase 1: Auto-login for dedicated hardware\n"
        "  # Logs the owner back in after a power outage.\n"
        "  system.defaults.loginwindow = {\n"
        f'    autoLoginUser = "{OWNER_TOKEN}";\n'
        "  };"
    ),
    existing=("autoLoginUser",),
)

VOICE_SECTION = Section(
    marker="# Phase 3: Voice Output Configuration",
    template=(
        "\n\n  # Phase 3: Voice Output Configuration\n"
        "  # The speech voice is installed during the voice phase with softwareupdate;\n"
        "  # when that fails the operator installs it through System Settings."
    ),
)

LAUNCH_AGENT_LABEL = "com.ollama.service"

LAUNCH_AGENT_PLIST = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
	<key>Label</key>
	<string>{label}</string>
	<key>ProgramArguments</key>
	<array>
		<string>{ollama}</string>
		<string>serve</string>
	</array>
	<key>RunAtLoad</key>
	<true/>
	<key>KeepAlive</key>
	<true/>
	<key>StandardOutPath</key>
	<string>{home}/Library/Logs/ollama.log</string>
	<key>StandardErrorPath</key>
	<string>{home}/Library/Logs/ollama-error.log</string>
	<key>EnvironmentVariables</key>
	<dict>
		<key>PATH</key>
		<string>/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin:/run/current-system/sw/bin</string>
	</dict>
</dict>
</plist>
"""

VOICE_CONFIG_HEADER = (
    "Emrys Voice Output Configuration",
    "This file contains settings for text-to-speech output",
)

VOICE_CONFIG_COMMENTS = {
    "enabled": "Enable or disable voice output (true/false)",
    "voice": "Voice name (e.g., Jamie, Samantha, Alex)",
    "rate": "Speech rate in words per minute (typical range: 150-250)",
    "volume": "Volume from 0.0 to 1.0 (note: controlled via system volume)",
    "quiet_hours": "Enable quiet hours (true/false)",
    "quiet_start": "Quiet hours start (24-hour format, 0-23)",
    "quiet_end": "Quiet hours end (24-hour format, 0-23)",
}

VOICE_PACKAGE_IDS = (
    "com.apple.voice.compact.en-GB.{voice}",
    "com.apple.voice.premium.en-GB.{voice}",
    "VoiceOver_enGB_{voice}",
)

MANUAL_VOICE_STEPS = (
    "Open System Settings (or System Preferences)",
    "Go to Accessibility > Spoken Content",
    "Click on the 'System Voice' dropdown",
    "Select 'Manage Voices...'",
    "Find '{voice}' in the list and click the download icon",
    "Wait for the download to complete",
)

DASHBOARD_CONFIG_HEADER = (
    "Emrys Dashboard Configuration",
    "Settings for the terminal status dashboard",
)

DASHBOARD_CONFIG = {
    "enabled": True,
    "default_view": "status",
    "theme": "auto",
    "refresh_interval": 5,
    "show_resources": True,
    "log_retention": 7,
    "max_log_entries": 100,
}

DASHBOARD_CONFIG_COMMENTS = {
    "enabled": "Enable the dashboard on startup (true/false)",
    "default_view": "Default view mode (status, logs, config)",
    "theme": "Color theme (auto, light, dark)",
    "refresh_interval": "Refresh interval in seconds",
    "show_resources": "Show system resources (true/false)",
    "log_retention": "Log retention in days",
    "max_log_entries": "Maximum log entries to display",
}

DASHBOARD_LAUNCHER_NAME = "emrys-dashboard"

DASHBOARD_LAUNCHER = """#!/bin/sh
# Emrys dashboard launcher
exec "{python}" -m emrys status "$@"
"""

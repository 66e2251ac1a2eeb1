from __future__ import annotations

import os
from pathlib import Path

import pytest

from emrys import document as document_module
from emrys.bootstrap import templates
from emrys.document import OWNER_TOKEN, ConfigDocument, Placeholder, Section, owner_placeholder
from emrys.errors import MutationError

BASE = "{ config, pkgs, ... }:\n\n{\n  system.stateVersion = 5;\n}\n"


def test_ensure_section_inserts_before_closing_delimiter() -> None:
    doc = ConfigDocument(BASE, env={})

    changed = doc.ensure_section(
        "# SSH access", "\n  # SSH access\n  services.openssh.enable = true;"
    )

    assert changed is True
    assert doc.text == (
        "{ config, pkgs, ... }:\n\n{\n  system.stateVersion = 5;\n"
        "  # SSH access\n  services.openssh.enable = true;\n}\n"
    )


def test_ensure_section_twice_is_byte_identical() -> None:
    doc = ConfigDocument(BASE, env={})
    doc.ensure_section("# Marker", "\n  # Marker\n  a = 1;")
    first = doc.text

    assert doc.ensure_section("# Marker", "\n  # Marker\n  a = 1;") is False
    assert doc.text == first


def test_sections_are_inserted_in_request_order_exactly_once() -> None:
    doc = ConfigDocument("{\n}\n", env={})
    markers = ["# Zeta phase", "# Alpha phase", "# Mid phase"]

    for marker in markers:
        doc.ensure_section(marker, f"\n  {marker}")
    for marker in markers:
        doc.ensure_section(marker, f"\n  {marker}")

    positions = [doc.text.index(marker) for marker in markers]
    assert positions == sorted(positions)
    assert all(doc.text.count(marker) == 1 for marker in markers)
    assert doc.inserted_markers == markers


def test_marker_already_in_file_is_not_inserted() -> None:
    text = BASE.replace("}\n", "  # Marker\n}\n")
    doc = ConfigDocument(text, env={})

    assert doc.ensure_section("# Marker", "\n  # Marker") is False
    assert doc.changed is False


def test_placeholder_prefers_existing_owner_declaration() -> None:
    text = '{\n  system.primaryUser = "alice";\n}\n'
    doc = ConfigDocument(text, env={"USER": "mallory"})

    doc.ensure_section(
        "# Auto-login",
        f'\n  # Auto-login\n  user = "{OWNER_TOKEN}";',
        [owner_placeholder()],
    )

    assert 'user = "alice";' in doc.text
    assert "mallory" not in doc.text


def test_placeholder_falls_back_to_environment_then_home(tmp_path: Path) -> None:
    placeholder = owner_placeholder(home=tmp_path / "carol")

    env_doc = ConfigDocument("{\n}\n", env={"USER": "bob"})
    env_doc.ensure_section("# A", f"\n  # A {OWNER_TOKEN}", [placeholder])
    assert "# A bob" in env_doc.text

    home_doc = ConfigDocument("{\n}\n", env={})
    home_doc.ensure_section("# A", f"\n  # A {OWNER_TOKEN}", [placeholder])
    assert "# A carol" in home_doc.text


def test_unresolvable_placeholder_raises() -> None:
    doc = ConfigDocument("{\n}\n", env={})

    with pytest.raises(MutationError, match="__TOKEN__"):
        doc.ensure_section("# A", "\n  __TOKEN__", [Placeholder(token="__TOKEN__")])
    assert doc.text == "{\n}\n"


def test_container_insertion_extends_package_list() -> None:
    doc = ConfigDocument(templates.DEFAULT_DOCUMENT, env={"USER": "dave"})

    doc.ensure(templates.PACKAGES_SECTION)

    start = doc.text.index("environment.systemPackages")
    close = doc.text.index("\n  ];", start)
    package_block = doc.text[start:close]
    assert "# Phase 1: Bootstrap packages" in package_block
    for name in templates.PACKAGES:
        assert f"    {name}\n" in package_block + "\n"
    assert doc.text.rstrip().endswith("}")


def test_missing_container_raises() -> None:
    doc = ConfigDocument("{\n}\n", env={})

    with pytest.raises(MutationError, match="not found"):
        doc.ensure(Section(marker="# P", template="\n    p", container="packages = ["))


def test_document_without_closing_delimiter_is_rejected() -> None:
    with pytest.raises(MutationError, match="closing delimiter"):
        ConfigDocument("no braces here", env={})


def test_load_missing_file_raises_mutation_error(tmp_path: Path) -> None:
    with pytest.raises(MutationError, match="failed to read"):
        ConfigDocument.load(tmp_path / "missing.nix")


def test_save_without_changes_performs_no_write(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = tmp_path / "darwin-configuration.nix"
    path.write_text(BASE, encoding="utf-8")
    doc = ConfigDocument.load(path, env={})
    doc.ensure_section("# Marker", "\n  # Marker")
    assert doc.save() is True
    before = path.read_bytes()

    def fail_replace(*_args: object) -> None:
        raise AssertionError("document must not be rewritten")

    monkeypatch.setattr(document_module.os, "replace", fail_replace)
    rerun = ConfigDocument.load(path, env={})
    assert rerun.ensure_section("# Marker", "\n  # Marker") is False
    assert rerun.save() is False
    assert path.read_bytes() == before


def test_save_is_atomic_and_preserves_mode(tmp_path: Path) -> None:
    path = tmp_path / "darwin-configuration.nix"
    path.write_text(BASE, encoding="utf-8")
    os.chmod(path, 0o640)
    doc = ConfigDocument.load(path, env={})
    doc.ensure_section("# Marker", "\n  # Marker")

    doc.save()

    assert path.stat().st_mode & 0o777 == 0o640
    assert "# Marker" in path.read_text(encoding="utf-8")
    assert [p.name for p in tmp_path.iterdir()] == [path.name]
    assert doc.changed is False


def test_save_without_backing_file_raises() -> None:
    doc = ConfigDocument(BASE, env={})
    doc.ensure_section("# Marker", "\n  # Marker")

    with pytest.raises(MutationError, match="no backing file"):
        doc.save()


def test_existing_ssh_declaration_is_not_duplicated() -> None:
    text = "{\n  services.openssh.enable = false;\n}\n"
    doc = ConfigDocument(text, env={})

    assert doc.ensure(templates.SSH_SECTION) is False
    assert doc.text == text
    assert doc.changed is False


def test_existing_auto_login_skips_placeholder_resolution() -> None:
    text = '{\n  system.defaults.loginwindow.autoLoginUser = "erin";\n}\n'
    doc = ConfigDocument(text, env={})

    assert doc.ensure(templates.AUTO_LOGIN_SECTION, [Placeholder(token=OWNER_TOKEN)]) is False
    assert doc.text.count("autoLoginUser") == 1


def test_packages_phase_sections_apply_once_to_default_document() -> None:
    doc = ConfigDocument(templates.DEFAULT_DOCUMENT, env={"USER": "dave"})
    sections = (templates.PACKAGES_SECTION, templates.SSH_SECTION, templates.AUTO_LOGIN_SECTION)

    for section in sections:
        doc.ensure(section, [owner_placeholder()])
    first = doc.text
    for section in sections:
        assert doc.ensure(section, [owner_placeholder()]) is False

    assert doc.text == first
    assert first.count("services.openssh.enable") == 1
    assert 'autoLoginUser = "dave";' in first

"""Tests for settings validation and the ilspycmd adapter."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from assembly_analyzer.analysis.naming import ParameterKeyStyle
from assembly_analyzer.config import AnalysisSettings
from assembly_analyzer.errors import ProjectDecompilationError, SettingsError
from assembly_analyzer.io import ilspy_interface
from assembly_analyzer.io.ilspy_interface import build_project_command, decompile_project


@pytest.fixture
def assembly(tmp_path: Path) -> Path:
    path = tmp_path / "Demo.dll"
    path.write_bytes(b"MZ")
    return path


def test_pdb_file_implies_symbol_load(assembly: Path, tmp_path: Path) -> None:
    pdb = tmp_path / "Demo.pdb"
    pdb.write_bytes(b"")
    settings = AnalysisSettings(assembly, tmp_path / "out", pdb_file_path=pdb, parameter_key_style="types")

    assert settings.attempt_symbol_load
    assert settings.parameter_key_style is ParameterKeyStyle.TYPES
    assert settings.assembly_name == "Demo"
    assert settings.validate() is settings


def test_validate_rejects_missing_files(assembly: Path, tmp_path: Path) -> None:
    with pytest.raises(SettingsError):
        AnalysisSettings(tmp_path / "missing.dll", tmp_path / "out").validate()
    with pytest.raises(SettingsError):
        AnalysisSettings(assembly, tmp_path / "out", pdb_file_path=tmp_path / "missing.pdb").validate()
    with pytest.raises(SettingsError):
        AnalysisSettings(assembly, assembly).validate()


def test_project_command_maps_settings(assembly: Path, tmp_path: Path) -> None:
    plain = build_project_command(AnalysisSettings(assembly, tmp_path / "out"), "ilspycmd")
    assert plain[:3] == ["ilspycmd", str(assembly), "-p"]
    assert "--no-dead-code" not in plain
    assert plain[-1] == "--disable-updatecheck"

    settings = AnalysisSettings(
        assembly,
        tmp_path / "out",
        remove_dead_code=True,
        remove_dead_stores=True,
        nested_directories=True,
        attempt_symbol_load=True,
    )
    cmd = build_project_command(settings, "ilspycmd")
    for flag in ("--no-dead-code", "--no-dead-stores", "--nested-directories", "--use-varnames-from-pdb"):
        assert flag in cmd


def test_project_command_with_explicit_pdb(assembly: Path, tmp_path: Path) -> None:
    pdb = tmp_path / "Demo.pdb"
    pdb.write_bytes(b"")
    cmd = build_project_command(AnalysisSettings(assembly, tmp_path / "out", pdb_file_path=pdb), "ilspycmd")
    assert f"--use-varnames-from-pdb={pdb.resolve()}" in cmd


def test_missing_launcher(assembly: Path, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(ilspy_interface.shutil, "which", lambda name: None)
    with pytest.raises(ProjectDecompilationError):
        decompile_project(AnalysisSettings(assembly, tmp_path / "out"))


def test_failed_run_raises(assembly: Path, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(ilspy_interface.shutil, "which", lambda name: "/usr/bin/ilspycmd")
    monkeypatch.setattr(
        ilspy_interface.subprocess,
        "run",
        lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 3, stdout="", stderr="bad image"),
    )
    with pytest.raises(ProjectDecompilationError, match="bad image"):
        decompile_project(AnalysisSettings(assembly, tmp_path / "out"))


def test_successful_run_returns_project_file(assembly: Path, tmp_path: Path, monkeypatch) -> None:
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="done", stderr="")

    monkeypatch.setattr(ilspy_interface.shutil, "which", lambda name: "/usr/bin/ilspycmd")
    monkeypatch.setattr(ilspy_interface.subprocess, "run", fake_run)

    project = decompile_project(AnalysisSettings(assembly, tmp_path / "out"))

    assert project == (tmp_path / "out").resolve() / "Demo.csproj"
    assert calls and calls[0][0] == "/usr/bin/ilspycmd"

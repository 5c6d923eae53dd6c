"""Adapter for the ``ilspycmd`` command line decompiler."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import List

from assembly_analyzer.config import AnalysisSettings
from assembly_analyzer.errors import ProjectDecompilationError

LOGGER = logging.getLogger(__name__)


def build_project_command(settings: AnalysisSettings, launcher: str) -> List[str]:
    """Command line decompiling the whole assembly into a project under ``output_path``."""

    cmd = [launcher, str(settings.assembly_path), "-p", "-o", str(settings.output_path.resolve())]
    if settings.remove_dead_code:
        cmd.append("--no-dead-code")
    if settings.remove_dead_stores:
        cmd.append("--no-dead-stores")
    if settings.nested_directories:
        cmd.append("--nested-directories")
    if settings.attempt_symbol_load:
        if settings.pdb_file_path is not None:
            cmd.append(f"--use-varnames-from-pdb={settings.pdb_file_path.resolve()}")
        else:
            cmd.append("--use-varnames-from-pdb")
    cmd.append("--disable-updatecheck")
    return cmd


def decompile_project(settings: AnalysisSettings) -> Path:
    """Run ``ilspycmd`` and return the project file it wrote.

    Raises :class:`ProjectDecompilationError` when the launcher is missing or
    exits with a non-zero status.
    """

    launcher = shutil.which(settings.ilspycmd)
    if launcher is None:
        raise ProjectDecompilationError(f"Decompiler launcher not found: {settings.ilspycmd}")

    output_dir = settings.output_path.resolve()
    output_dir.mkdir(parents=True, exist_ok=True)
    cmd = build_project_command(settings, launcher)
    LOGGER.info("Decompiling project: %s", " ".join(cmd))
    completed = subprocess.run(cmd, check=False, text=True, capture_output=True)
    if completed.returncode != 0:
        detail = (completed.stderr or completed.stdout).strip()
        raise ProjectDecompilationError(
            f"{Path(launcher).name} exited with status {completed.returncode}: {detail}"
        )
    return output_dir / f"{settings.assembly_name}.csproj"


__all__ = ["build_project_command", "decompile_project"]

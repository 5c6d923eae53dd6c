"""Configuration primitives for an analysis run."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from assembly_analyzer.analysis.naming import ParameterKeyStyle
from assembly_analyzer.errors import SettingsError

DEFAULT_ILSPYCMD = "ilspycmd"


@dataclass(slots=True)
class AnalysisSettings:
    """Options of one analysis run.

    ``pdb_file_path`` implies ``attempt_symbol_load``. The decompilation
    toggles apply both to the per-method listings and to the optional full
    project decompilation.
    """

    assembly_path: Path
    output_path: Path
    include_full_project_decompilation: bool = False
    remove_dead_code: bool = False
    remove_dead_stores: bool = False
    ignore_compiler_generated: bool = False
    nested_directories: bool = False
    attempt_symbol_load: bool = False
    pdb_file_path: Optional[Path] = None
    no_formatting: bool = False
    parameter_key_style: ParameterKeyStyle = ParameterKeyStyle.NAMES
    legacy_self_reference: bool = False
    ilspycmd: str = DEFAULT_ILSPYCMD

    def __post_init__(self) -> None:
        self.assembly_path = Path(self.assembly_path)
        self.output_path = Path(self.output_path)
        if self.pdb_file_path is not None:
            self.pdb_file_path = Path(self.pdb_file_path)
            self.attempt_symbol_load = True
        self.parameter_key_style = ParameterKeyStyle(self.parameter_key_style)

    @property
    def assembly_name(self) -> str:
        return self.assembly_path.stem

    def validate(self) -> "AnalysisSettings":
        if not self.assembly_path.is_file():
            raise SettingsError(f"Assembly not found: {self.assembly_path}")
        if self.output_path.exists() and not self.output_path.is_dir():
            raise SettingsError(f"Output path is not a directory: {self.output_path}")
        if self.pdb_file_path is not None and not self.pdb_file_path.is_file():
            raise SettingsError(f"Pdb file not found: {self.pdb_file_path}")
        return self


__all__ = ["AnalysisSettings", "DEFAULT_ILSPYCMD"]

"""Report document produced by an analysis run."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from assembly_analyzer.analysis.call_resolver import CalledMethod
from assembly_analyzer.analysis.il_calls import PendingCallIndex
from assembly_analyzer.metadata.model import Handle, PeFacts


@dataclass(slots=True)
class PeInformation:
    file_size: int = 0
    image_base: int = 0
    entry_point_rva: int = 0
    section_alignment: int = 0
    file_alignment: int = 0

    @classmethod
    def from_facts(cls, facts: PeFacts) -> "PeInformation":
        return cls(
            file_size=facts.file_size,
            image_base=facts.image_base,
            entry_point_rva=facts.entry_point_rva,
            section_alignment=facts.section_alignment,
            file_alignment=facts.file_alignment,
        )

    def as_dict(self) -> dict:
        return {
            "file_size": self.file_size,
            "image_base": self.image_base,
            "entry_point_rva": self.entry_point_rva,
            "section_alignment": self.section_alignment,
            "file_alignment": self.file_alignment,
        }


@dataclass(slots=True)
class MethodParameter:
    name: str
    type: str

    def as_dict(self) -> dict:
        return {"name": self.name, "type": self.type}


@dataclass(slots=True)
class MethodReport:
    """One method entry.

    ``pending_calls`` holds the pass-1 call index until pass 2 replaces it
    with ``called_methods``; neither it nor ``handle`` is serialized.
    """

    name: str
    rva: int = 0
    size: int = 0
    parameters: List[MethodParameter] = field(default_factory=list)
    return_type: str = ""
    string_literals: List[str] = field(default_factory=list)
    il_bytes: str = ""
    decompiled_source: str = ""
    called_methods: List[CalledMethod] = field(default_factory=list)
    handle: Optional[Handle] = None
    pending_calls: Optional[PendingCallIndex] = None

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "rva": self.rva,
            "size": self.size,
            "parameters": [parameter.as_dict() for parameter in self.parameters],
            "return_type": self.return_type,
            "string_literals": list(self.string_literals),
            "il_bytes": self.il_bytes,
            "decompiled_source": self.decompiled_source,
            "called_methods": [called.as_dict() for called in self.called_methods],
        }


@dataclass(slots=True)
class TypeReport:
    name: str
    kind: str
    methods: List[MethodReport] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {"name": self.name, "kind": self.kind, "methods": [method.as_dict() for method in self.methods]}


@dataclass(slots=True)
class ImportedName:
    """Entry of the imported function, imported type and exported type lists."""

    full_name: str

    def as_dict(self) -> dict:
        return {"full_name": self.full_name}


@dataclass(slots=True)
class AssemblyReport:
    assembly: str = ""
    pe_information: PeInformation = field(default_factory=PeInformation)
    types: List[TypeReport] = field(default_factory=list)
    imported_functions: List[ImportedName] = field(default_factory=list)
    imported_types: List[ImportedName] = field(default_factory=list)
    exported_types: List[ImportedName] = field(default_factory=list)

    def iter_methods(self):
        for type_report in self.types:
            yield from type_report.methods

    def as_dict(self) -> dict:
        return {
            "assembly": self.assembly,
            "pe_information": self.pe_information.as_dict(),
            "types": [type_report.as_dict() for type_report in self.types],
            "imported_functions": [entry.as_dict() for entry in self.imported_functions],
            "imported_types": [entry.as_dict() for entry in self.imported_types],
            "exported_types": [entry.as_dict() for entry in self.exported_types],
        }


def write_report(report: AssemblyReport, destination: Path) -> Path:
    """Serialize ``report`` as indented UTF-8 JSON."""

    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    with destination.open("w", encoding="utf-8") as handle:
        json.dump(report.as_dict(), handle, indent=2, ensure_ascii=False)
    return destination


__all__ = [
    "AssemblyReport",
    "ImportedName",
    "MethodParameter",
    "MethodReport",
    "PeInformation",
    "TypeReport",
    "write_report",
]

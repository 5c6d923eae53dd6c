"""End-to-end analysis of one assembly into an :class:`AssemblyReport`."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from dncil.cil.body import CilMethodBody

from assembly_analyzer.analysis.call_resolver import CallGraphResolver, LocalMethod
from assembly_analyzer.analysis.il_calls import PendingCallIndex
from assembly_analyzer.analysis.il_listing import Decompiler, IlListingDecompiler
from assembly_analyzer.analysis.literals import iter_string_literals
from assembly_analyzer.analysis.naming import ParameterKeyStyle, key_for, type_full_name
from assembly_analyzer.analysis.report import (
    AssemblyReport,
    ImportedName,
    MethodParameter,
    MethodReport,
    PeInformation,
    TypeReport,
    write_report,
)
from assembly_analyzer.config import AnalysisSettings
from assembly_analyzer.io.assembly_loader import open_assembly
from assembly_analyzer.io.ilspy_interface import decompile_project
from assembly_analyzer.metadata.bodies import instruction_bytes, try_read_method_body
from assembly_analyzer.metadata.model import TYPE_ATTR_INTERFACE, MetadataStore, MethodDefRow, TableKind, TypeDefRow
from assembly_analyzer.metadata.signatures import SignatureFormatError, is_method_signature

LOGGER = logging.getLogger(__name__)

REPORT_FILENAME = "assembly_analysis.json"

DECOMPILATION_FAILED = "    <decompilation failed>"
IL_EMPTY = "<empty>"
IL_UNREADABLE = "<none>"
IL_ABSENT = "<abstract or external>"


def format_il_bytes(data: bytes) -> str:
    return " ".join(f"{byte:02X}" for byte in data)


def type_kind(store: MetadataStore, row: TypeDefRow) -> str:
    if row.flags & TYPE_ATTR_INTERFACE:
        return "Interface"
    base = type_full_name(store, row.extends) if row.extends is not None else ""
    if base == "System.Enum":
        return "Enum"
    if base == "System.ValueType" and (row.namespace, row.name) != ("System", "Enum"):
        return "Struct"
    if base == "System.MulticastDelegate":
        return "Delegate"
    return "Class"


def read_il_bytes(store: MetadataStore, method: MethodDefRow, body: Optional[CilMethodBody]) -> Tuple[int, str]:
    """IL code size and its hex rendering, or a placeholder when there is no code.

    ``body`` is the decoded body, ``None`` when it is absent or did not decode.
    """

    if method.rva == 0:
        return 0, IL_ABSENT
    if body is None:
        return 0, IL_UNREADABLE
    code = instruction_bytes(store, method, body)
    return len(code), format_il_bytes(code) if code else IL_EMPTY


class AssemblyAnalyzer:
    """Builds the report of one loaded assembly.

    Every type is listed and its methods are decoded once. Pass 1 fills a
    lookup table of local methods and the per-method facts; pass 2 resolves
    each method's calls against the frozen table.
    """

    def __init__(
        self,
        store: MetadataStore,
        *,
        decompiler: Optional[Decompiler] = None,
        style: ParameterKeyStyle = ParameterKeyStyle.NAMES,
        legacy_self_reference: bool = False,
        ignore_compiler_generated: bool = False,
        assembly_name: str = "",
    ) -> None:
        self.store = store
        self.decompiler = decompiler or IlListingDecompiler(store)
        self.style = style
        self.resolver = CallGraphResolver(store, style=style, legacy_self_reference=legacy_self_reference)
        self.ignore_compiler_generated = ignore_compiler_generated
        self.assembly_name = assembly_name

    @classmethod
    def from_settings(cls, store: MetadataStore, settings: AnalysisSettings) -> "AssemblyAnalyzer":
        decompiler = IlListingDecompiler(
            store,
            remove_dead_code=settings.remove_dead_code,
            remove_dead_stores=settings.remove_dead_stores,
            no_formatting=settings.no_formatting,
        )
        return cls(
            store,
            decompiler=decompiler,
            style=settings.parameter_key_style,
            legacy_self_reference=settings.legacy_self_reference,
            ignore_compiler_generated=settings.ignore_compiler_generated,
            assembly_name=settings.assembly_name,
        )

    def analyze(self) -> AssemblyReport:
        report = AssemblyReport(
            assembly=self.assembly_name,
            pe_information=PeInformation.from_facts(self.store.pe_facts),
        )
        visited: List[Tuple[TypeReport, MethodDefRow]] = []
        for type_row in self.store.type_defs.values():
            type_report = TypeReport(name=key_for(self.store, type_row.handle), kind=type_kind(self.store, type_row))
            report.types.append(type_report)
            for method in self.store.iter_methods(type_row.handle):
                if method.compiler_generated and self.ignore_compiler_generated:
                    continue
                visited.append((type_report, method))

        # each body is decoded once and shared by call extraction, IL bytes and the listing
        bodies = {method.handle: try_read_method_body(self.store, method) for _, method in visited}
        table, scanned = self.resolver.scan((method for _, method in visited), bodies)

        locals_by_report: List[Tuple[MethodReport, LocalMethod]] = []
        for (type_report, method), (local, pending) in zip(visited, scanned):
            method_report = self.describe_method(method, local, pending, bodies[method.handle])
            type_report.methods.append(method_report)
            locals_by_report.append((method_report, local))

        for method_report, local in locals_by_report:
            method_report.called_methods = self.resolver.resolve(table, local, method_report.pending_calls or {})
            method_report.pending_calls = None

        report.imported_functions = self.imported_functions()
        report.imported_types = [ImportedName(key_for(self.store, handle)) for handle in self.store.type_refs]
        report.exported_types = [ImportedName(key_for(self.store, handle)) for handle in self.store.exported_types]
        LOGGER.info(
            "Analyzed %d types, %d methods; %d imported functions",
            len(report.types),
            len(locals_by_report),
            len(report.imported_functions),
        )
        return report

    def describe_method(
        self,
        method: MethodDefRow,
        local: LocalMethod,
        pending: PendingCallIndex,
        body: Optional[CilMethodBody],
    ) -> MethodReport:
        size, il_text = read_il_bytes(self.store, method, body)
        return_type, parameters = self.method_signature(method)
        source, literals = self.decompile(method, body)
        return MethodReport(
            name=local.name,
            rva=method.rva,
            size=size,
            parameters=parameters,
            return_type=return_type,
            string_literals=literals,
            il_bytes=il_text,
            decompiled_source=source,
            handle=method.handle,
            pending_calls=pending,
        )

    def method_signature(self, method: MethodDefRow) -> Tuple[str, List[MethodParameter]]:
        try:
            return_type, parameter_types = self.decompiler.resolve_signature(method.handle)
        except (SignatureFormatError, KeyError) as exc:
            LOGGER.debug("Signature of %s not decoded: %s", method.name, exc)
            return "", []
        names = {param.sequence: param.name for param in method.params if param.name}
        parameters = [
            MethodParameter(name=names.get(position, f"param{position}"), type=parameter_type)
            for position, parameter_type in enumerate(parameter_types, start=1)
        ]
        return return_type, parameters

    def decompile(self, method: MethodDefRow, body: Optional[CilMethodBody]) -> Tuple[str, List[str]]:
        if method.has_body and body is None:
            LOGGER.warning("Decompilation of %s (%s) failed: IL body did not decode", method.name, method.handle)
            return DECOMPILATION_FAILED, []
        try:
            text = self.decompiler.decompile(method.handle, body)
        except Exception as exc:  # the decompiler may fail arbitrarily on one method
            LOGGER.warning("Decompilation of %s (%s) failed: %s", method.name, method.handle, exc)
            return DECOMPILATION_FAILED, []
        return text, list(iter_string_literals(text))

    def imported_functions(self) -> List[ImportedName]:
        names: List[ImportedName] = []
        seen = set()
        for handle, ref in self.store.member_refs.items():
            if ref.parent is None or ref.parent.table != TableKind.TYPE_REF:
                continue
            if not is_method_signature(ref.signature):
                continue
            key = key_for(self.store, handle)
            if key not in seen:
                seen.add(key)
                names.append(ImportedName(key))
        return names


def analyze_assembly(settings: AnalysisSettings) -> AssemblyReport:
    """Load, analyze and (optionally) decompile the configured assembly.

    The assembly is closed on every exit path. Raises
    :class:`~assembly_analyzer.errors.AnalyzerError` subclasses on fatal errors.
    """

    settings.validate()
    with open_assembly(settings.assembly_path) as assembly:
        report = AssemblyAnalyzer.from_settings(assembly.store, settings).analyze()
    if settings.include_full_project_decompilation:
        project = decompile_project(settings)
        LOGGER.info("Decompiled project written to: %s", project)
    return report


def run_analysis(settings: AnalysisSettings) -> Path:
    report = analyze_assembly(settings)
    return write_report(report, settings.output_path / REPORT_FILENAME)


__all__ = [
    "AssemblyAnalyzer",
    "DECOMPILATION_FAILED",
    "REPORT_FILENAME",
    "analyze_assembly",
    "format_il_bytes",
    "read_il_bytes",
    "run_analysis",
    "type_kind",
]

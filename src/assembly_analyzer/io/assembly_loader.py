"""Open .NET assemblies with dnfile and convert their metadata tables."""

from __future__ import annotations

import logging
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import dnfile
import pefile

from assembly_analyzer.errors import AssemblyLoadError
from assembly_analyzer.metadata.model import (
    ExportedTypeRow,
    Handle,
    MemberRefRow,
    MetadataStore,
    MethodDefRow,
    MethodSpecRow,
    ParamRow,
    PeFacts,
    TableKind,
    TypeDefRow,
    TypeRefRow,
    TypeSpecRow,
)

LOGGER = logging.getLogger(__name__)

COMPILER_GENERATED_ATTRIBUTE = ("System.Runtime.CompilerServices", "CompilerGeneratedAttribute")


def _text(value) -> str:
    if value is None:
        return ""
    value = getattr(value, "value", value)
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _blob(value) -> bytes:
    if value is None:
        return b""
    value = getattr(value, "value", value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    return b""


def _flags(row, name: str) -> int:
    raw = getattr(getattr(row, "struct", None), name, None)
    if isinstance(raw, int):
        return raw
    value = getattr(row, name, 0)
    value = getattr(value, "value", value)
    return value if isinstance(value, int) else 0


def _index_handle(index) -> Optional[Handle]:
    """Handle for a dnfile ``MDTableIndex``/``CodedIndex``, ``None`` when nil."""

    if index is None:
        return None
    rid = getattr(index, "row_index", 0)
    table = getattr(index, "table", None)
    if not rid or table is None:
        return None
    return Handle(int(table.number), int(rid))


def _rows(tables, name: str) -> List:
    table = getattr(tables, name, None)
    if table is None:
        return []
    return list(table)


class _UserStringHeap:
    """``get(offset)`` view over the dnfile #US heap."""

    def __init__(self, heap) -> None:
        self._heap = heap

    def get(self, offset: int, default: Optional[str] = None) -> Optional[str]:
        if self._heap is None:
            return default
        try:
            item = self._heap.get(offset)
        except (UnicodeDecodeError, IndexError, ValueError):
            return default
        if item is None:
            return default
        value = getattr(item, "value", item)
        if isinstance(value, bytes):
            value = value.decode("utf-16-le", errors="replace")
        return value if value is not None else default


def _generic_parameters(tables) -> Dict[Handle, Tuple[str, ...]]:
    grouped: Dict[Handle, List[Tuple[int, str]]] = defaultdict(list)
    for row in _rows(tables, "GenericParam"):
        owner = _index_handle(getattr(row, "Owner", None))
        if owner is None:
            continue
        grouped[owner].append((int(getattr(row, "Number", 0)), _text(row.Name)))
    return {owner: tuple(name for _, name in sorted(entries)) for owner, entries in grouped.items()}


def _nesting(tables) -> Dict[Handle, Handle]:
    declaring: Dict[Handle, Handle] = {}
    for row in _rows(tables, "NestedClass"):
        nested = _index_handle(row.NestedClass)
        enclosing = _index_handle(row.EnclosingClass)
        if nested is not None and enclosing is not None:
            declaring[nested] = enclosing
    return declaring


def _compiler_generated_targets(
    tables,
    type_refs: Dict[Handle, TypeRefRow],
    member_refs: Dict[Handle, MemberRefRow],
    method_owner: Dict[Handle, Handle],
    type_names: Dict[Handle, Tuple[str, str]],
) -> set[Handle]:
    marked: set[Handle] = set()
    for row in _rows(tables, "CustomAttribute"):
        parent = _index_handle(row.Parent)
        constructor = _index_handle(row.Type)
        if parent is None or constructor is None:
            continue
        attribute_type: Optional[Tuple[str, str]] = None
        if constructor.table == TableKind.MEMBER_REF and constructor in member_refs:
            owner = member_refs[constructor].parent
            if owner is not None and owner in type_refs:
                ref = type_refs[owner]
                attribute_type = (ref.namespace, ref.name)
        elif constructor.table == TableKind.METHOD_DEF and constructor in method_owner:
            attribute_type = type_names.get(method_owner[constructor])
        if attribute_type == COMPILER_GENERATED_ATTRIBUTE:
            marked.add(parent)
    return marked


def _pe_facts(pe: pefile.PE, file_size: int) -> PeFacts:
    header = getattr(pe, "OPTIONAL_HEADER", None)
    if header is None:
        raise AssemblyLoadError("No PE header available")
    return PeFacts(
        file_size=file_size,
        image_base=int(header.ImageBase),
        entry_point_rva=int(header.AddressOfEntryPoint),
        section_alignment=int(header.SectionAlignment),
        file_alignment=int(header.FileAlignment),
    )


def build_store(pe: dnfile.dnPE, *, file_size: int = 0) -> MetadataStore:
    """Convert the metadata tables of an opened assembly into a :class:`MetadataStore`."""

    pe_facts = _pe_facts(pe, file_size)
    net = getattr(pe, "net", None)
    if net is None or getattr(net, "mdtables", None) is None:
        raise AssemblyLoadError("No CLR metadata found; not a .NET assembly")
    tables = net.mdtables

    generics = _generic_parameters(tables)
    declaring = _nesting(tables)

    type_refs: Dict[Handle, TypeRefRow] = {}
    for rid, row in enumerate(_rows(tables, "TypeRef"), start=1):
        handle = Handle(TableKind.TYPE_REF, rid)
        type_refs[handle] = TypeRefRow(
            handle=handle,
            namespace=_text(row.TypeNamespace),
            name=_text(row.TypeName),
            resolution_scope=_index_handle(getattr(row, "ResolutionScope", None)),
        )

    method_owner: Dict[Handle, Handle] = {}
    type_rows: List[Tuple[Handle, object, Tuple[Handle, ...]]] = []
    type_names: Dict[Handle, Tuple[str, str]] = {}
    for rid, row in enumerate(_rows(tables, "TypeDef"), start=1):
        handle = Handle(TableKind.TYPE_DEF, rid)
        methods = tuple(
            Handle(TableKind.METHOD_DEF, int(index.row_index))
            for index in (getattr(row, "MethodList", None) or [])
            if getattr(index, "row_index", 0)
        )
        for method in methods:
            method_owner[method] = handle
        type_rows.append((handle, row, methods))
        type_names[handle] = (_text(row.TypeNamespace), _text(row.TypeName))

    member_refs: Dict[Handle, MemberRefRow] = {}
    for rid, row in enumerate(_rows(tables, "MemberRef"), start=1):
        handle = Handle(TableKind.MEMBER_REF, rid)
        member_refs[handle] = MemberRefRow(
            handle=handle,
            parent=_index_handle(getattr(row, "Class", None)),
            name=_text(row.Name),
            signature=_blob(row.Signature),
        )

    compiler_generated = _compiler_generated_targets(tables, type_refs, member_refs, method_owner, type_names)

    type_defs: Dict[Handle, TypeDefRow] = {}
    for handle, row, methods in type_rows:
        namespace, name = type_names[handle]
        type_defs[handle] = TypeDefRow(
            handle=handle,
            namespace=namespace,
            name=name,
            flags=_flags(row, "Flags"),
            extends=_index_handle(getattr(row, "Extends", None)),
            declaring_type=declaring.get(handle),
            methods=methods,
            generic_parameters=generics.get(handle, ()),
        )

    method_defs: Dict[Handle, MethodDefRow] = {}
    for rid, row in enumerate(_rows(tables, "MethodDef"), start=1):
        handle = Handle(TableKind.METHOD_DEF, rid)
        owner = method_owner.get(handle)
        if owner is None:
            LOGGER.debug("MethodDef %s has no owning type; skipped", handle)
            continue
        params = tuple(
            ParamRow(sequence=int(getattr(index.row, "Sequence", 0)), name=_text(index.row.Name))
            for index in (getattr(row, "ParamList", None) or [])
            if getattr(index, "row", None) is not None
        )
        method_defs[handle] = MethodDefRow(
            handle=handle,
            name=_text(row.Name),
            owner=owner,
            flags=_flags(row, "Flags"),
            impl_flags=_flags(row, "ImplFlags"),
            rva=int(getattr(row, "Rva", 0) or 0),
            signature=_blob(row.Signature),
            params=params,
            generic_parameters=generics.get(handle, ()),
            compiler_generated=handle in compiler_generated,
        )

    exported_types: Dict[Handle, ExportedTypeRow] = {}
    for rid, row in enumerate(_rows(tables, "ExportedType"), start=1):
        handle = Handle(TableKind.EXPORTED_TYPE, rid)
        exported_types[handle] = ExportedTypeRow(
            handle=handle, namespace=_text(row.TypeNamespace), name=_text(row.TypeName)
        )

    method_specs: Dict[Handle, MethodSpecRow] = {}
    for rid, row in enumerate(_rows(tables, "MethodSpec"), start=1):
        handle = Handle(TableKind.METHOD_SPEC, rid)
        method_specs[handle] = MethodSpecRow(
            handle=handle,
            method=_index_handle(getattr(row, "Method", None)),
            instantiation=_blob(getattr(row, "Instantiation", None)),
        )

    type_specs: Dict[Handle, TypeSpecRow] = {}
    for rid, row in enumerate(_rows(tables, "TypeSpec"), start=1):
        handle = Handle(TableKind.TYPE_SPEC, rid)
        type_specs[handle] = TypeSpecRow(handle=handle, signature=_blob(row.Signature))

    return MetadataStore(
        type_defs=type_defs,
        type_refs=type_refs,
        exported_types=exported_types,
        method_defs=method_defs,
        member_refs=member_refs,
        method_specs=method_specs,
        type_specs=type_specs,
        image=pe.get_memory_mapped_image(),
        user_strings=_UserStringHeap(getattr(net, "user_strings", None)),
        pe_facts=pe_facts,
    )


class AssemblyHandle:
    """An open assembly and its metadata; close it (or use ``with``) when done."""

    def __init__(self, path: Path, pe: dnfile.dnPE, store: MetadataStore) -> None:
        self.path = path
        self.store = store
        self._pe: Optional[dnfile.dnPE] = pe

    @property
    def closed(self) -> bool:
        return self._pe is None

    def close(self) -> None:
        if self._pe is not None:
            self._pe.close()
            self._pe = None

    def __enter__(self) -> "AssemblyHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def open_assembly(path: Path) -> AssemblyHandle:
    """Open ``path``, validate its PE and CLR headers and load its metadata.

    Raises :class:`AssemblyLoadError` for missing, unreadable or non-.NET files.
    Any exception dnfile raises while parsing a corrupt image is reported the
    same way.
    """

    path = Path(path)
    if not path.is_file():
        raise AssemblyLoadError(f"Assembly not found: {path}")
    try:
        pe = dnfile.dnPE(str(path))
    except Exception as exc:  # corrupt tables fail in arbitrary ways inside dnfile
        raise AssemblyLoadError(f"Unreadable binary {path}: {exc}") from exc

    try:
        store = build_store(pe, file_size=path.stat().st_size)
    except AssemblyLoadError:
        pe.close()
        raise
    except Exception as exc:
        pe.close()
        raise AssemblyLoadError(f"Unreadable binary {path}: {exc}") from exc
    LOGGER.info(
        "Loaded %s: %d types, %d methods, %d member references",
        path.name,
        len(store.type_defs),
        len(store.method_defs),
        len(store.member_refs),
    )
    return AssemblyHandle(path, pe, store)


__all__ = ["AssemblyHandle", "build_store", "open_assembly"]

"""Tests for converting dnfile metadata tables and opening assemblies."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from assembly_analyzer.errors import AssemblyLoadError
from assembly_analyzer.io import assembly_loader
from assembly_analyzer.io.assembly_loader import build_store, open_assembly
from assembly_analyzer.metadata.model import Handle, ParamRow, PeFacts, TableKind

from conftest import memberref, methoddef, typedef, typeref

IMAGE = bytes(range(16)) * 4


def index(table: TableKind, rid: int) -> SimpleNamespace:
    """Stand-in for a dnfile ``MDTableIndex``/``CodedIndex``."""

    return SimpleNamespace(table=SimpleNamespace(number=int(table)), row_index=rid)


def param(sequence: int, name: str) -> SimpleNamespace:
    return SimpleNamespace(row=SimpleNamespace(Sequence=sequence, Name=name))


def method(name: str, *, flags: int = 0x0086, rva: int = 0x10, params=()) -> SimpleNamespace:
    return SimpleNamespace(Name=name, Flags=flags, ImplFlags=0, Rva=rva, Signature=b"\x20\x00\x01", ParamList=list(params))


class UserStrings:
    def get(self, offset: int):
        if offset != 1:
            raise IndexError(offset)
        return SimpleNamespace(value="hi".encode("utf-16-le"))


def demo_tables() -> SimpleNamespace:
    return SimpleNamespace(
        TypeRef=[
            SimpleNamespace(TypeNamespace="System", TypeName="Object", ResolutionScope=index(TableKind.ASSEMBLY_REF, 1)),
            SimpleNamespace(
                TypeNamespace="System.Runtime.CompilerServices",
                TypeName="CompilerGeneratedAttribute",
                ResolutionScope=index(TableKind.ASSEMBLY_REF, 1),
            ),
        ],
        TypeDef=[
            SimpleNamespace(TypeNamespace="", TypeName="<Module>", Flags=0, Extends=None, MethodList=[]),
            SimpleNamespace(
                TypeNamespace="Demo",
                TypeName="Outer`2",
                Flags=0x00100001,
                Extends=index(TableKind.TYPE_REF, 1),
                MethodList=[index(TableKind.METHOD_DEF, 1), index(TableKind.METHOD_DEF, 2)],
            ),
            SimpleNamespace(
                TypeNamespace="",
                TypeName="Inner",
                Flags=0x00100002,
                Extends=index(TableKind.TYPE_REF, 1),
                MethodList=[index(TableKind.METHOD_DEF, 3)],
            ),
        ],
        MethodDef=[
            method("Run", params=[param(1, "item"), param(2, "count")]),
            method("<Run>b__0", flags=0x0091),
            SimpleNamespace(
                Name="Helper",
                struct=SimpleNamespace(Flags=0x0096, ImplFlags=0),
                Flags=None,
                ImplFlags=None,
                Rva=0,
                Signature=b"\x00\x00\x01",
                ParamList=[],
            ),
            method("Orphan"),
        ],
        MemberRef=[
            SimpleNamespace(Class=index(TableKind.TYPE_REF, 2), Name=".ctor", Signature=b"\x20\x00\x01"),
        ],
        CustomAttribute=[
            SimpleNamespace(Parent=index(TableKind.METHOD_DEF, 2), Type=index(TableKind.MEMBER_REF, 1)),
            SimpleNamespace(Parent=index(TableKind.TYPE_DEF, 3), Type=index(TableKind.MEMBER_REF, 9)),
        ],
        GenericParam=[
            SimpleNamespace(Owner=index(TableKind.TYPE_DEF, 2), Number=1, Name="V"),
            SimpleNamespace(Owner=index(TableKind.TYPE_DEF, 2), Number=0, Name="U"),
            SimpleNamespace(Owner=index(TableKind.METHOD_DEF, 1), Number=0, Name="T"),
        ],
        NestedClass=[
            SimpleNamespace(NestedClass=index(TableKind.TYPE_DEF, 3), EnclosingClass=index(TableKind.TYPE_DEF, 2)),
        ],
        ExportedType=[SimpleNamespace(TypeNamespace="Demo", TypeName="Forwarded")],
        MethodSpec=[SimpleNamespace(Method=index(TableKind.METHOD_DEF, 1), Instantiation=b"\x0a\x01\x0e")],
        TypeSpec=[SimpleNamespace(Signature=b"\x15\x12\x05\x01\x0e")],
    )


class StubPE:
    """The parts of ``dnfile.dnPE`` the loader reads."""

    def __init__(self, tables=None, *, with_clr: bool = True, with_header: bool = True) -> None:
        if with_header:
            self.OPTIONAL_HEADER = SimpleNamespace(
                ImageBase=0x10000000,
                AddressOfEntryPoint=0x2000,
                SectionAlignment=0x2000,
                FileAlignment=0x200,
            )
        self.net = SimpleNamespace(mdtables=tables or demo_tables(), user_strings=UserStrings()) if with_clr else None
        self.closed = False

    def get_memory_mapped_image(self) -> bytes:
        return IMAGE

    def close(self) -> None:
        self.closed = True


def test_types_methods_and_ownership() -> None:
    store = build_store(StubPE(), file_size=0x1800)

    assert list(store.type_defs) == [typedef(1), typedef(2), typedef(3)]
    outer = store.type_defs[typedef(2)]
    assert (outer.namespace, outer.name) == ("Demo", "Outer`2")
    assert outer.extends == typeref(1)
    assert outer.methods == (methoddef(1), methoddef(2))
    assert store.method_defs[methoddef(3)].owner == typedef(3)
    assert methoddef(4) not in store.method_defs


def test_nesting_and_generic_arity() -> None:
    store = build_store(StubPE())

    assert store.type_defs[typedef(3)].declaring_type == typedef(2)
    assert store.type_defs[typedef(2)].declaring_type is None
    assert store.type_defs[typedef(2)].generic_parameters == ("U", "V")
    assert store.type_defs[typedef(2)].generic_arity == 2
    assert store.method_defs[methoddef(1)].generic_parameters == ("T",)
    assert store.method_defs[methoddef(3)].generic_arity == 0


def test_parameters_and_flags() -> None:
    store = build_store(StubPE())
    run = store.method_defs[methoddef(1)]
    helper = store.method_defs[methoddef(3)]

    assert run.params == (ParamRow(1, "item"), ParamRow(2, "count"))
    assert run.rva == 0x10
    assert run.signature == b"\x20\x00\x01"
    assert helper.flags == 0x0096
    assert helper.rva == 0
    assert not helper.has_body


def test_compiler_generated_detection() -> None:
    store = build_store(StubPE())

    assert store.method_defs[methoddef(2)].compiler_generated
    assert not store.method_defs[methoddef(1)].compiler_generated
    assert not store.method_defs[methoddef(3)].compiler_generated


def test_references_specs_and_exports() -> None:
    store = build_store(StubPE())

    assert store.type_refs[typeref(2)].name == "CompilerGeneratedAttribute"
    assert store.type_refs[typeref(1)].resolution_scope == Handle(TableKind.ASSEMBLY_REF, 1)
    assert store.member_refs[memberref(1)].parent == typeref(2)
    assert store.member_refs[memberref(1)].name == ".ctor"
    spec = store.method_specs[Handle(TableKind.METHOD_SPEC, 1)]
    assert spec.method == methoddef(1)
    assert spec.instantiation == b"\x0a\x01\x0e"
    assert store.type_specs[Handle(TableKind.TYPE_SPEC, 1)].signature == b"\x15\x12\x05\x01\x0e"
    exported = store.exported_types[Handle(TableKind.EXPORTED_TYPE, 1)]
    assert (exported.namespace, exported.name) == ("Demo", "Forwarded")


def test_pe_facts_image_and_user_strings() -> None:
    store = build_store(StubPE(), file_size=0x1800)

    assert store.pe_facts == PeFacts(
        file_size=0x1800,
        image_base=0x10000000,
        entry_point_rva=0x2000,
        section_alignment=0x2000,
        file_alignment=0x200,
    )
    assert store.image == IMAGE
    assert store.user_string(1) == "hi"
    assert store.user_string(7) is None


def test_missing_clr_metadata_is_fatal() -> None:
    with pytest.raises(AssemblyLoadError, match="No CLR metadata"):
        build_store(StubPE(with_clr=False))
    with pytest.raises(AssemblyLoadError, match="No PE header"):
        build_store(StubPE(with_header=False))


@pytest.fixture
def assembly_file(tmp_path: Path) -> Path:
    path = tmp_path / "Demo.dll"
    path.write_bytes(b"MZ" + bytes(64))
    return path


def test_open_assembly_loads_and_releases(assembly_file: Path, monkeypatch) -> None:
    pe = StubPE()
    monkeypatch.setattr(assembly_loader.dnfile, "dnPE", lambda path: pe)

    with open_assembly(assembly_file) as assembly:
        assert assembly.store.pe_facts.file_size == assembly_file.stat().st_size
        assert len(assembly.store.method_defs) == 3
        assert not assembly.closed
    assert assembly.closed
    assert pe.closed


def test_open_missing_assembly(tmp_path: Path) -> None:
    with pytest.raises(AssemblyLoadError, match="not found"):
        open_assembly(tmp_path / "missing.dll")


def test_open_non_pe_file(tmp_path: Path) -> None:
    junk = tmp_path / "junk.dll"
    junk.write_bytes(b"this is not a portable executable")

    with pytest.raises(AssemblyLoadError, match="Unreadable binary"):
        open_assembly(junk)


def test_parser_crash_becomes_load_error(assembly_file: Path, monkeypatch) -> None:
    def crashing_parser(path):
        raise AttributeError("'ManifestResourceRowStruct' object has no attribute 'Implementation_CodedIndex'")

    monkeypatch.setattr(assembly_loader.dnfile, "dnPE", crashing_parser)

    with pytest.raises(AssemblyLoadError, match="Unreadable binary"):
        open_assembly(assembly_file)


def test_conversion_crash_becomes_load_error_and_closes(assembly_file: Path, monkeypatch) -> None:
    broken_tables = SimpleNamespace(TypeDef=[SimpleNamespace(TypeName="NoNamespaceAttribute")])
    pe = StubPE(broken_tables)
    monkeypatch.setattr(assembly_loader.dnfile, "dnPE", lambda path: pe)

    with pytest.raises(AssemblyLoadError, match="Unreadable binary"):
        open_assembly(assembly_file)
    assert pe.closed


def test_non_clr_image_is_closed(assembly_file: Path, monkeypatch) -> None:
    pe = StubPE(with_clr=False)
    monkeypatch.setattr(assembly_loader.dnfile, "dnPE", lambda path: pe)

    with pytest.raises(AssemblyLoadError, match="No CLR metadata"):
        open_assembly(assembly_file)
    assert pe.closed

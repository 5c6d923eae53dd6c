"""Shared fixtures: a small hand-assembled assembly held in memory."""

from __future__ import annotations

import pytest

from assembly_analyzer.metadata.model import (
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
)


def typedef(rid: int) -> Handle:
    return Handle(TableKind.TYPE_DEF, rid)


def typeref(rid: int) -> Handle:
    return Handle(TableKind.TYPE_REF, rid)


def methoddef(rid: int) -> Handle:
    return Handle(TableKind.METHOD_DEF, rid)


def memberref(rid: int) -> Handle:
    return Handle(TableKind.MEMBER_REF, rid)


IMAGE_SIZE = 0x100

# Tiny-format bodies: header byte (code size << 2 | 2) followed by the code.
M1_BODY = bytes.fromhex(
    "86"
    "7201000070"  # ldstr "Hello, world"
    "17"  # ldc.i4.1
    "2802000006"  # call Demo.A::M2
    "26"  # pop
    "7201000070"
    "280100000A"  # call System.Console::WriteLine
    "7201000070"
    "280100000A"  # call System.Console::WriteLine, again
    "2A"  # ret
)
M2_BODY = bytes.fromhex("16" "00" "03" "0A" "16" "2A")  # nop, ldarg.1, stloc.0, ldc.i4.0, ret
CTOR_BODY = bytes.fromhex("1E" "02" "280200000A" "2A")  # ldarg.0, call System.Object::.ctor, ret
RUN_BODY = bytes.fromhex(
    "4E"
    "02"
    "2801000006"  # call Demo.A::M1
    "02"
    "14"
    "280100002B"  # call Run<string> (MethodSpec)
    "286300000A"  # call to a MemberRef row that does not exist
    "2A"
)

M1_RVA, M2_RVA, CTOR_RVA, RUN_RVA, BROKEN_RVA = 0x10, 0x40, 0x50, 0x60, 0x200

M1_KEY = "Demo.A`0|0x02000002.M1`0()|Public, HideBySig|0x06000001"
M2_KEY = "Demo.A`0|0x02000002.M2`0(s,count)|Private, Static, HideBySig|0x06000002"
CTOR_KEY = "Demo.A`0|0x02000002.ctor`0()|Public, HideBySig, SpecialName, RTSpecialName|0x06000003"
RUN_KEY = "Demo.Outer+Inner`0|0x02000004.Run`1(item)|Public|0x06000005"
WRITELINE_FALLBACK = "System.Console.WriteLine`0(System.String)|Public|static|0x0A000001"
OBJECT_CTOR_FALLBACK = "System.Object..ctor`0()|Public|0x0A000002"


def build_image() -> bytes:
    image = bytearray(IMAGE_SIZE)
    for rva, body in ((M1_RVA, M1_BODY), (M2_RVA, M2_BODY), (CTOR_RVA, CTOR_BODY), (RUN_RVA, RUN_BODY)):
        image[rva : rva + len(body)] = body
    return bytes(image)


def build_store() -> MetadataStore:
    type_refs = {
        typeref(1): TypeRefRow(typeref(1), "System", "Object"),
        typeref(2): TypeRefRow(typeref(2), "System", "Console"),
    }
    type_defs = {
        typedef(1): TypeDefRow(typedef(1), "", "<Module>"),
        typedef(2): TypeDefRow(
            typedef(2),
            "Demo",
            "A",
            flags=0x00100001,
            extends=typeref(1),
            methods=(methoddef(1), methoddef(2), methoddef(3), methoddef(4)),
        ),
        typedef(3): TypeDefRow(typedef(3), "Demo", "Outer", flags=0x00100001, extends=typeref(1)),
        typedef(4): TypeDefRow(
            typedef(4),
            "",
            "Inner",
            flags=0x00100002,
            extends=typeref(1),
            declaring_type=typedef(3),
            methods=(methoddef(5),),
        ),
        typedef(5): TypeDefRow(typedef(5), "Demo", "Empty", flags=0x00100001, extends=typeref(1)),
        typedef(6): TypeDefRow(typedef(6), "Demo", "IShape", flags=0xA1, methods=(methoddef(6),)),
    }
    method_defs = {
        methoddef(1): MethodDefRow(methoddef(1), "M1", typedef(2), flags=0x0086, rva=M1_RVA, signature=bytes.fromhex("200001")),
        methoddef(2): MethodDefRow(
            methoddef(2),
            "M2",
            typedef(2),
            flags=0x0091,
            rva=M2_RVA,
            signature=bytes.fromhex("0002080E08"),
            params=(ParamRow(1, "s"), ParamRow(2, "count")),
        ),
        methoddef(3): MethodDefRow(methoddef(3), ".ctor", typedef(2), flags=0x1886, rva=CTOR_RVA, signature=bytes.fromhex("200001")),
        methoddef(4): MethodDefRow(methoddef(4), "Broken", typedef(2), flags=0x0016, rva=BROKEN_RVA, signature=bytes.fromhex("000001")),
        methoddef(5): MethodDefRow(
            methoddef(5),
            "Run",
            typedef(4),
            flags=0x0006,
            rva=RUN_RVA,
            signature=bytes.fromhex("300101011E00"),
            params=(ParamRow(1, "item"),),
            generic_parameters=("T",),
        ),
        methoddef(6): MethodDefRow(methoddef(6), "Area", typedef(6), flags=0x05C6, signature=bytes.fromhex("20000D")),
    }
    member_refs = {
        memberref(1): MemberRefRow(memberref(1), typeref(2), "WriteLine", bytes.fromhex("0001010E")),
        memberref(2): MemberRefRow(memberref(2), typeref(1), ".ctor", bytes.fromhex("200001")),
    }
    method_specs = {
        Handle(TableKind.METHOD_SPEC, 1): MethodSpecRow(
            Handle(TableKind.METHOD_SPEC, 1), methoddef(5), bytes.fromhex("0A010E")
        ),
    }
    return MetadataStore(
        type_defs=type_defs,
        type_refs=type_refs,
        method_defs=method_defs,
        member_refs=member_refs,
        method_specs=method_specs,
        image=build_image(),
        user_strings={1: "Hello, world"},
        pe_facts=PeFacts(
            file_size=0x1000,
            image_base=0x400000,
            entry_point_rva=0x2000,
            section_alignment=0x2000,
            file_alignment=0x200,
        ),
    )


@pytest.fixture
def demo_store() -> MetadataStore:
    return build_store()

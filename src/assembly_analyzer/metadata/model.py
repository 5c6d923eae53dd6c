"""Immutable in-memory view of the metadata tables of one assembly."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterator, Optional, Protocol, Tuple


class TableKind(IntEnum):
    """ECMA-335 metadata table numbers used by the analyzer."""

    MODULE = 0x00
    TYPE_REF = 0x01
    TYPE_DEF = 0x02
    FIELD = 0x04
    METHOD_DEF = 0x06
    PARAM = 0x08
    MEMBER_REF = 0x0A
    CUSTOM_ATTRIBUTE = 0x0C
    STANDALONE_SIG = 0x11
    MODULE_REF = 0x1A
    TYPE_SPEC = 0x1B
    ASSEMBLY_REF = 0x23
    EXPORTED_TYPE = 0x27
    NESTED_CLASS = 0x29
    GENERIC_PARAM = 0x2A
    METHOD_SPEC = 0x2B


TABLE_NAMES = {
    TableKind.MODULE: "Module",
    TableKind.TYPE_REF: "TypeRef",
    TableKind.TYPE_DEF: "TypeDef",
    TableKind.FIELD: "Field",
    TableKind.METHOD_DEF: "MethodDef",
    TableKind.PARAM: "Param",
    TableKind.MEMBER_REF: "MemberRef",
    TableKind.CUSTOM_ATTRIBUTE: "CustomAttribute",
    TableKind.STANDALONE_SIG: "StandAloneSig",
    TableKind.MODULE_REF: "ModuleRef",
    TableKind.TYPE_SPEC: "TypeSpec",
    TableKind.ASSEMBLY_REF: "AssemblyRef",
    TableKind.EXPORTED_TYPE: "ExportedType",
    TableKind.NESTED_CLASS: "NestedClass",
    TableKind.GENERIC_PARAM: "GenericParam",
    TableKind.METHOD_SPEC: "MethodSpec",
}


@dataclass(frozen=True, slots=True, order=True)
class Handle:
    """Reference to one metadata row; ``rid`` is 1-based, 0 means nil."""

    table: int
    rid: int

    @classmethod
    def from_token(cls, token: int) -> "Handle":
        return cls((token >> 24) & 0xFF, token & 0x00FFFFFF)

    @property
    def token(self) -> int:
        return (self.table << 24) | self.rid

    @property
    def is_nil(self) -> bool:
        return self.rid == 0

    @property
    def kind_name(self) -> str:
        try:
            return TABLE_NAMES[TableKind(self.table)]
        except ValueError:
            return f"Table{self.table:02X}"

    def __str__(self) -> str:
        return f"0x{self.token:08X}"


# TypeAttributes
TYPE_ATTR_INTERFACE = 0x00000020

# MethodAttributes
METHOD_ATTR_ACCESS_MASK = 0x0007
METHOD_ATTR_STATIC = 0x0010
METHOD_ATTR_FINAL = 0x0020
METHOD_ATTR_VIRTUAL = 0x0040
METHOD_ATTR_HIDE_BY_SIG = 0x0080
METHOD_ATTR_NEW_SLOT = 0x0100
METHOD_ATTR_STRICT = 0x0200
METHOD_ATTR_ABSTRACT = 0x0400
METHOD_ATTR_SPECIAL_NAME = 0x0800
METHOD_ATTR_RT_SPECIAL_NAME = 0x1000
METHOD_ATTR_PINVOKE_IMPL = 0x2000
METHOD_ATTR_UNMANAGED_EXPORT = 0x0008
METHOD_ATTR_HAS_SECURITY = 0x4000
METHOD_ATTR_REQUIRE_SEC_OBJECT = 0x8000

# MethodImplAttributes
METHOD_IMPL_CODE_TYPE_MASK = 0x0003
METHOD_IMPL_IL = 0x0000
METHOD_IMPL_INTERNAL_CALL = 0x1000


@dataclass(frozen=True, slots=True)
class TypeDefRow:
    handle: Handle
    namespace: str
    name: str
    flags: int = 0
    extends: Optional[Handle] = None
    declaring_type: Optional[Handle] = None
    methods: Tuple[Handle, ...] = ()
    generic_parameters: Tuple[str, ...] = ()

    @property
    def generic_arity(self) -> int:
        return len(self.generic_parameters)


@dataclass(frozen=True, slots=True)
class TypeRefRow:
    handle: Handle
    namespace: str
    name: str
    resolution_scope: Optional[Handle] = None


@dataclass(frozen=True, slots=True)
class ExportedTypeRow:
    handle: Handle
    namespace: str
    name: str


@dataclass(frozen=True, slots=True)
class ParamRow:
    sequence: int
    name: str


@dataclass(frozen=True, slots=True)
class MethodDefRow:
    handle: Handle
    name: str
    owner: Handle
    flags: int = 0
    impl_flags: int = 0
    rva: int = 0
    signature: bytes = b""
    params: Tuple[ParamRow, ...] = ()
    generic_parameters: Tuple[str, ...] = ()
    compiler_generated: bool = False

    @property
    def generic_arity(self) -> int:
        return len(self.generic_parameters)

    @property
    def has_body(self) -> bool:
        if self.rva == 0:
            return False
        if self.flags & (METHOD_ATTR_ABSTRACT | METHOD_ATTR_PINVOKE_IMPL):
            return False
        if self.impl_flags & METHOD_IMPL_INTERNAL_CALL:
            return False
        return (self.impl_flags & METHOD_IMPL_CODE_TYPE_MASK) == METHOD_IMPL_IL


@dataclass(frozen=True, slots=True)
class MemberRefRow:
    handle: Handle
    parent: Optional[Handle]
    name: str
    signature: bytes = b""


@dataclass(frozen=True, slots=True)
class MethodSpecRow:
    handle: Handle
    method: Optional[Handle]
    instantiation: bytes = b""


@dataclass(frozen=True, slots=True)
class TypeSpecRow:
    handle: Handle
    signature: bytes = b""


@dataclass(frozen=True, slots=True)
class PeFacts:
    file_size: int = 0
    image_base: int = 0
    entry_point_rva: int = 0
    section_alignment: int = 0
    file_alignment: int = 0


class UserStringSource(Protocol):
    def get(self, offset: int, default: Optional[str] = None) -> Optional[str]:
        ...


@dataclass(slots=True)
class MetadataStore:
    """Metadata rows keyed by handle, in table order, plus the mapped image."""

    type_defs: Dict[Handle, TypeDefRow] = field(default_factory=dict)
    type_refs: Dict[Handle, TypeRefRow] = field(default_factory=dict)
    exported_types: Dict[Handle, ExportedTypeRow] = field(default_factory=dict)
    method_defs: Dict[Handle, MethodDefRow] = field(default_factory=dict)
    member_refs: Dict[Handle, MemberRefRow] = field(default_factory=dict)
    method_specs: Dict[Handle, MethodSpecRow] = field(default_factory=dict)
    type_specs: Dict[Handle, TypeSpecRow] = field(default_factory=dict)
    image: bytes = b""
    user_strings: UserStringSource = field(default_factory=dict)
    pe_facts: PeFacts = field(default_factory=PeFacts)

    def type_def(self, handle: Handle) -> TypeDefRow:
        try:
            return self.type_defs[handle]
        except KeyError:
            raise KeyError(f"No TypeDef row for {handle}") from None

    def method_def(self, handle: Handle) -> MethodDefRow:
        try:
            return self.method_defs[handle]
        except KeyError:
            raise KeyError(f"No MethodDef row for {handle}") from None

    def iter_methods(self, type_handle: Handle) -> Iterator[MethodDefRow]:
        for method_handle in self.type_def(type_handle).methods:
            method = self.method_defs.get(method_handle)
            if method is not None:
                yield method

    def user_string(self, offset: int) -> Optional[str]:
        return self.user_strings.get(offset)

    def read_image(self, rva: int, size: int) -> bytes:
        if rva < 0 or size < 0 or rva + size > len(self.image):
            raise ValueError(f"Range 0x{rva:X}+{size} outside of the mapped image")
        return bytes(self.image[rva : rva + size])


__all__ = [
    "ExportedTypeRow",
    "Handle",
    "MemberRefRow",
    "MetadataStore",
    "MethodDefRow",
    "MethodSpecRow",
    "ParamRow",
    "PeFacts",
    "TableKind",
    "TypeDefRow",
    "TypeRefRow",
    "TypeSpecRow",
    "UserStringSource",
]

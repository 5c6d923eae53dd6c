"""Unique, deterministic identity keys for metadata entities.

Plain metadata names collide (overloads, generic arities, nested types), so
every key embeds the metadata token of the row it was computed from. The key
rules live in :func:`entity_key`, dispatched over small frozen variants that
carry exactly the fields a rule needs; the ``describe_*`` helpers build those
variants from a :class:`MetadataStore`.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from functools import singledispatch
from typing import Dict, Optional, Sequence, Tuple, Union

from assembly_analyzer.metadata.model import (
    METHOD_ATTR_ABSTRACT,
    METHOD_ATTR_ACCESS_MASK,
    METHOD_ATTR_FINAL,
    METHOD_ATTR_HAS_SECURITY,
    METHOD_ATTR_HIDE_BY_SIG,
    METHOD_ATTR_NEW_SLOT,
    METHOD_ATTR_PINVOKE_IMPL,
    METHOD_ATTR_REQUIRE_SEC_OBJECT,
    METHOD_ATTR_RT_SPECIAL_NAME,
    METHOD_ATTR_SPECIAL_NAME,
    METHOD_ATTR_STATIC,
    METHOD_ATTR_STRICT,
    METHOD_ATTR_UNMANAGED_EXPORT,
    METHOD_ATTR_VIRTUAL,
    Handle,
    MetadataStore,
    TableKind,
)
from assembly_analyzer.metadata.signatures import SignatureDecoder, SignatureFormatError

MAX_NESTING_DEPTH = 64

ACCESS_NAMES = {
    0: "PrivateScope",
    1: "Private",
    2: "FamANDAssem",
    3: "Assembly",
    4: "Family",
    5: "FamORAssem",
    6: "Public",
}

# Same access levels, named the way a type system reports accessibility.
ACCESSIBILITY_NAMES = {
    0: "None",
    1: "Private",
    2: "ProtectedAndInternal",
    3: "Internal",
    4: "Protected",
    5: "ProtectedOrInternal",
    6: "Public",
}

FLAG_NAMES = (
    (METHOD_ATTR_UNMANAGED_EXPORT, "UnmanagedExport"),
    (METHOD_ATTR_STATIC, "Static"),
    (METHOD_ATTR_FINAL, "Final"),
    (METHOD_ATTR_VIRTUAL, "Virtual"),
    (METHOD_ATTR_HIDE_BY_SIG, "HideBySig"),
    (METHOD_ATTR_NEW_SLOT, "NewSlot"),
    (METHOD_ATTR_STRICT, "CheckAccessOnOverride"),
    (METHOD_ATTR_ABSTRACT, "Abstract"),
    (METHOD_ATTR_SPECIAL_NAME, "SpecialName"),
    (METHOD_ATTR_RT_SPECIAL_NAME, "RTSpecialName"),
    (METHOD_ATTR_PINVOKE_IMPL, "PinvokeImpl"),
    (METHOD_ATTR_HAS_SECURITY, "HasSecurity"),
    (METHOD_ATTR_REQUIRE_SEC_OBJECT, "RequireSecObject"),
)

# Member references to other assemblies can only bind to members visible to us.
EXTERNAL_ACCESSIBILITY = "Public"


class ParameterKeyStyle(str, Enum):
    """Where the parameter list of a method key comes from."""

    NAMES = "names"
    TYPES = "types"


@dataclass(frozen=True, slots=True)
class TypeDefinition:
    name: str
    namespace: str
    generic_arity: int
    token: int
    declaring_type: Optional["TypeDefinition"] = None


@dataclass(frozen=True, slots=True)
class TypeReference:
    namespace: str
    name: str
    token: int


@dataclass(frozen=True, slots=True)
class ExportedType:
    namespace: str
    name: str
    token: int


@dataclass(frozen=True, slots=True)
class TypeSpecification:
    text: str
    token: int


@dataclass(frozen=True, slots=True)
class MethodDefinition:
    owner: TypeDefinition
    name: str
    generic_arity: int
    parameter_types: Tuple[str, ...]
    attributes: str
    token: int


ParentEntity = Union[TypeDefinition, TypeReference, ExportedType, TypeSpecification, MethodDefinition, str]


@dataclass(frozen=True, slots=True)
class MemberReference:
    parent: ParentEntity
    name: str
    signature: bytes
    token: int


@dataclass(frozen=True, slots=True)
class ResolvedMethodInfo:
    declaring_type: str
    name: str
    generic_arity: int
    parameter_types: Tuple[str, ...]
    accessibility: str
    is_static: bool
    is_abstract: bool
    is_virtual: bool
    token: int


Entity = Union[
    TypeDefinition,
    TypeReference,
    ExportedType,
    TypeSpecification,
    MethodDefinition,
    MemberReference,
    ResolvedMethodInfo,
]


def strip_marker(name: str) -> str:
    """Drop the leading ``.`` of special names such as ``.ctor``."""

    return name[1:] if name.startswith(".") else name


def _qualified(namespace: str, name: str) -> str:
    return f"{namespace}.{name}" if namespace else name


def signature_digest(signature: bytes) -> str:
    return hashlib.sha256(signature).hexdigest()[:8].upper()


def render_method_attributes(flags: int) -> str:
    parts = [ACCESS_NAMES.get(flags & METHOD_ATTR_ACCESS_MASK, "PrivateScope")]
    parts.extend(name for bit, name in FLAG_NAMES if flags & bit)
    return ", ".join(parts)


# ---------------------------------------------------------------------------
#  Key rules
# ---------------------------------------------------------------------------


@singledispatch
def entity_key(entity: object) -> str:
    """Return the identity key of a metadata entity variant."""

    raise TypeError(f"No identity rule for {type(entity).__name__}")


@entity_key.register(TypeDefinition)
def _type_definition_key(entity: TypeDefinition) -> str:
    names = []
    outermost = entity
    node: Optional[TypeDefinition] = entity
    while node is not None and len(names) < MAX_NESTING_DEPTH:
        names.append(node.name)
        outermost = node
        node = node.declaring_type
    full_name = _qualified(outermost.namespace, "+".join(reversed(names)))
    return f"{full_name}`{entity.generic_arity}|0x{entity.token:08X}"


@entity_key.register(TypeReference)
@entity_key.register(ExportedType)
def _reference_type_key(entity: Union[TypeReference, ExportedType]) -> str:
    # no arity or nesting information is recorded for these rows
    return f"{_qualified(entity.namespace, entity.name)}|0x{entity.token:08X}"


@entity_key.register(TypeSpecification)
def _type_specification_key(entity: TypeSpecification) -> str:
    return f"{entity.text}|0x{entity.token:08X}"


@entity_key.register(MethodDefinition)
def _method_definition_key(entity: MethodDefinition) -> str:
    params = ",".join(entity.parameter_types)
    return (
        f"{entity_key(entity.owner)}.{strip_marker(entity.name)}`{entity.generic_arity}"
        f"({params})|{entity.attributes}|0x{entity.token:08X}"
    )


@entity_key.register(MemberReference)
def _member_reference_key(entity: MemberReference) -> str:
    parent = entity.parent if isinstance(entity.parent, str) else entity_key(entity.parent)
    signature = f"|sig:0x{signature_digest(entity.signature)}" if entity.signature else ""
    return f"{parent}.{strip_marker(entity.name)}{signature}|0x{entity.token:08X}"


@entity_key.register(ResolvedMethodInfo)
def _resolved_method_key(entity: ResolvedMethodInfo) -> str:
    attributes = entity.accessibility
    if entity.is_static:
        attributes += "|static"
    if entity.is_abstract:
        attributes += "|abstract"
    if entity.is_virtual:
        attributes += "|virtual"
    params = ",".join(entity.parameter_types)
    return (
        f"{entity.declaring_type}.{entity.name}`{entity.generic_arity}"
        f"({params})|{attributes}|0x{entity.token:08X}"
    )


# ---------------------------------------------------------------------------
#  Type names used inside signatures
# ---------------------------------------------------------------------------


def type_full_name(store: MetadataStore, handle: Handle, _depth: int = 0) -> str:
    """Dotted full name of a type handle, nested types joined with ``.``."""

    if _depth > MAX_NESTING_DEPTH:
        return handle.kind_name
    if handle.table == TableKind.TYPE_DEF and handle in store.type_defs:
        row = store.type_defs[handle]
        if row.declaring_type is not None and row.declaring_type in store.type_defs:
            return f"{type_full_name(store, row.declaring_type, _depth + 1)}.{row.name}"
        return _qualified(row.namespace, row.name)
    if handle.table == TableKind.TYPE_REF and handle in store.type_refs:
        ref = store.type_refs[handle]
        scope = ref.resolution_scope
        if scope is not None and scope.table == TableKind.TYPE_REF and scope in store.type_refs:
            return f"{type_full_name(store, scope, _depth + 1)}.{ref.name}"
        return _qualified(ref.namespace, ref.name)
    if handle.table == TableKind.TYPE_SPEC and handle in store.type_specs:
        decoder = signature_decoder(store, _depth=_depth + 1)
        try:
            return decoder.decode_type(store.type_specs[handle].signature)
        except SignatureFormatError:
            return handle.kind_name
    return handle.kind_name


def signature_decoder(
    store: MetadataStore,
    *,
    type_parameters: Sequence[str] = (),
    method_parameters: Sequence[str] = (),
    _depth: int = 0,
) -> SignatureDecoder:
    return SignatureDecoder(
        lambda handle: type_full_name(store, handle, _depth),
        type_parameters=type_parameters,
        method_parameters=method_parameters,
    )


def method_decoder(store: MetadataStore, method_handle: Handle) -> SignatureDecoder:
    """Decoder with the generic parameter names of a local method in scope."""

    method = store.method_def(method_handle)
    owner = store.type_defs.get(method.owner)
    type_parameters = owner.generic_parameters if owner is not None else ()
    return signature_decoder(
        store, type_parameters=type_parameters, method_parameters=method.generic_parameters
    )


# ---------------------------------------------------------------------------
#  Variant builders
# ---------------------------------------------------------------------------


def describe_type_definition(store: MetadataStore, handle: Handle) -> TypeDefinition:
    chain = []
    seen = set()
    current: Optional[Handle] = handle
    while current is not None and current in store.type_defs and current not in seen:
        seen.add(current)
        chain.append(store.type_defs[current])
        current = chain[-1].declaring_type
    if not chain:
        raise KeyError(f"No TypeDef row for {handle}")

    described: Optional[TypeDefinition] = None
    for row in reversed(chain):
        described = TypeDefinition(
            name=row.name,
            namespace=row.namespace,
            generic_arity=row.generic_arity,
            token=row.handle.token,
            declaring_type=described,
        )
    assert described is not None
    return described


def describe_type_reference(store: MetadataStore, handle: Handle) -> TypeReference:
    row = store.type_refs[handle]
    return TypeReference(namespace=row.namespace, name=row.name, token=handle.token)


def describe_exported_type(store: MetadataStore, handle: Handle) -> ExportedType:
    row = store.exported_types[handle]
    return ExportedType(namespace=row.namespace, name=row.name, token=handle.token)


def _parameter_texts(
    store: MetadataStore, method_handle: Handle, style: ParameterKeyStyle
) -> Tuple[str, ...]:
    method = store.method_def(method_handle)
    try:
        signature_types = method_decoder(store, method_handle).decode_method(method.signature).parameter_types
    except SignatureFormatError:
        signature_types = ()

    names: Dict[int, str] = {}
    if style is ParameterKeyStyle.NAMES:
        names = {param.sequence: param.name for param in method.params if param.sequence > 0 and param.name}

    count = max(len(signature_types), max(names, default=0))
    texts = []
    for position in range(1, count + 1):
        if position in names:
            texts.append(names[position])
        elif position <= len(signature_types):
            texts.append(signature_types[position - 1])
        else:
            texts.append("?")
    return tuple(texts)


def describe_method_definition(
    store: MetadataStore,
    handle: Handle,
    *,
    style: ParameterKeyStyle = ParameterKeyStyle.NAMES,
) -> MethodDefinition:
    method = store.method_def(handle)
    return MethodDefinition(
        owner=describe_type_definition(store, method.owner),
        name=method.name,
        generic_arity=method.generic_arity,
        parameter_types=_parameter_texts(store, handle, style),
        attributes=render_method_attributes(method.flags),
        token=handle.token,
    )


def _describe_parent(store: MetadataStore, parent: Optional[Handle]) -> ParentEntity:
    if parent is None:
        return "Nil"
    if parent.table == TableKind.TYPE_REF and parent in store.type_refs:
        return describe_type_reference(store, parent)
    if parent.table == TableKind.TYPE_DEF and parent in store.type_defs:
        return describe_type_definition(store, parent)
    if parent.table == TableKind.TYPE_SPEC and parent in store.type_specs:
        return TypeSpecification(text=type_full_name(store, parent), token=parent.token)
    if parent.table == TableKind.METHOD_DEF and parent in store.method_defs:
        return describe_method_definition(store, parent)
    return parent.kind_name


def describe_member_reference(store: MetadataStore, handle: Handle) -> MemberReference:
    row = store.member_refs[handle]
    return MemberReference(
        parent=_describe_parent(store, row.parent),
        name=row.name,
        signature=row.signature,
        token=handle.token,
    )


def generic_instance_parts(store: MetadataStore, type_spec: Handle) -> Tuple[Optional[Handle], Tuple[str, ...]]:
    """Split a generic-instance TypeSpec into its generic type and arguments."""

    row = store.type_specs.get(type_spec)
    if row is None:
        return None, ()
    try:
        return signature_decoder(store).decode_generic_instance(row.signature)
    except SignatureFormatError:
        return None, ()


def describe_resolved_method(
    store: MetadataStore,
    handle: Handle,
    *,
    method_instantiation: Sequence[str] = (),
) -> Optional[ResolvedMethodInfo]:
    """Describe a call target from the type-system view available at a call site.

    Returns ``None`` when the handle denotes nothing callable.
    """

    if handle.table == TableKind.METHOD_DEF and handle in store.method_defs:
        method = store.method_defs[handle]
        owner = store.type_defs.get(method.owner)
        decoder = signature_decoder(
            store,
            type_parameters=owner.generic_parameters if owner is not None else (),
            method_parameters=tuple(method_instantiation) or method.generic_parameters,
        )
        try:
            parameters = decoder.decode_method(method.signature).parameter_types
        except SignatureFormatError:
            parameters = ()
        flags = method.flags
        return ResolvedMethodInfo(
            declaring_type=type_full_name(store, method.owner),
            name=method.name,
            generic_arity=method.generic_arity,
            parameter_types=parameters,
            accessibility=ACCESSIBILITY_NAMES.get(flags & METHOD_ATTR_ACCESS_MASK, "None"),
            is_static=bool(flags & METHOD_ATTR_STATIC),
            is_abstract=bool(flags & METHOD_ATTR_ABSTRACT),
            is_virtual=bool(flags & METHOD_ATTR_VIRTUAL),
            token=handle.token,
        )

    if handle.table == TableKind.MEMBER_REF and handle in store.member_refs:
        ref = store.member_refs[handle]
        parent = ref.parent
        type_arguments: Tuple[str, ...] = ()
        if parent is None:
            declaring_type = "Nil"
        elif parent.table == TableKind.TYPE_SPEC:
            generic_type, type_arguments = generic_instance_parts(store, parent)
            declaring_type = type_full_name(store, generic_type or parent)
        elif parent.table == TableKind.METHOD_DEF and parent in store.method_defs:
            declaring_type = type_full_name(store, store.method_defs[parent].owner)
        else:
            declaring_type = type_full_name(store, parent)
        decoder = signature_decoder(
            store, type_parameters=type_arguments, method_parameters=method_instantiation
        )
        try:
            signature = decoder.decode_method(ref.signature)
        except SignatureFormatError:
            return None
        return ResolvedMethodInfo(
            declaring_type=declaring_type,
            name=ref.name,
            generic_arity=signature.generic_arity,
            parameter_types=signature.parameter_types,
            accessibility=EXTERNAL_ACCESSIBILITY,
            is_static=not signature.has_this,
            is_abstract=False,
            is_virtual=False,
            token=handle.token,
        )
    return None


def describe_entity(
    store: MetadataStore,
    handle: Handle,
    *,
    style: ParameterKeyStyle = ParameterKeyStyle.NAMES,
) -> Entity:
    if handle.table == TableKind.TYPE_DEF:
        return describe_type_definition(store, handle)
    if handle.table == TableKind.TYPE_REF:
        return describe_type_reference(store, handle)
    if handle.table == TableKind.EXPORTED_TYPE:
        return describe_exported_type(store, handle)
    if handle.table == TableKind.METHOD_DEF:
        return describe_method_definition(store, handle, style=style)
    if handle.table == TableKind.MEMBER_REF:
        return describe_member_reference(store, handle)
    raise KeyError(f"No identity rule for {handle.kind_name} rows")


def key_for(
    store: MetadataStore,
    handle: Handle,
    *,
    style: ParameterKeyStyle = ParameterKeyStyle.NAMES,
) -> str:
    """Convenience wrapper: describe ``handle`` and return its identity key."""

    return entity_key(describe_entity(store, handle, style=style))


__all__ = [
    "ExportedType",
    "MemberReference",
    "MethodDefinition",
    "ParameterKeyStyle",
    "ResolvedMethodInfo",
    "TypeDefinition",
    "TypeReference",
    "TypeSpecification",
    "describe_entity",
    "describe_exported_type",
    "describe_member_reference",
    "describe_method_definition",
    "describe_resolved_method",
    "describe_type_definition",
    "describe_type_reference",
    "entity_key",
    "generic_instance_parts",
    "key_for",
    "method_decoder",
    "render_method_attributes",
    "signature_decoder",
    "strip_marker",
    "type_full_name",
]

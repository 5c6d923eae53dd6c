"""Extraction of call targets from CIL method bodies."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, Optional, Tuple

from dncil.cil.body import CilMethodBody

from assembly_analyzer.analysis.naming import (
    describe_member_reference,
    describe_resolved_method,
    entity_key,
    generic_instance_parts,
    signature_decoder,
)
from assembly_analyzer.metadata.bodies import BODY_DECODE_ERRORS, read_method_body
from assembly_analyzer.metadata.model import Handle, MetadataStore, MethodDefRow, TableKind
from assembly_analyzer.metadata.signatures import SignatureFormatError

LOGGER = logging.getLogger(__name__)

CALL_MNEMONICS = frozenset({"call", "callvirt", "newobj"})

# Raw callee handle -> fallback name, in first-occurrence order.
PendingCallIndex = Dict[Handle, str]


def mnemonic(instruction) -> str:
    opcode = instruction.opcode
    return getattr(opcode, "name", None) or str(opcode)


def operand_token(instruction) -> Optional[int]:
    operand = instruction.operand
    value = getattr(operand, "value", operand)
    return value if isinstance(value, int) else None


def iter_call_instructions(instructions: Iterable) -> Iterator:
    """Yield the call instructions of a decoded body in offset order."""

    for instruction in instructions:
        if mnemonic(instruction) in CALL_MNEMONICS:
            yield instruction


def bind_member_reference(store: MetadataStore, handle: Handle) -> Optional[Handle]:
    """Local MethodDef a MemberRef points at, when its parent type is defined here.

    Covers references through a TypeDef parent and through a TypeSpec that
    instantiates a local generic type; matching is by name and signature blob.
    """

    ref = store.member_refs.get(handle)
    if ref is None or ref.parent is None:
        return None
    owner: Optional[Handle] = ref.parent
    if owner.table == TableKind.TYPE_SPEC:
        owner, _ = generic_instance_parts(store, owner)
    if owner is None or owner.table != TableKind.TYPE_DEF or owner not in store.type_defs:
        return None
    for method in store.iter_methods(owner):
        if method.name == ref.name and method.signature == ref.signature:
            return method.handle
    return None


def resolve_call_target(store: MetadataStore, token: int) -> Optional[Tuple[Handle, Tuple[str, ...]]]:
    """Statically resolve a call operand token.

    Returns the callee handle and the method instantiation (for generic
    method calls), or ``None`` when the token does not name a method row.
    """

    handle = Handle.from_token(token)
    instantiation: Tuple[str, ...] = ()
    if handle.table == TableKind.METHOD_SPEC:
        spec = store.method_specs.get(handle)
        if spec is None or spec.method is None:
            return None
        try:
            instantiation = signature_decoder(store).decode_method_spec(spec.instantiation)
        except SignatureFormatError:
            instantiation = ()
        handle = spec.method

    if handle.table == TableKind.METHOD_DEF:
        return (handle, instantiation) if handle in store.method_defs else None
    if handle.table == TableKind.MEMBER_REF and handle in store.member_refs:
        return bind_member_reference(store, handle) or handle, instantiation
    return None


def fallback_name(store: MetadataStore, handle: Handle, instantiation: Tuple[str, ...] = ()) -> str:
    """Name a callee from the call-site view of it; used when no local definition binds."""

    resolved = describe_resolved_method(store, handle, method_instantiation=instantiation)
    if resolved is not None:
        return entity_key(resolved)
    # undecodable signature: fall back to the reference's own metadata key
    return entity_key(describe_member_reference(store, handle))


def collect_calls(store: MetadataStore, instructions: Iterable) -> PendingCallIndex:
    pending: PendingCallIndex = {}
    for instruction in iter_call_instructions(instructions):
        token = operand_token(instruction)
        if token is None:
            continue
        target = resolve_call_target(store, token)
        if target is None:
            LOGGER.debug("Skipping unresolvable call operand 0x%08X", token)
            continue
        handle, instantiation = target
        if handle not in pending:
            pending[handle] = fallback_name(store, handle, instantiation)
    return pending


def extract_calls(
    store: MetadataStore, method: MethodDefRow, body: Optional[CilMethodBody] = None
) -> PendingCallIndex:
    """Index the distinct call targets of ``method``.

    ``body`` is decoded from the image when not supplied. Methods without a
    body, or whose body does not decode, yield an empty index; the failure
    never leaves this method.
    """

    try:
        if body is None:
            body = read_method_body(store, method)
        return collect_calls(store, body.instructions)
    except BODY_DECODE_ERRORS as exc:
        LOGGER.debug("No calls extracted from %s (%s): %s", method.name, method.handle, exc)
        return {}


__all__ = [
    "CALL_MNEMONICS",
    "PendingCallIndex",
    "bind_member_reference",
    "collect_calls",
    "extract_calls",
    "fallback_name",
    "iter_call_instructions",
    "mnemonic",
    "operand_token",
    "resolve_call_target",
]

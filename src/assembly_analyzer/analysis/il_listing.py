"""Textual CIL listings, the per-method "decompiled" text of the report."""

from __future__ import annotations

from typing import Optional, Protocol, Set, Tuple

from dncil.cil.body import CilMethodBody
from dncil.clr.token import StringToken, Token

from assembly_analyzer.analysis.il_calls import mnemonic, resolve_call_target
from assembly_analyzer.analysis.literals import quote
from assembly_analyzer.analysis.naming import (
    describe_resolved_method,
    method_decoder,
    render_method_attributes,
    type_full_name,
)
from assembly_analyzer.metadata.bodies import read_method_body
from assembly_analyzer.metadata.model import Handle, MetadataStore, TableKind
from assembly_analyzer.metadata.signatures import SignatureFormatError

INDENT = "    "
TYPE_TABLES = (TableKind.TYPE_DEF, TableKind.TYPE_REF, TableKind.TYPE_SPEC)
METHOD_TABLES = (TableKind.METHOD_DEF, TableKind.MEMBER_REF, TableKind.METHOD_SPEC)


class Decompiler(Protocol):
    """Produces readable text and signature facts for one method."""

    def decompile(self, handle: Handle, body: Optional[CilMethodBody] = None) -> str:
        ...

    def resolve_signature(self, handle: Handle) -> Tuple[str, Tuple[str, ...]]:
        ...


def local_index(instruction, prefix: str) -> Optional[int]:
    """Local slot addressed by an ``ldloc``/``stloc`` family instruction, else ``None``."""

    name = mnemonic(instruction)
    if not name.startswith(prefix):
        return None
    suffix = name[len(prefix) :]
    if suffix.startswith(".") and suffix[1:].isdigit():
        return int(suffix[1:])
    if suffix in ("", ".s"):
        operand = instruction.operand
        index = getattr(operand, "index", operand)
        return index if isinstance(index, int) else None
    return None


class IlListingDecompiler:
    """Renders method bodies as ``IL_XXXX: mnemonic operand`` listings."""

    def __init__(
        self,
        store: MetadataStore,
        *,
        remove_dead_code: bool = False,
        remove_dead_stores: bool = False,
        no_formatting: bool = False,
    ) -> None:
        self.store = store
        self.remove_dead_code = remove_dead_code
        self.remove_dead_stores = remove_dead_stores
        self.no_formatting = no_formatting

    def resolve_signature(self, handle: Handle) -> Tuple[str, Tuple[str, ...]]:
        """Return type and parameter types of a local method."""

        method = self.store.method_def(handle)
        signature = method_decoder(self.store, handle).decode_method(method.signature)
        return signature.return_type, signature.parameter_types

    def decompile(self, handle: Handle, body: Optional[CilMethodBody] = None) -> str:
        """Listing for one method.

        ``body`` is decoded from the image when not supplied. Raises the body
        decoding error when the IL cannot be read; methods without IL get
        their header and a marker comment.
        """

        method = self.store.method_def(handle)
        lines = [self._header(handle)]
        if not method.has_body:
            lines.append(f"{INDENT}// no IL body")
        else:
            if body is None:
                body = read_method_body(self.store, method)
            instructions = list(body.instructions)
            dead_locals = self._dead_locals(instructions) if self.remove_dead_stores else set()
            base = body.offset + body.header_size
            lines.append("{")
            for instruction in instructions:
                label = f"IL_{instruction.offset - base:04X}"
                name = mnemonic(instruction)
                if self.remove_dead_code and name == "nop":
                    continue
                if local_index(instruction, "stloc") in dead_locals:
                    lines.append(f"{INDENT}{label}: pop")
                    continue
                operand = self.render_operand(instruction.operand)
                text = f"{name} {operand}" if operand else name
                lines.append(f"{INDENT}{label}: {text}")
            lines.append("}")
        separator = " " if self.no_formatting else "\n"
        return separator.join(line.strip() if self.no_formatting else line for line in lines)

    def _header(self, handle: Handle) -> str:
        method = self.store.method_def(handle)
        try:
            return_type, parameter_types = self.resolve_signature(handle)
        except SignatureFormatError:
            return_type, parameter_types = "?", ()
        names = {param.sequence: param.name for param in method.params}
        parameters = ", ".join(
            f"{kind} {names[position]}" if names.get(position) else kind
            for position, kind in enumerate(parameter_types, start=1)
        )
        owner = type_full_name(self.store, method.owner)
        return (
            f".method {render_method_attributes(method.flags)} {return_type} "
            f"{owner}::{method.name}({parameters})"
        )

    @staticmethod
    def _dead_locals(instructions) -> Set[int]:
        stored = {local_index(instruction, "stloc") for instruction in instructions}
        loaded = {local_index(instruction, "ldloc") for instruction in instructions}
        loaded |= {local_index(instruction, "ldloca") for instruction in instructions}
        return {index for index in stored - loaded if index is not None}

    def render_operand(self, operand) -> str:
        if operand is None:
            return ""
        if isinstance(operand, StringToken):
            value = self.store.user_string(operand.rid)
            return quote(value) if value is not None else str(Handle.from_token(operand.value))
        if isinstance(operand, Token):
            return self.render_token(operand.value)
        if isinstance(operand, (list, tuple)):
            return "(" + ", ".join(self.render_operand(item) for item in operand) + ")"
        return str(operand)

    def render_token(self, token: int) -> str:
        handle = Handle.from_token(token)
        if handle.table in TYPE_TABLES:
            return type_full_name(self.store, handle)
        if handle.table in METHOD_TABLES:
            target = resolve_call_target(self.store, token)
            if target is not None:
                resolved = describe_resolved_method(self.store, target[0], method_instantiation=target[1])
                if resolved is not None:
                    return f"{resolved.declaring_type}::{resolved.name}({','.join(resolved.parameter_types)})"
            ref = self.store.member_refs.get(handle)
            if ref is not None and ref.parent is not None:
                return f"{type_full_name(self.store, ref.parent)}::{ref.name}"
        return str(handle)


__all__ = ["Decompiler", "IlListingDecompiler", "local_index"]

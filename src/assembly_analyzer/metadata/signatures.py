"""Decoding of ECMA-335 signature blobs (partition II, section 23.2) into type text."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from dnfile.utils import read_compressed_int

from assembly_analyzer.metadata.model import Handle, TableKind

# Calling convention byte
SIG_DEFAULT = 0x00
SIG_VARARG = 0x05
SIG_FIELD = 0x06
SIG_LOCAL = 0x07
SIG_PROPERTY = 0x08
SIG_GENERIC_INST = 0x0A
SIG_KIND_MASK = 0x0F
SIG_GENERIC = 0x10
SIG_HAS_THIS = 0x20
SIG_EXPLICIT_THIS = 0x40

# Element types
ELEMENT_VOID = 0x01
ELEMENT_PTR = 0x0F
ELEMENT_BYREF = 0x10
ELEMENT_VALUETYPE = 0x11
ELEMENT_CLASS = 0x12
ELEMENT_VAR = 0x13
ELEMENT_ARRAY = 0x14
ELEMENT_GENERICINST = 0x15
ELEMENT_TYPEDBYREF = 0x16
ELEMENT_FNPTR = 0x1B
ELEMENT_SZARRAY = 0x1D
ELEMENT_MVAR = 0x1E
ELEMENT_CMOD_REQD = 0x1F
ELEMENT_CMOD_OPT = 0x20
ELEMENT_SENTINEL = 0x41
ELEMENT_PINNED = 0x45

PRIMITIVE_TYPES = {
    0x01: "System.Void",
    0x02: "System.Boolean",
    0x03: "System.Char",
    0x04: "System.SByte",
    0x05: "System.Byte",
    0x06: "System.Int16",
    0x07: "System.UInt16",
    0x08: "System.Int32",
    0x09: "System.UInt32",
    0x0A: "System.Int64",
    0x0B: "System.UInt64",
    0x0C: "System.Single",
    0x0D: "System.Double",
    0x0E: "System.String",
    0x16: "System.TypedReference",
    0x18: "System.IntPtr",
    0x19: "System.UIntPtr",
    0x1C: "System.Object",
}

_TYPE_DEF_OR_REF_TABLES = (TableKind.TYPE_DEF, TableKind.TYPE_REF, TableKind.TYPE_SPEC)

TypeNameResolver = Callable[[Handle], str]


class SignatureFormatError(ValueError):
    """Raised when a signature blob is truncated or malformed."""


@dataclass(frozen=True, slots=True)
class MethodSignature:
    header: int
    generic_arity: int
    return_type: str
    parameter_types: Tuple[str, ...]

    @property
    def has_this(self) -> bool:
        return bool(self.header & SIG_HAS_THIS)

    @property
    def is_vararg(self) -> bool:
        return (self.header & SIG_KIND_MASK) == SIG_VARARG


class BlobReader:
    """Sequential reader over one blob with compressed-integer support."""

    def __init__(self, blob: bytes) -> None:
        self._blob = bytes(blob)
        self.position = 0

    @property
    def remaining(self) -> int:
        return len(self._blob) - self.position

    def peek_byte(self) -> int:
        if self.position >= len(self._blob):
            raise SignatureFormatError("Unexpected end of signature blob")
        return self._blob[self.position]

    def read_byte(self) -> int:
        value = self.peek_byte()
        self.position += 1
        return value

    def read_compressed_uint(self) -> int:
        decoded = read_compressed_int(self._blob[self.position :])
        if decoded is None:
            raise SignatureFormatError(f"Invalid compressed integer at offset {self.position}")
        value, size = decoded
        self.position += size
        return value

    def read_compressed_int(self) -> int:
        start = self.position
        raw = self.read_compressed_uint()
        bits = {1: 7, 2: 14, 4: 29}[self.position - start]
        # the sign bit is rotated into the least significant position
        if raw & 1:
            return (raw >> 1) - (1 << (bits - 1))
        return raw >> 1

    def read_type_def_or_ref(self) -> Handle:
        coded = self.read_compressed_uint()
        tag = coded & 0x03
        if tag >= len(_TYPE_DEF_OR_REF_TABLES):
            raise SignatureFormatError(f"Invalid TypeDefOrRef tag {tag}")
        return Handle(int(_TYPE_DEF_OR_REF_TABLES[tag]), coded >> 2)


class SignatureDecoder:
    """Render signature blobs as type text.

    ``type_name`` turns a TypeDef/TypeRef/TypeSpec handle into a type name.
    Generic parameters are rendered by name when the owning context supplies
    names, otherwise as ``!n`` (type) and ``!!n`` (method).
    """

    def __init__(
        self,
        type_name: TypeNameResolver,
        *,
        type_parameters: Sequence[str] = (),
        method_parameters: Sequence[str] = (),
    ) -> None:
        self._type_name = type_name
        self._type_parameters = tuple(type_parameters)
        self._method_parameters = tuple(method_parameters)

    def decode_method(self, blob: bytes) -> MethodSignature:
        reader = BlobReader(blob)
        header = reader.peek_byte()
        if not is_method_signature(blob):
            raise SignatureFormatError(f"Not a method signature (header 0x{header:02X})")
        return self._read_inline_method(reader)

    def decode_field(self, blob: bytes) -> str:
        reader = BlobReader(blob)
        header = reader.read_byte()
        if header & SIG_KIND_MASK != SIG_FIELD:
            raise SignatureFormatError(f"Not a field signature (header 0x{header:02X})")
        return self._read_param(reader)

    def decode_type(self, blob: bytes) -> str:
        """Decode a TypeSpec blob."""

        return self._read_type(BlobReader(blob))

    def decode_generic_instance(self, blob: bytes) -> Tuple[Handle, Tuple[str, ...]]:
        """Split a ``GENERICINST`` TypeSpec into its generic type handle and arguments."""

        reader = BlobReader(blob)
        self._skip_custom_modifiers(reader)
        if reader.read_byte() != ELEMENT_GENERICINST:
            raise SignatureFormatError("Not a generic instantiation")
        if reader.read_byte() not in (ELEMENT_CLASS, ELEMENT_VALUETYPE):
            raise SignatureFormatError("Invalid generic instantiation kind")
        generic_type = reader.read_type_def_or_ref()
        count = reader.read_compressed_uint()
        return generic_type, tuple(self._read_type(reader) for _ in range(count))

    def decode_method_spec(self, blob: bytes) -> Tuple[str, ...]:
        reader = BlobReader(blob)
        header = reader.read_byte()
        if header != SIG_GENERIC_INST:
            raise SignatureFormatError(f"Not a method instantiation (header 0x{header:02X})")
        count = reader.read_compressed_uint()
        return tuple(self._read_type(reader) for _ in range(count))

    def _skip_custom_modifiers(self, reader: BlobReader) -> None:
        while reader.peek_byte() in (ELEMENT_CMOD_REQD, ELEMENT_CMOD_OPT):
            reader.read_byte()
            reader.read_type_def_or_ref()

    def _read_param(self, reader: BlobReader) -> str:
        self._skip_custom_modifiers(reader)
        lead = reader.peek_byte()
        if lead == ELEMENT_BYREF:
            reader.read_byte()
            return self._read_type(reader) + "&"
        return self._read_type(reader)

    def _generic_name(self, names: Tuple[str, ...], index: int, prefix: str) -> str:
        if index < len(names) and names[index]:
            return names[index]
        return f"{prefix}{index}"

    def _read_type(self, reader: BlobReader) -> str:
        self._skip_custom_modifiers(reader)
        element = reader.read_byte()
        if element in PRIMITIVE_TYPES:
            return PRIMITIVE_TYPES[element]
        if element in (ELEMENT_CLASS, ELEMENT_VALUETYPE):
            return self._type_name(reader.read_type_def_or_ref())
        if element == ELEMENT_SZARRAY:
            return self._read_type(reader) + "[]"
        if element == ELEMENT_PTR:
            return self._read_type(reader) + "*"
        if element == ELEMENT_BYREF:
            return self._read_type(reader) + "&"
        if element == ELEMENT_PINNED:
            return self._read_type(reader)
        if element == ELEMENT_VAR:
            return self._generic_name(self._type_parameters, reader.read_compressed_uint(), "!")
        if element == ELEMENT_MVAR:
            return self._generic_name(self._method_parameters, reader.read_compressed_uint(), "!!")
        if element == ELEMENT_GENERICINST:
            return self._read_generic_instance(reader)
        if element == ELEMENT_ARRAY:
            return self._read_array(reader)
        if element == ELEMENT_FNPTR:
            signature = self._read_inline_method(reader)
            params = ",".join(signature.parameter_types)
            return f"method {signature.return_type} *({params})"
        raise SignatureFormatError(f"Unsupported element type 0x{element:02X}")

    def _read_generic_instance(self, reader: BlobReader) -> str:
        kind = reader.read_byte()
        if kind not in (ELEMENT_CLASS, ELEMENT_VALUETYPE):
            raise SignatureFormatError(f"Invalid generic instantiation kind 0x{kind:02X}")
        generic_type = self._type_name(reader.read_type_def_or_ref())
        count = reader.read_compressed_uint()
        arguments = [self._read_type(reader) for _ in range(count)]
        return f"{generic_type}<{','.join(arguments)}>"

    def _read_array(self, reader: BlobReader) -> str:
        element_type = self._read_type(reader)
        rank = reader.read_compressed_uint()
        for _ in range(reader.read_compressed_uint()):
            reader.read_compressed_uint()
        for _ in range(reader.read_compressed_uint()):
            reader.read_compressed_int()
        return f"{element_type}[{',' * max(rank - 1, 0)}]"

    def _read_inline_method(self, reader: BlobReader) -> MethodSignature:
        header = reader.read_byte()
        generic_arity = reader.read_compressed_uint() if header & SIG_GENERIC else 0
        count = reader.read_compressed_uint()
        return_type = self._read_param(reader)
        parameters: List[str] = []
        while len(parameters) < count:
            if reader.peek_byte() == ELEMENT_SENTINEL:
                reader.read_byte()
                continue
            parameters.append(self._read_param(reader))
        return MethodSignature(header, generic_arity, return_type, tuple(parameters))


def signature_header(blob: bytes) -> Optional[int]:
    """Return the calling-convention byte of a blob, ``None`` when empty."""

    return blob[0] if blob else None


def is_method_signature(blob: bytes) -> bool:
    header = signature_header(blob)
    if header is None:
        return False
    return (header & SIG_KIND_MASK) not in (SIG_FIELD, SIG_LOCAL, SIG_PROPERTY, SIG_GENERIC_INST)


__all__ = [
    "BlobReader",
    "MethodSignature",
    "SignatureDecoder",
    "SignatureFormatError",
    "is_method_signature",
    "signature_header",
]

"""Reading CIL method bodies out of the mapped assembly image."""

from __future__ import annotations

import logging
import struct
from typing import Optional

from dncil.cil.body import CilMethodBody
from dncil.cil.body.reader import CilMethodBodyReaderBase
from dncil.cil.enums import CorILMethod, CorILMethodSect
from dncil.cil.error import MethodBodyFormatError

from assembly_analyzer.errors import MethodBodyUnavailable
from assembly_analyzer.metadata.model import MetadataStore, MethodDefRow

LOGGER = logging.getLogger(__name__)

# Everything a corrupt or truncated body can raise while being decoded.
BODY_DECODE_ERRORS = (MethodBodyFormatError, MethodBodyUnavailable, ValueError, KeyError, IndexError)

SECTION_HEADER_SIZE = 4


def _align4(offset: int) -> int:
    return (offset + 3) & ~3


def body_extent(image: bytes, rva: int) -> int:
    """End offset of the method body at ``rva``: header, code and extra data sections.

    Raises ``MethodBodyFormatError`` when the header is malformed or the code
    runs past the end of the image.
    """

    if rva < 0 or rva >= len(image):
        raise MethodBodyFormatError(f"Method body RVA 0x{rva:X} outside of image")
    first = image[rva]
    if first & CorILMethod.FormatMask in (CorILMethod.TinyFormat, CorILMethod.TinyFormat1):
        end = rva + 1 + (first >> 2)
        if end > len(image):
            raise MethodBodyFormatError(f"Tiny method body at 0x{rva:X} truncated")
        return end
    if first & CorILMethod.FormatMask != CorILMethod.FatFormat:
        raise MethodBodyFormatError(f"Bad method header format 0x{first:02X} at 0x{rva:X}")

    if rva + 12 > len(image):
        raise MethodBodyFormatError(f"Fat method header at 0x{rva:X} truncated")
    flags, _max_stack, code_size = struct.unpack_from("<HHI", image, rva)
    end = max(rva + (flags >> 12) * 4 + code_size, rva + 12)
    if end > len(image):
        raise MethodBodyFormatError(f"Method code at 0x{rva:X} runs past end of image")

    more_sections = bool(flags & CorILMethod.MoreSects)
    while more_sections:
        section = _align4(end)
        if section + SECTION_HEADER_SIZE > len(image):
            raise MethodBodyFormatError(f"Data section of method at 0x{rva:X} truncated")
        kind = image[section]
        if kind & CorILMethodSect.FatFormat:
            size = int.from_bytes(image[section + 1 : section + 4], "little")
        else:
            size = image[section + 1]
        end = min(section + max(size, SECTION_HEADER_SIZE), len(image))
        more_sections = bool(kind & CorILMethodSect.MoreSects) and size >= SECTION_HEADER_SIZE
    return end


class ImageBodyReader(CilMethodBodyReaderBase):
    """Body reader over the bytes of a single method inside a mapped image.

    Reads are confined to ``[rva, limit)``; ``limit`` defaults to the
    extent given by the method header.
    """

    def __init__(self, image: bytes, rva: int, limit: Optional[int] = None) -> None:
        self._image = image
        self._offset = rva
        self._limit = body_extent(image, rva) if limit is None else min(limit, len(image))

    @property
    def limit(self) -> int:
        return self._limit

    def read(self, n: int) -> bytes:
        end = self._offset + n
        if n < 0 or end > self._limit:
            raise MethodBodyFormatError(f"Method body read past its end at 0x{self._offset:X}")
        data = bytes(self._image[self._offset : end])
        self._offset = end
        return data

    def read_inline_switch(self, insn):
        # the branch table must fit in what is left of the body
        count = int.from_bytes(self._image[self._offset : self._offset + 4], "little")
        if self._offset + 4 + count * 4 > self._limit:
            raise MethodBodyFormatError(f"switch with {count} branches overruns method body at 0x{self._offset:X}")
        return super().read_inline_switch(insn)

    def tell(self) -> int:
        return self._offset

    def seek(self, offset: int) -> int:
        self._offset = offset
        return self._offset


def read_method_body(store: MetadataStore, method: MethodDefRow) -> CilMethodBody:
    """Decode the body of ``method``.

    Raises :class:`MethodBodyUnavailable` for methods without IL and
    ``MethodBodyFormatError`` for bodies that do not decode.
    """

    if not method.has_body:
        raise MethodBodyUnavailable(f"{method.name} has no IL body")
    return CilMethodBody(ImageBodyReader(store.image, method.rva))


def try_read_method_body(store: MetadataStore, method: MethodDefRow) -> Optional[CilMethodBody]:
    """Decoded body of ``method``, or ``None`` when it has none or it does not decode."""

    try:
        return read_method_body(store, method)
    except BODY_DECODE_ERRORS as exc:
        LOGGER.debug("Body of %s (%s) not decoded: %s", method.name, method.handle, exc)
        return None


def instruction_bytes(store: MetadataStore, method: MethodDefRow, body: CilMethodBody) -> bytes:
    """Raw IL code bytes of a decoded body, without header or exception clauses."""

    return store.read_image(method.rva + body.header_size, body.code_size)


__all__ = [
    "BODY_DECODE_ERRORS",
    "ImageBodyReader",
    "body_extent",
    "instruction_bytes",
    "read_method_body",
    "try_read_method_body",
]

"""Tests for the IL listing decompiler."""

from __future__ import annotations

import pytest
from dncil.cil.error import MethodBodyFormatError

from assembly_analyzer.analysis.il_listing import IlListingDecompiler
from assembly_analyzer.analysis.literals import extract_string_literals

from conftest import methoddef


def test_listing_header_and_instructions(demo_store) -> None:
    text = IlListingDecompiler(demo_store).decompile(methoddef(2))
    lines = text.splitlines()

    assert lines[0] == ".method Private, Static, HideBySig System.Int32 Demo.A::M2(System.String s, System.Int32 count)"
    assert lines[1] == "{"
    assert lines[-1] == "}"
    assert "    IL_0000: nop" in lines
    assert "    IL_0004: ret" in lines


def test_string_and_method_operands(demo_store) -> None:
    text = IlListingDecompiler(demo_store).decompile(methoddef(1))

    assert 'IL_0000: ldstr "Hello, world"' in text
    assert "call Demo.A::M2(System.String,System.Int32)" in text
    assert "call System.Console::WriteLine(System.String)" in text
    assert extract_string_literals(text) == ["Hello, world"] * 3


def test_generic_method_instantiation_operand(demo_store) -> None:
    text = IlListingDecompiler(demo_store).decompile(methoddef(5))
    assert "call Demo.Outer.Inner::Run(T)" not in text
    assert "call Demo.Outer.Inner::Run(System.String)" in text


def test_remove_dead_code_drops_nops(demo_store) -> None:
    text = IlListingDecompiler(demo_store, remove_dead_code=True).decompile(methoddef(2))
    assert "nop" not in text
    assert "IL_0001:" in text


def test_remove_dead_stores(demo_store) -> None:
    plain = IlListingDecompiler(demo_store).decompile(methoddef(2))
    pruned = IlListingDecompiler(demo_store, remove_dead_stores=True).decompile(methoddef(2))

    assert "IL_0002: stloc.0" in plain
    assert "IL_0002: pop" in pruned
    assert "stloc" not in pruned


def test_no_formatting_collapses_lines(demo_store) -> None:
    text = IlListingDecompiler(demo_store, no_formatting=True).decompile(methoddef(2))

    assert "\n" not in text
    assert "{ IL_0000: nop IL_0001:" in text
    assert text.endswith("ret }")


def test_method_without_body(demo_store) -> None:
    text = IlListingDecompiler(demo_store).decompile(methoddef(6))
    assert text.splitlines() == [
        ".method Public, Virtual, HideBySig, NewSlot, Abstract System.Double Demo.IShape::Area()",
        "    // no IL body",
    ]


def test_undecodable_body_raises(demo_store) -> None:
    with pytest.raises(MethodBodyFormatError):
        IlListingDecompiler(demo_store).decompile(methoddef(4))


def test_resolve_signature(demo_store) -> None:
    decompiler = IlListingDecompiler(demo_store)

    assert decompiler.resolve_signature(methoddef(2)) == ("System.Int32", ("System.String", "System.Int32"))
    assert decompiler.resolve_signature(methoddef(5)) == ("System.Void", ("T",))

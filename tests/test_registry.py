import pytest

from procgen import REGISTRY, X64, X86, UnknownConventionError, architecture, _arch_from_triple


def test_x64_aliases_are_the_fastcall_object():
    fast = REGISTRY.resolve("fastcall", X64)
    for name in ("c", "cdecl", "stdcall"):
        assert REGISTRY.resolve(name, X64) is fast
    assert fast.integer_arg_registers == ("rcx", "rdx", "r8", "r9")
    assert fast.shadow_space == 32


def test_x86_conventions_are_distinct():
    c = REGISTRY.resolve("c", X86)
    cdecl = REGISTRY.resolve("cdecl", X86)
    std = REGISTRY.resolve("stdcall", X86)
    assert c != cdecl and cdecl != std and c != std
    assert std.callee_cleans_stack
    assert not cdecl.callee_cleans_stack
    assert not cdecl.register_passed


def test_fastcall_is_64_bit_only():
    with pytest.raises(UnknownConventionError):
        REGISTRY.resolve("fastcall", X86)


def test_unknown_convention_lists_known_names():
    with pytest.raises(UnknownConventionError) as info:
        REGISTRY.resolve("pascal", X86)
    assert "cdecl" in info.value.hint


def test_architecture_aliases():
    assert architecture("AMD64") is X64
    assert architecture("i686") is X86
    assert _arch_from_triple("x86_64-unknown-linux-gnu") == "x86_64"

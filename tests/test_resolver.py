import pytest

from procgen import (
    REGISTRY, X86, FrameLayoutEngine, FrameMode, GenerationError, Parameter, ProcedureSymbol,
    ScopeResolver, UnresolvedNestedNameError, compile_unit,
)


def _proc(name, params=()):
    return ProcedureSymbol(name=name, mangled_name=name, calling_convention=REGISTRY.resolve("stdcall", X86),
                           frame_mode=FrameMode.STANDARD, parameters=list(params))


def test_enter_mangles_the_scope_chain():
    scopes = ScopeResolver()
    outer, inner = _proc("outer"), _proc("inner")
    assert scopes.enter("outer", outer) == "outer"
    assert scopes.enter("inner", inner) == "outer.inner"
    assert inner.mangled_name == "outer.inner"
    assert inner.pool.owner == "outer.inner"
    assert inner.parent_scope is outer
    assert outer.children == [inner]


def test_inner_sees_outer_but_not_the_reverse():
    scopes = ScopeResolver()
    outer, inner = _proc("outer"), _proc("inner")
    scopes.enter("outer", outer)
    scopes.enter("inner", inner)
    assert scopes.resolve_reference("outer") is outer
    assert scopes.resolve_reference("inner") is inner
    scopes.leave()
    assert scopes.resolve_reference("outer") is outer
    with pytest.raises(UnresolvedNestedNameError):
        scopes.resolve_reference("inner")
    assert scopes.resolve_child(".inner") is inner
    assert outer.child("inner") is inner
    with pytest.raises(UnresolvedNestedNameError):
        scopes.resolve_child(".missing")


def test_leave_without_open_procedure():
    with pytest.raises(GenerationError):
        ScopeResolver().leave()


def test_captured_variables_lose_their_type():
    scopes = ScopeResolver()
    outer = _proc("outer", [Parameter("a", "DWORD", 4)])
    scopes.enter("outer", outer)
    FrameLayoutEngine(X86).assign(outer)
    assert scopes.lookup_variable("a").label() == "ebp+8"
    scopes.enter("inner", _proc("inner"))
    seen = scopes.lookup_variable("a")
    assert seen.captured_from_outer
    assert seen.declared_size is None
    assert seen.label() == "8"
    assert not outer.parameters[0].captured_from_outer
    assert scopes.lookup_variable("missing") is None


def test_nested_call_resolves_to_the_child_defined_earlier():
    unit = compile_unit(
        "public outer\n"
        "proc outer\n"
        "    proc .inner\n"
        "    .endp\n"
        "    invoke .inner\n"
        "endp\n"
    )
    lines = [line.strip() for line in unit.render().splitlines()]
    assert "call outer.inner" in lines
    assert unit.procedures["outer.inner"].referenced
    assert unit.procedures["outer"].pending_children == []

import pytest

from procgen import (
    REGISTRY, X64, X86, FrameLayoutEngine, FrameMode, FrameModeState, LocalVariable,
    Parameter, ProcedureSymbol, compile_unit,
)


def _symbol(arch, conv, mode, params=(), locals_=(), uses=()):
    return ProcedureSymbol(
        name="f", mangled_name="f",
        calling_convention=REGISTRY.resolve(conv, arch), frame_mode=mode,
        parameters=list(params), locals=list(locals_),
        preserved_registers=[arch.register(r) for r in uses],
    )


def test_frame_mode_undo_is_single_slot():
    state = FrameModeState()
    assert state.effective() is FrameMode.STANDARD
    state.set_mode(FrameMode.STATIC)
    state.set_mode(FrameMode.STANDARD)
    assert state.restore_previous() is FrameMode.STATIC
    assert state.restore_previous() is FrameMode.STATIC


def test_first_restore_returns_to_default():
    state = FrameModeState()
    state.set_mode(FrameMode.STATIC)
    assert state.restore_previous() is FrameMode.STANDARD


def test_stdcall_sum_layout():
    a = Parameter("a", "DWORD", 4)
    b = Parameter("b", "DWORD", 4)
    sym = _symbol(X86, "stdcall", FrameMode.STANDARD, [a, b])
    layout = FrameLayoutEngine(X86).assign(sym)
    assert (a.label(), b.label()) == ("ebp+8", "ebp+12")
    assert layout.prologue == ["push ebp", "mov ebp, esp"]
    assert layout.epilogue == ["leave", "ret 8"]


def test_static_x86_layout_counts_locals_and_uses():
    p = Parameter("a", "DWORD", 4)
    t = LocalVariable("t", "DWORD", 4)
    buf = LocalVariable("buf", "BYTE", 1, count=6)
    sym = _symbol(X86, "cdecl", FrameMode.STATIC, [p], [t, buf], ["ebx"])
    layout = FrameLayoutEngine(X86).assign(sym)
    assert layout.base_register == "esp"
    assert t.label() == "esp"
    assert buf.label() == "esp+4"
    assert p.label() == "esp+20"
    assert layout.prologue == ["push ebx", "sub esp, 12"]
    assert layout.epilogue == ["add esp, 12", "pop ebx", "ret"]


def test_offsets_assigned_once():
    p = Parameter("a", "DWORD", 4)
    sym = _symbol(X86, "cdecl", FrameMode.STANDARD, [p])
    engine = FrameLayoutEngine(X86)
    engine.assign(sym)
    with pytest.raises(RuntimeError):
        engine.assign(sym)


def test_standard_x64_homes_register_parameters():
    params = [Parameter("a", "QWORD", 8), Parameter("b", "DOUBLE", 8), Parameter("c", "QWORD", 8),
              Parameter("d", "QWORD", 8), Parameter("e", "QWORD", 8)]
    t = LocalVariable("t", "QWORD", 8)
    sym = _symbol(X64, "fastcall", FrameMode.STANDARD, params, [t])
    layout = FrameLayoutEngine(X64).assign(sym)
    assert [p.label() for p in params] == ["rbp+16", "rbp+24", "rbp+32", "rbp+40", "rbp+48"]
    assert t.label() == "rbp-8"
    assert layout.prologue == [
        "push rbp", "mov rbp, rsp",
        "mov [rbp+16], rcx", "movsd qword [rbp+24], xmm1", "mov [rbp+32], r8", "mov [rbp+40], r9",
        "sub rsp, 16",
    ]
    assert layout.epilogue == ["leave", "ret"]


def test_static_x64_keeps_stack_aligned():
    p = Parameter("a", "QWORD", 8)
    t = LocalVariable("t", "QWORD", 8)
    sym = _symbol(X64, "fastcall", FrameMode.STATIC, [p], [t], ["rbx"])
    layout = FrameLayoutEngine(X64).assign(sym)
    assert layout.local_size == 16
    # return address + rbx + locals keep rsp on a 16-byte boundary
    assert (8 + 8 + layout.local_size) % 16 == 0
    assert p.label() == "rsp+32"
    assert layout.prologue == ["push rbx", "sub rsp, 16", "mov [rsp+32], rcx"]
    assert layout.epilogue == ["add rsp, 16", "pop rbx", "ret"]


def test_standard_offsets_ignore_later_stack_moves():
    unit = compile_unit(
        "public f\n"
        "proc f(.a:DWORD)\n"
        "    mov eax, [.a]\n"
        "    push eax\n"
        "    push eax\n"
        "    mov ecx, [.a]\n"
        "endp\n"
    )
    lines = [l.strip() for l in unit.render().splitlines()]
    assert "mov eax, dword [ebp+8]" in lines
    assert "mov ecx, dword [ebp+8]" in lines


def test_static_mode_from_unit():
    unit = compile_unit(
        ".frame static\n"
        "public f\n"
        "proc cdecl f(.a:DWORD) uses ebx\n"
        "    local .t:DWORD\n"
        "    mov eax, [.a]\n"
        "endp\n"
        ".frame previous\n"
        "proc g\n"
        "endp\n"
    )
    f = unit.procedures["f"]
    assert f.frame_mode is FrameMode.STATIC
    assert f.parameters[0].label() == "esp+12"
    assert unit.procedures["g"].frame_mode is FrameMode.STANDARD
    assert "mov eax, dword [esp+12]" in [l.strip() for l in unit.render().splitlines()]

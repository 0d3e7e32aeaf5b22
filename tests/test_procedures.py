import pytest

from procgen import (
    FrameModeMismatchError, GenerationError, GeneratorConfig, UnknownConventionError,
    UnresolvedNestedNameError, compile_unit, generate,
)

NESTED = """public outer
proc outer(.x:DWORD)
    invoke .inner, 1
    ret
    proc .inner(.y)
        mov eax, [.x]
        mov ecx, [.y]
    .endp
endp
"""


def _stripped(text, **options):
    return [line.strip() for line in generate(text, GeneratorConfig(**options)).splitlines()]


def test_scenario_sum_renders_callee_cleanup():
    assert _stripped("public sum\nproc sum(.a:DWORD, .b:DWORD)\n    mov eax, [.a]\n    add eax, [.b]\nendp\n") == [
        "public sum",
        "sum:",
        "push ebp",
        "mov ebp, esp",
        "mov eax, dword [ebp+8]",
        "add eax, dword [ebp+12]",
        "leave",
        "ret 8",
    ]


def test_type_tags_are_normalised():
    unit = compile_unit(".struct POINT, 12\nproc f(.a:dword, .p:POINT, .q:Point, .r)\nendp\n")
    params = unit.procedures["f"].parameters
    assert [p.type_tag for p in params] == ["DWORD", "POINT", "Point", "DWORD"]
    assert [p.size for p in params] == [4, 12, 4, 4]


def test_x64_aggregates_travel_by_reference():
    unit = compile_unit(".struct POINT, 24\nproc f(.p:POINT, .r:REAL)\nendp\n", GeneratorConfig(arch="x64"))
    f = unit.procedures["f"]
    assert [p.size for p in f.parameters] == [8, 8]
    assert f.parameters[1].declared_size is None


def test_uses_and_locals():
    lines = _stripped(
        "public f\n"
        "proc cdecl f uses ebx esi\n"
        "    local .n, .buf:BYTE[16]\n"
        "    lea eax, [.buf]\n"
        "    mov [.n], eax\n"
        "endp\n"
    )
    assert lines == [
        "public f",
        "f:",
        "push ebp",
        "mov ebp, esp",
        "sub esp, 20",
        "push ebx",
        "push esi",
        "lea eax, [ebp-20]",
        "mov dword [ebp-4], eax",
        "pop esi",
        "pop ebx",
        "leave",
        "ret",
    ]


def test_explicit_size_is_kept():
    lines = _stripped("public f\nproc f(.a:DWORD)\n    movzx eax, byte [.a]\nendp\n")
    assert "movzx eax, byte [ebp+8]" in lines


def test_local_after_first_instruction_is_rejected():
    with pytest.raises(GenerationError):
        compile_unit("proc f\n    nop\n    local .x\nendp\n")


def test_bare_ret_expands_to_epilogue_once():
    lines = _stripped("public f\nproc f(.a)\n    ret\nendp\n")
    assert lines.count("ret 4") == 1


def test_nested_procedure_is_mangled_and_emitted_after_parent():
    lines = _stripped(NESTED)
    assert lines == [
        "public outer",
        "outer:",
        "push ebp",
        "mov ebp, esp",
        "push 1",
        "call outer.inner",
        "leave",
        "ret 4",
        "outer.inner:",
        "push ebp",
        "mov ebp, esp",
        "mov eax, [8]",
        "mov ecx, dword [ebp+8]",
        "leave",
        "ret 4",
    ]


def test_nested_without_reference_is_dropped():
    text = NESTED.replace("    invoke .inner, 1\n", "")
    lines = _stripped(text)
    assert "outer.inner:" not in lines
    assert "outer.inner:" in _stripped(text, strip_unreferenced=False)


def test_frame_mode_mismatch():
    with pytest.raises(FrameModeMismatchError):
        compile_unit("proc outer\n    .frame static\n    proc .inner\n    .endp\nendp\n")


def test_missing_nested_target_is_reported_at_the_call():
    text = "proc outer\n    invoke .missing\nendp\n"
    with pytest.raises(UnresolvedNestedNameError) as info:
        compile_unit(text)
    assert text[info.value.pos:].startswith(".missing")


def test_nesting_forms_are_checked():
    with pytest.raises(GenerationError):
        compile_unit("proc .orphan\nendp\n")
    with pytest.raises(GenerationError):
        compile_unit("proc outer\n    proc inner\n    endp\nendp\n")


def test_unknown_convention_on_definition():
    with pytest.raises(UnknownConventionError):
        compile_unit("proc pascal foo\nendp\n")


def test_fastcall_invocation_needs_x64():
    with pytest.raises(UnknownConventionError):
        compile_unit("fastcall foo, 1\n")


def test_unclosed_procedure():
    with pytest.raises(GenerationError) as info:
        compile_unit("proc foo\n    nop\n")
    assert info.value.pos == 5


def test_duplicate_definition():
    with pytest.raises(GenerationError):
        compile_unit("proc foo\nendp\nproc foo\nendp\n")


def test_arch_must_come_first():
    with pytest.raises(GenerationError):
        compile_unit("proc foo\nendp\n.arch x64\n")
    unit = compile_unit(".arch x64\nproc foo(.a)\nendp\n")
    assert unit.context.arch.bits == 64
    assert unit.procedures["foo"].parameters[0].label() == "rbp+16"


def test_unreferenced_pools_are_dropped():
    text = (
        "proc helper\n"
        "    @ccall puts, \"unused\"\n"
        "endp\n"
        "proc main\n"
        "    @ccall puts, \"used\"\n"
        "endp\n"
        "public main\n"
    )
    out = generate(text)
    assert "unused" not in out
    assert out.count("'used'") == 1
    assert "helper:" not in out
    assert "'unused'" in generate(text, GeneratorConfig(strip_unreferenced=False))


def test_forward_calls_count_for_reachability():
    unit = compile_unit("public start\nproc start\n    invoke later\nendp\nproc later\n    ret\nendp\nproc never\nendp\n")
    assert unit.procedures["later"].referenced
    assert not unit.procedures["never"].referenced
    out = unit.render()
    assert "later:" in out and "never:" not in out


def test_top_level_calls_and_passthrough_are_roots():
    unit = compile_unit("proc a\nendp\nproc b\nendp\ninvoke a\n    call b\n")
    assert unit.procedures["a"].referenced
    assert unit.procedures["b"].referenced


def test_top_level_string_is_interned_once():
    lines = _stripped('@ccall puts, "hi"\n@ccall puts, "hi"\n')
    assert lines.count("push __c__0") == 2
    assert lines[-1] == "__c__0 db 'hi', 0"
    assert lines.count("__c__0 db 'hi', 0") == 1


def test_convention_mismatch_is_a_warning_at_the_target():
    text = "proc cdecl f\nendp\ninvoke f\n"
    unit = compile_unit(text)
    assert unit.warnings == [("f is declared cdecl but called with stdcall", text.index("invoke f") + 7)]


def test_passthrough_lines_are_kept():
    lines = _stripped("format PE console\nsection '.text' code readable executable ; code\n")
    assert lines == ["format PE console", "section '.text' code readable executable ; code"]


def test_trace_lists_frame_offsets():
    lines = _stripped("public f\nproc f(.a)\nendp\n", trace=True)
    assert "; .a = ebp+8" in lines

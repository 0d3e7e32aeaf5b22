import pytest

import procgen


def test_translates_a_file_to_stdout(tmp_path, capsys):
    src = tmp_path / "unit.asm"
    src.write_text("public sum\nproc sum(.a:DWORD, .b:DWORD)\nendp\n", encoding="utf-8")
    assert procgen.main(["--arch", "x86", str(src)]) == 0
    out = capsys.readouterr().out
    assert "sum:" in out
    assert "ret 8" in out


def test_writes_output_file(tmp_path, capsys):
    src = tmp_path / "unit.asm"
    dst = tmp_path / "unit.out"
    src.write_text("public f\nproc f\nendp\n", encoding="utf-8")
    assert procgen.main(["--arch", "x64", "-o", str(dst), str(src)]) == 0
    assert "mov rbp, rsp" in dst.read_text(encoding="utf-8")
    assert f"Wrote {dst}" in capsys.readouterr().out


def test_generation_error_exits_with_one(tmp_path, capsys):
    src = tmp_path / "bad.asm"
    src.write_text("proc pascal foo\nendp\n", encoding="utf-8")
    assert procgen.main(["--arch", "x86", "--no-color", str(src)]) == 1
    out = capsys.readouterr().out
    assert "error: unknown calling convention 'pascal'" in out
    assert "help: known conventions" in out
    assert "bad.asm:1:13" in out


def test_keep_unreferenced_flag(tmp_path, capsys):
    src = tmp_path / "unit.asm"
    src.write_text("proc lonely\nendp\n", encoding="utf-8")
    assert procgen.main(["--arch", "x86", str(src)]) == 0
    assert "lonely:" not in capsys.readouterr().out
    assert procgen.main(["--arch", "x86", "--keep-unreferenced", str(src)]) == 0
    assert "lonely:" in capsys.readouterr().out


def test_demo_unit_without_inputs(capsys):
    assert procgen.main(["--arch", "x86"]) == 0
    out = capsys.readouterr().out
    assert "start:" in out
    assert "report.format:" in out
    assert "call vprintf" in out


def test_bad_architecture_is_a_usage_error():
    with pytest.raises(SystemExit) as info:
        procgen.main(["--arch", "arm"])
    assert info.value.code == 2


def test_warnings_go_to_stderr(tmp_path, capsys):
    src = tmp_path / "mixed.asm"
    src.write_text("public f\nproc cdecl f\nendp\ninvoke f\n", encoding="utf-8")
    assert procgen.main(["--arch", "x86", "--no-color", str(src)]) == 0
    captured = capsys.readouterr()
    assert "warning: f is declared cdecl but called with stdcall" in captured.err
    assert "mixed.asm:4:8" in captured.err
    assert "warning" not in captured.out
    assert "call f" in captured.out

import json
import os

from falsy import run_cli

TRACE_EXTENSION = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "ext", "trace.py")


def test_run_literal_source(capsys):
    assert run_cli(["-source", "2 3+."]) == 0
    assert capsys.readouterr().out == "5"


def test_run_file(tmp_path, capsys):
    program = tmp_path / "hello.false"
    program.write_text('"hi"', encoding="utf-8")
    assert run_cli([str(program)]) == 0
    assert capsys.readouterr().out == "hi"


def test_missing_file(tmp_path, capsys):
    assert run_cli([str(tmp_path / "missing.false")]) == 1
    assert "Failed to read" in capsys.readouterr().err


def test_parse_errors_are_all_reported(capsys):
    assert run_cli(["-source", "1 X 2 Y"]) == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    lines = captured.err.splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("<string>:1:3: unrecognized character")


def test_runtime_error_prints_traceback(capsys):
    assert run_cli(["-source", "1. +"]) == 1
    captured = capsys.readouterr()
    assert captured.out == "1"
    assert "Traceback (most recent call last):" in captured.err
    assert captured.err.rstrip().endswith("StackUnderflow: Stack is empty; + needs 2 (rule: Add)")


def test_traceback_json(capsys):
    assert run_cli(["-source", "5 0/", "--traceback-json"]) == 1
    err = capsys.readouterr().err
    payload = json.loads(err[err.index("{"):])
    assert payload["error"]["type"] == "DivisionByZero"
    assert payload["error"]["failing_step_index"] == 2


def test_verbose_traceback(capsys):
    assert run_cli(["-source", "-verbose", "7a: a;!"]) == 1
    assert "Globals: {a=7}" in capsys.readouterr().err


def test_dump(capsys):
    assert run_cli(["-source", "--dump", "1 2+ {c} [1]?"]) == 0
    assert capsys.readouterr().out == "1 2+[1]?\n"


def test_extension_flag(capsys):
    assert run_cli(["-source", "1.", "--ext", TRACE_EXTENSION]) == 0
    captured = capsys.readouterr()
    assert captured.out == "1"
    assert "[trace] 2 instructions executed" in captured.err


def test_bad_extension(tmp_path, capsys):
    assert run_cli(["-source", "1.", "--ext", str(tmp_path / "none.py")]) == 1
    assert "ExtensionError" in capsys.readouterr().err


def test_unbounded_recursion(capsys):
    assert run_cli(["-source", "[f;!]f: f;!"]) == 1
    assert "RecursionError" in capsys.readouterr().err


def test_verbose_lists_loaded_extensions(capsys):
    assert run_cli(["-source", "--verbose", "--ext", TRACE_EXTENSION, "1."]) == 0
    assert "Loaded extension trace 1.0.0 (API 1)" in capsys.readouterr().err

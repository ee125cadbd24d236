import json
import os
import subprocess
import sys


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))


def run_cli(*args, stdin=None):
    cli = os.path.join(ROOT, "stepwise.py")
    return subprocess.run(
        [sys.executable, cli, *args],
        input=stdin,
        text=True,
        capture_output=True,
        cwd=ROOT,
        timeout=30,
    )


def test_prints_global_bindings():
    proc = run_cli("-source", "let x = 1 + 2; const s = 'a' + x;")
    assert proc.returncode == 0, proc.stderr
    assert proc.stdout.splitlines() == ["x = let:3", 's = const:"a3"']


def test_runs_a_file_with_trace(tmp_path):
    path = tmp_path / "count.sw"
    path.write_text("let i = 0;\nwhile (i < 2) { i = i + 1; }\n")
    proc = run_cli(str(path), "--trace")
    assert proc.returncode == 0, proc.stderr
    assert "branch" in proc.stdout
    assert "direction=exit" in proc.stdout
    assert proc.stdout.rstrip().endswith("i = let:2")


def test_runtime_fault_exits_nonzero():
    proc = run_cli("-source", "let a = 1;\na = b;")
    assert proc.returncode == 1
    assert "undeclared-var" in proc.stderr
    assert "line 2, column 1, in AssignmentStatement" in proc.stderr


def test_parse_errors_prevent_execution():
    proc = run_cli("-source", "let = 4;")
    assert proc.returncode == 1
    assert "<string>:1:5: error:" in proc.stderr
    assert "[expected-token]" in proc.stderr
    assert proc.stdout == ""


def test_json_output():
    proc = run_cli("-source", "let x = 2 * 3;", "--json", "--ast")
    assert proc.returncode == 0, proc.stderr
    document = json.loads(proc.stdout)
    assert document["status"] == "done"
    assert document["ast"]["type"] == "Program"
    assert document["trace"][-1]["type"] == "halt"
    assert document["stats"]["steps_executed"] == len(document["trace"])


def test_step_limit_flag():
    proc = run_cli("-source", "while (true) {}", "--max-steps", "20")
    assert proc.returncode == 1
    assert "max-steps" in proc.stderr


def test_missing_file():
    proc = run_cli(os.path.join(ROOT, "does-not-exist.sw"))
    assert proc.returncode == 1
    assert "Failed to read" in proc.stderr


def test_interactive_stepper():
    proc = run_cli("-source", "let x = 1;", "--step", stdin="\n\n\ns\nc\n")
    assert proc.returncode == 0, proc.stderr
    assert "enter-statement node_type=Program" in proc.stdout
    assert "scope 0 (global): x=let:<uninitialized>" in proc.stdout
    assert "halt" in proc.stdout
    assert proc.stdout.rstrip().endswith("x = let:1")


def test_verbose_lists_loaded_extensions():
    proc = run_cli("-source", "let a = 1;", "--ext", os.path.join("ext", "watch.py"), "--verbose")
    assert proc.returncode == 0, proc.stderr
    assert "stepwise: extension watch 0.1.0 (api 1)" in proc.stderr

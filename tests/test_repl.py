import importlib.util
import sys
import uuid
from pathlib import Path

import pytest


def _load_repl_module():
    """Dynamically load the top-level ember_repl.py as a module with a unique name."""
    repl_path = Path(__file__).resolve().parents[1] / "ember_repl.py"
    mod_name = f"ember_repl_for_test_{uuid.uuid4().hex}"
    spec = importlib.util.spec_from_file_location(mod_name, str(repl_path))
    mod = importlib.util.module_from_spec(spec)
    sys.modules[mod_name] = mod
    assert spec.loader is not None
    spec.loader.exec_module(mod)
    return mod


def _feed(monkeypatch, repl, lines):
    it = iter(lines)
    monkeypatch.setattr(repl, "read_line", lambda prompt: next(it))
    monkeypatch.setattr(sys, "argv", ["ember_repl.py"])


def test_repl_exit_immediately(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, ["exit\n"])
    repl.main()
    out = capsys.readouterr().out
    assert "Ember REPL v0.1" in out
    assert "Type 'exit' or press Ctrl+D to quit." in out


def test_repl_prints_side_effects_and_values(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, ['print("hello from ember")\n', "1 + 2\n", '"s"\n', "exit\n"])
    repl.main()
    out = capsys.readouterr().out
    assert "hello from ember" in out
    assert "\n3\n" in out
    assert '"s"' in out


def test_repl_keeps_state_and_reports_errors(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, ["let x = 20;\n", "\n", "nope(x)\n", "x + 22\n", ""])
    repl.main()
    captured = capsys.readouterr()
    assert "FunctionNotFound" in captured.err
    assert "42" in captured.out
    assert "Exiting." in captured.out


def test_run_script_file(tmp_path, capsys):
    repl = _load_repl_module()
    script = tmp_path / "hello.ember"
    script.write_text('print("hi");\n40 + 2\n', encoding="utf-8")
    repl.run_script_file(str(script))
    out = capsys.readouterr().out
    assert "hi" in out
    assert "42" in out


def test_run_script_file_errors_exit_nonzero(tmp_path, capsys):
    repl = _load_repl_module()
    script = tmp_path / "bad.ember"
    script.write_text("missing()\n", encoding="utf-8")
    with pytest.raises(SystemExit) as exc:
        repl.run_script_file(str(script))
    assert exc.value.code == 1
    assert "FunctionNotFound" in capsys.readouterr().err

    with pytest.raises(SystemExit):
        repl.run_script_file(str(tmp_path / "does_not_exist.ember"))

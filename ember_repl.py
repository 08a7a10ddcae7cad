import sys
from pathlib import Path

from ember.ember_runtime import ScriptRunner
from ember.ember_printer import Printer


def read_line(prompt: str) -> str:
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return sys.stdin.readline()


def _print_effects(result):
    for effect in result.side_effects:
        topics = effect.get('topics')
        if topics == ['stdout']:
            print(effect.get('message', ''))
        elif topics == ['debug']:
            print(effect.get('message', ''), file=sys.stderr)


def run_script_file(file_path: str):
    """Run an Ember script file non-interactively and exit with appropriate status."""
    runner = ScriptRunner()
    printer = Printer(runner.engine.types)
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    result = runner.handle_script(source)
    if result.status == 'error':
        _print_effects(result)
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)
    _print_effects(result)
    if result.value is not None:
        print(printer.pformat(result.value))


def main():
    """Run a script file when provided, otherwise start the interactive REPL."""
    if len(sys.argv) > 1:
        arg = sys.argv[1]
        if not arg.startswith("-"):
            run_script_file(arg)
            return

    print("Ember REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    runner = ScriptRunner()
    printer = Printer(runner.engine.types)

    while True:
        try:
            raw = read_line(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()

            if not line:
                continue
            if line == "exit":
                break

            result = runner.handle_script(line)

            if result.status == 'error':
                print(result.format_error(), file=sys.stderr)
                continue

            _print_effects(result)
            if result.value is not None:
                print(printer.pformat(result.value))

        except EOFError:
            print("\nExiting.")
            break


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nExiting.")

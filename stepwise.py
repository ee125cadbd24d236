"""Stepwise entry point and interactive stepper wiring."""
from __future__ import annotations
import argparse
import json
import logging
import sys
from typing import List, Optional

from extensions import StepwiseExtensionError, load_runtime_services
from interpreter import STATUS_ERROR, STATUS_RUNNING, ExecutionState, TraceFormatter, start
from parser import ParseResult, parse, to_dict


logger = logging.getLogger("stepwise")


def _print_diagnostics(result: ParseResult, source: str, filename: str) -> None:
    for diagnostic in result.errors + result.warnings:
        position = ""
        if diagnostic.start is not None:
            line = source.count("\n", 0, diagnostic.start) + 1
            column = diagnostic.start - (source.rfind("\n", 0, diagnostic.start) + 1) + 1
            position = f":{line}:{column}"
        print(f"{filename}{position}: {diagnostic.severity}: {diagnostic.message} [{diagnostic.code}]", file=sys.stderr)


def _print_globals(state: ExecutionState) -> None:
    for name, rendered in state.global_scope.snapshot().items():
        print(f"{name} = {rendered}")


def run_stepper(state: ExecutionState, formatter: TraceFormatter) -> None:
    print("\x1b[38;2;153;221;255mStepwise\033[0m stepper. Enter to step, 'c' to continue, 's' for scopes, 'q' to quit.")
    while state.status == STATUS_RUNNING:
        try:
            command = input("\x1b[38;2;153;221;255mstep>\033[0m ").strip().lower()
        except EOFError:
            print()
            return
        if command == "q":
            return
        if command == "s":
            for scope in state.scope_view():
                rendered = ", ".join(f"{k}={v}" for k, v in scope["bindings"].items())
                print(f"  scope {scope['scope_id']} ({scope['reason']}): {rendered}")
            continue
        if command == "c":
            while state.status == STATUS_RUNNING:
                event = state.advance()
                if event is not None:
                    print(formatter.format_event(event))
            return
        event = state.advance()
        if event is not None:
            print(formatter.format_event(event))


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Stepwise single-step interpreter")
    parser.add_argument("program", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("--trace", action="store_true", help="Print every event as it was recorded")
    parser.add_argument("--json", action="store_true", help="Print the run as a JSON document")
    parser.add_argument("--ast", action="store_true", help="Include the syntax tree in JSON output")
    parser.add_argument("--step", action="store_true", help="Step through the program interactively")
    parser.add_argument("--max-steps", type=int, default=10000)
    parser.add_argument("--max-scope-depth", type=int, default=100)
    parser.add_argument("--max-trace-length", type=int, default=50000)
    parser.add_argument("--max-file-size", type=int, default=20000)
    parser.add_argument("--max-depth", type=int, default=200)
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="Load an observer extension (repeatable)")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Debug logging and scope snapshots in tracebacks")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format="%(name)s: %(message)s")

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    result = parse(source_text, max_file_size=args.max_file_size, max_depth=args.max_depth)
    _print_diagnostics(result, source_text, filename)
    if not result.ok:
        if args.json and args.ast:
            print(json.dumps({"src": source_text, "ast": to_dict(result.ast), "errors": [d.to_dict() for d in result.errors]}, indent=2))
        return 1

    try:
        services = load_runtime_services(args.ext)
    except StepwiseExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1
    for line in services.describe():
        logger.info("extension %s", line)

    state = start(
        result.ast,
        max_steps=args.max_steps,
        max_scope_depth=args.max_scope_depth,
        max_trace_length=args.max_trace_length,
        hooks=None if services.hook_registry.empty else services.hook_registry,
    )
    formatter = TraceFormatter(state, source_text)

    if args.step:
        run_stepper(state, formatter)
    else:
        state.run()

    if args.json:
        print(formatter.to_json(include_ast=args.ast))
    else:
        if args.trace:
            print(formatter.format_trace())
        _print_globals(state)

    if state.status == STATUS_ERROR:
        print(formatter.format_text(verbose=args.verbose), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())

"""falsy entry point: run or inspect FALSE programs."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import FalseExtensionError, load_runtime_services
from interpreter import FalseRuntimeError, Interpreter, TracebackFormatter
from parser import format_instructions, parse


def _read_source(args: argparse.Namespace) -> Optional[tuple]:
    if args.source_mode:
        return args.program, "<string>"
    filename = args.program
    try:
        with open(filename, "r", encoding="utf-8") as handle:
            return handle.read(), filename
    except (OSError, UnicodeDecodeError) as exc:
        print(f"Failed to read {filename}: {exc}", file=sys.stderr)
        return None


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="FALSE interpreter")
    parser.add_argument("program", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit stack snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--dump", action="store_true", help="Parse only and print the canonical program text")
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="Load an extension module (repeatable)")
    args = parser.parse_args(argv)

    loaded = _read_source(args)
    if loaded is None:
        return 1
    source_text, filename = loaded

    result = parse(source_text)
    if result.has_errors:
        for error in result.errors:
            print(f"{filename}:{error}", file=sys.stderr)
        return 1
    if args.dump:
        print(format_instructions(result.output))
        return 0

    try:
        services = load_runtime_services(args.ext)
    except FalseExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1
    if args.verbose:
        for meta in services.metadata:
            print(f"Loaded extension {meta.name} {meta.version} (API {meta.requires_api})", file=sys.stderr)

    interpreter = Interpreter(source=source_text, filename=filename, verbose=args.verbose, services=services)
    try:
        interpreter.run(result.output)
    except FalseRuntimeError as error:
        sys.stdout.flush()
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    except RecursionError:
        print("RecursionError: maximum recursion depth exceeded", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())

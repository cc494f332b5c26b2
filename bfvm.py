"""bfvm entry point: assemble a program file and run it."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from assembler import BFError, BFParseError, assemble, format_listing
from extensions import BFExtensionError, load_runtime_services
from machine import EOF_ERROR, EOF_POLICIES, BFRuntimeError, Machine, TracebackFormatter


USAGE = "Usage: bfvm <file-path>"


class FileReadError(BFError):
    """Raised when the program file cannot be read."""


def load_source(path: str) -> bytes:
    try:
        with open(path, "rb") as handle:
            return handle.read()
    except OSError as exc:
        raise FileReadError(f"Failed to read {path}: {exc}") from exc


def _non_negative_int(text: str) -> int:
    value = int(text)
    if value < 0:
        raise argparse.ArgumentTypeError("must be non-negative")
    return value


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bfvm", description="Assemble and run an eight-operator tape program")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record tape snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--eof", choices=EOF_POLICIES, default=EOF_ERROR, help="What ',' does at end of input")
    parser.add_argument("--max-steps", type=_non_negative_int, default=None, help="Abort after this many executed instructions")
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="Load an extension module (repeatable)")
    parser.add_argument("--dump", action="store_true", help="Print the assembled instructions to stderr before running")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    if args.program is None:
        print(USAGE)
        return 0

    if args.source_mode:
        source = args.program.encode("utf-8")
        filename = "<string>"
    else:
        filename = args.program
        try:
            source = load_source(filename)
        except FileReadError as error:
            print(f"FileReadError: {error}", file=sys.stderr)
            return 1

    try:
        services = load_runtime_services(args.ext)
    except BFExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    try:
        program = assemble(source, filename)
    except BFParseError as error:
        print(f"{error.__class__.__name__}: {error}", file=sys.stderr)
        return 1

    if args.dump:
        print(format_listing(program), file=sys.stderr)

    machine = Machine(
        eof_policy=args.eof,
        max_steps=args.max_steps,
        verbose=args.verbose,
        services=services,
    )
    try:
        machine.run(program)
    except BFRuntimeError as error:
        sys.stdout.flush()
        formatter = TracebackFormatter(machine)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())

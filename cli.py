#!/usr/bin/env python3
"""
RVM Command Line
=================
Two modes:

  asm   Assemble a source file into a binary (default a.out)
  vm    Load a binary and run it to completion, streaming output

Any other mode prints usage and exits without running anything.

Usage:
  python cli.py asm SOURCE [-o OUT] [-l]
  python cli.py vm BINARY [--mem WORDS] [--max-steps N] [--dump START:END]
"""

from __future__ import annotations
import argparse
import logging
import sys

from asm import assemble_file, AsmError, DEFAULT_OUTPUT
from rvm import DEFAULT_MEM_SIZE, LoadError, RvmError
from system import RvmSystem

log = logging.getLogger(__name__)

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


def setup_logging(verbosity: int):
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


def _parse_range(text: str) -> tuple[int, int]:
    """Parse 'START:END' (decimal or 0x hex, inclusive)."""
    try:
        start_s, end_s = text.split(":", 1)
        return int(start_s, 0), int(end_s, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"expected START:END, got {text!r}") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rvm",
        description="RVM assembler and virtual machine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py asm hello.asm -o hello.bin\n"
               "  python cli.py vm hello.bin\n"
               "  python cli.py -vv vm hello.bin --dump 0:8\n"
    )
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase log output (-v info, -vv debug)")
    sub = parser.add_subparsers(dest="mode", metavar="{asm,vm}")

    p_asm = sub.add_parser("asm", help="Assemble SOURCE into a binary")
    p_asm.add_argument("source", help="Assembly source file")
    p_asm.add_argument("-o", "--output", default=DEFAULT_OUTPUT,
                       help=f"Output binary (default: {DEFAULT_OUTPUT})")
    p_asm.add_argument("--listing", "-l", action="store_true",
                       help="Print an assembly listing")

    p_vm = sub.add_parser("vm", help="Load BINARY and run it")
    p_vm.add_argument("binary", help="Program binary (big-endian words)")
    p_vm.add_argument("--mem", type=int, default=DEFAULT_MEM_SIZE,
                      metavar="WORDS",
                      help=f"Memory size in words (default: {DEFAULT_MEM_SIZE})")
    p_vm.add_argument("--max-steps", type=int, default=None, metavar="N",
                      help="Stop with a fault after N instructions")
    p_vm.add_argument("--dump", type=_parse_range, default=None,
                      metavar="START:END",
                      help="Print a memory slice after the run")
    return parser


def cmd_asm(args) -> int:
    try:
        out, count = assemble_file(args.source, args.output,
                                   listing=args.listing)
    except AsmError as e:
        print(f"Assembly error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Wrote binary to {out} ({count} words)")
    return 0


def cmd_vm(args) -> int:
    try:
        system = RvmSystem(mem_size=args.mem, max_steps=args.max_steps)
        system.load_binary_file(args.binary)
    except (LoadError, ValueError) as e:
        print(f"Load error: {e}", file=sys.stderr)
        return 1

    result = system.run()
    if args.dump is not None:
        start, end = args.dump
        print()
        try:
            print(system.cpu.mem.dump(start, end))
        except RvmError as e:
            print(f"Dump error: {e}", file=sys.stderr)
    if result.fault is not None:
        print(f"\nFault: {result.fault}", file=sys.stderr)
        return 1
    if result.console_error is not None:
        print(f"\nOutput error: {result.console_error}", file=sys.stderr)
        return 1
    log.info("Halted after %d cycles", result.cycles)
    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.mode is None:
        parser.print_usage()
        return 2
    setup_logging(args.verbose)
    if args.mode == "asm":
        return cmd_asm(args)
    return cmd_vm(args)


if __name__ == "__main__":
    sys.exit(main())

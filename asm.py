"""
RVM Assembler
==============
Translates assembly text into the big-endian word stream the loader reads.

One output word per effective line, in source order:
  - Comments (';' to end of line, outside character literals)
  - Blank lines are skipped
  - Operands separated by commas and/or whitespace
  - Immediates: decimal, hex with 0x prefix, or a character literal ('H')
  - .word directive emits a raw 32-bit value

Usage:
  from asm import assemble
  binary = assemble(source_text)
"""

from __future__ import annotations
import re
from typing import Optional

from isa import (ADDR, ADDR_MAX, IMM_MAX, ARITY, OPCODE_TABLE, encode,
                 disassemble, words_to_bytes, bytes_to_words)

DEFAULT_OUTPUT = "a.out"

_ESCAPES = {"n": 0x0A, "r": 0x0D, "t": 0x09, "0": 0x00, "\\": 0x5C,
            "'": 0x27}

_TOKEN_RE = re.compile(r"'(?:\\.|[^'\\])'|[^\s,]+")


class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")

# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

def _strip_comment(raw: str) -> str:
    """Drop everything after ';', but not inside a character literal."""
    out = []
    in_char = False
    escaped = False
    for ch in raw:
        if escaped:
            escaped = False
        elif ch == "\\" and in_char:
            escaped = True
        elif ch == "'":
            in_char = not in_char
        elif ch == ";" and not in_char:
            break
        out.append(ch)
    return "".join(out).strip()


def _parse_char(lineno: int, tok: str) -> int:
    body = tok[1:-1]
    if len(body) == 1:
        return ord(body) & 0xFF
    if len(body) == 2 and body[0] == "\\" and body[1] in _ESCAPES:
        return _ESCAPES[body[1]]
    raise AsmError(lineno, f"Bad character literal: {tok}")


def _parse_imm(lineno: int, tok: str) -> int:
    """Parse a decimal, 0x hex, or character literal."""
    if len(tok) >= 3 and tok[0] == "'" and tok[-1] == "'":
        return _parse_char(lineno, tok)
    if tok.startswith(("0x", "0X")):
        base = 16
    else:
        base = 10
    try:
        return int(tok, base)
    except ValueError:
        raise AsmError(lineno, f"Bad number: {tok!r}") from None


def _tokens(text: str) -> list[str]:
    return _TOKEN_RE.findall(text)

# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

def assemble_line(lineno: int, text: str) -> int:
    """Assemble one cleaned, non-empty line into a word."""
    toks = _tokens(text)
    mnem = toks[0].lower()
    ops = toks[1:]

    if mnem == ".word":
        if len(ops) != 1:
            raise AsmError(lineno, ".word takes exactly one value")
        val = _parse_imm(lineno, ops[0])
        if not 0 <= val <= 0xFFFF_FFFF:
            raise AsmError(lineno, f".word value {val} out of range")
        return val

    if mnem not in OPCODE_TABLE:
        raise AsmError(lineno, f"Unknown mnemonic: {toks[0]}")
    kinds = ARITY[mnem]
    if len(ops) != len(kinds):
        raise AsmError(lineno, f"{mnem} takes {len(kinds)} operand(s), "
                               f"got {len(ops)}")

    values = []
    for kind, tok in zip(kinds, ops):
        val = _parse_imm(lineno, tok)
        hi = ADDR_MAX if kind == ADDR else IMM_MAX
        if not 0 <= val <= hi:
            raise AsmError(lineno, f"{kind} operand {tok} out of range "
                                   f"[0, {hi}]")
        values.append(val)

    cls = OPCODE_TABLE[mnem][1]
    return encode(cls(*values))


def assemble_words(source: str, listing: bool = False) -> list[int]:
    words: list[int] = []
    for lineno, raw in enumerate(source.split("\n"), 1):
        text = _strip_comment(raw)
        if not text:
            continue
        word = assemble_line(lineno, text)
        if listing:
            print(f"{len(words):04d}  {word:08X}  {text}")
        words.append(word)
    return words


def assemble(source: str, listing: bool = False) -> bytearray:
    """Assemble *source* into a big-endian binary.

    If listing=True, print an index/hex/source listing to stdout.
    """
    return bytearray(words_to_bytes(assemble_words(source, listing)))


def assemble_file(src_path: str, out_path: Optional[str] = None,
                  listing: bool = False) -> tuple[str, int]:
    """Assemble a source file and write the binary.  Returns (path, words)."""
    out_path = out_path or DEFAULT_OUTPUT
    with open(src_path, "r") as f:
        source = f.read()
    code = assemble(source, listing=listing)
    with open(out_path, "wb") as f:
        f.write(code)
    return out_path, len(code) // 4


def disassemble_binary(data: bytes | bytearray) -> str:
    """Inverse listing of a binary, one instruction per line."""
    return "\n".join(disassemble(w) for w in bytes_to_words(data))

"""
RVM Instruction Set
====================
Binary instruction format shared by the engine, the assembler and the
disassembler.

Every instruction is one 32-bit big-endian word:

    [opcode:1][op1:1][op2_hi:1][op2_lo:1]

How the last three bytes are read depends on the opcode:

  eof              : operand bytes ignored
  jmp, jz, prn     : address in op1
  mov, mop, mul,   : dst in op1, src in op2_lo (op2_hi is zero)
  div
  str, adi, sui    : dst in op1, 16-bit immediate in op2_hi:op2_lo
  cmp              : first address in op1, second in op2_hi

Words are decoded once into a small frozen dataclass per opcode, which the
engine matches on.  ``encode`` is the exact inverse of ``decode`` for
canonical words (unused bytes zero).
"""

from __future__ import annotations
import struct
from dataclasses import dataclass
from typing import Union

# ---------------------------------------------------------------------------
#  Opcodes
# ---------------------------------------------------------------------------

OP_MOV = 0x01
OP_STR = 0x02
OP_ADI = 0x03
OP_SUI = 0x04
OP_JMP = 0x05
OP_JZ  = 0x06
OP_CMP = 0x07
OP_PRN = 0x08
OP_MUL = 0x09
OP_DIV = 0x0A
OP_MOP = 0x0B
OP_EOF = 0xFF

ADDR_MAX = 0xFF      # addresses are single bytes
IMM_MAX  = 0xFFFF    # immediates are 16 bits
WORD_BYTES = 4

# Operand kinds used by the assembler and disassembler
ADDR = "addr"
IMM  = "imm"

# ---------------------------------------------------------------------------
#  Decoded instructions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Eof:
    pass

@dataclass(frozen=True)
class Mov:
    dst: int
    src: int

@dataclass(frozen=True)
class Mop:
    """Indirect load: mem[dst] = mem[mem[src]]."""
    dst: int
    src: int

@dataclass(frozen=True)
class Str:
    dst: int
    imm: int

@dataclass(frozen=True)
class Adi:
    dst: int
    imm: int

@dataclass(frozen=True)
class Sui:
    dst: int
    imm: int

@dataclass(frozen=True)
class Jmp:
    target: int

@dataclass(frozen=True)
class Jz:
    target: int

@dataclass(frozen=True)
class Cmp:
    a: int
    b: int

@dataclass(frozen=True)
class Prn:
    addr: int

@dataclass(frozen=True)
class Mul:
    dst: int
    src: int

@dataclass(frozen=True)
class Div:
    dst: int
    src: int

@dataclass(frozen=True)
class Unknown:
    """A word whose opcode byte is not in the table."""
    opcode: int
    word: int


Instruction = Union[Eof, Mov, Mop, Str, Adi, Sui, Jmp, Jz, Cmp, Prn,
                    Mul, Div, Unknown]

# mnemonic → (opcode, class, operand kinds)
OPCODE_TABLE = {
    "eof": (OP_EOF, Eof, ()),
    "mov": (OP_MOV, Mov, (ADDR, ADDR)),
    "mop": (OP_MOP, Mop, (ADDR, ADDR)),
    "str": (OP_STR, Str, (ADDR, IMM)),
    "adi": (OP_ADI, Adi, (ADDR, IMM)),
    "sui": (OP_SUI, Sui, (ADDR, IMM)),
    "jmp": (OP_JMP, Jmp, (ADDR,)),
    "jz":  (OP_JZ,  Jz,  (ADDR,)),
    "cmp": (OP_CMP, Cmp, (ADDR, ADDR)),
    "prn": (OP_PRN, Prn, (ADDR,)),
    "mul": (OP_MUL, Mul, (ADDR, ADDR)),
    "div": (OP_DIV, Div, (ADDR, ADDR)),
}

OPCODES  = {name: entry[0] for name, entry in OPCODE_TABLE.items()}
MNEMONICS = {entry[0]: name for name, entry in OPCODE_TABLE.items()}
ARITY    = {name: entry[2] for name, entry in OPCODE_TABLE.items()}
_CLASS_NAMES = {entry[1]: name for name, entry in OPCODE_TABLE.items()}

# ---------------------------------------------------------------------------
#  Word helpers
# ---------------------------------------------------------------------------

def split_word(word: int) -> tuple[int, int, int, int]:
    """Split a word into (opcode, op1, op2_hi, op2_lo)."""
    return tuple(struct.pack(">I", word & 0xFFFF_FFFF))

def compose_word(opcode: int, op1: int = 0, op2_hi: int = 0,
                 op2_lo: int = 0) -> int:
    return struct.unpack(">I", bytes((opcode, op1, op2_hi, op2_lo)))[0]

def words_to_bytes(words) -> bytes:
    """Serialise words as a big-endian stream."""
    return struct.pack(f">{len(words)}I", *words)

def bytes_to_words(data: bytes | bytearray) -> list[int]:
    """Parse a big-endian word stream.  Length must be a multiple of 4."""
    if len(data) % WORD_BYTES:
        raise ValueError(f"{len(data)} bytes is not a whole number of "
                         f"{WORD_BYTES}-byte words")
    return list(struct.unpack(f">{len(data) // WORD_BYTES}I", data))

# ---------------------------------------------------------------------------
#  Decode / encode
# ---------------------------------------------------------------------------

def decode(word: int) -> Instruction:
    """Decode one instruction word."""
    op, op1, hi, lo = split_word(word)
    imm = (hi << 8) | lo

    if   op == OP_EOF: return Eof()
    elif op == OP_MOV: return Mov(op1, lo)
    elif op == OP_MOP: return Mop(op1, lo)
    elif op == OP_STR: return Str(op1, imm)
    elif op == OP_ADI: return Adi(op1, imm)
    elif op == OP_SUI: return Sui(op1, imm)
    elif op == OP_JMP: return Jmp(op1)
    elif op == OP_JZ:  return Jz(op1)
    elif op == OP_CMP: return Cmp(op1, hi)
    elif op == OP_PRN: return Prn(op1)
    elif op == OP_MUL: return Mul(op1, lo)
    elif op == OP_DIV: return Div(op1, lo)
    return Unknown(op, word & 0xFFFF_FFFF)


def encode(instr: Instruction) -> int:
    """Encode a decoded instruction back into its canonical word."""
    match instr:
        case Eof():
            return compose_word(OP_EOF)
        case Mov(dst, src) | Mop(dst, src) | Mul(dst, src) | Div(dst, src):
            return compose_word(OPCODES[_CLASS_NAMES[type(instr)]], dst, 0, src)
        case Str(dst, imm) | Adi(dst, imm) | Sui(dst, imm):
            if not 0 <= imm <= IMM_MAX:
                raise ValueError(f"Immediate {imm} out of range [0, {IMM_MAX}]")
            return compose_word(OPCODES[_CLASS_NAMES[type(instr)]], dst,
                                imm >> 8, imm & 0xFF)
        case Jmp(target) | Jz(target):
            return compose_word(OPCODES[_CLASS_NAMES[type(instr)]], target)
        case Cmp(a, b):
            return compose_word(OP_CMP, a, b, 0)
        case Prn(addr):
            return compose_word(OP_PRN, addr)
        case Unknown(_, word):
            return word
    raise TypeError(f"Not an instruction: {instr!r}")


def build(mnemonic: str, *operands: int) -> Instruction:
    """Construct a decoded instruction from a mnemonic and operand values."""
    name = mnemonic.lower()
    if name not in OPCODE_TABLE:
        raise KeyError(f"Unknown mnemonic: {mnemonic!r}")
    _, cls, kinds = OPCODE_TABLE[name]
    if len(operands) != len(kinds):
        raise ValueError(f"{name} takes {len(kinds)} operand(s), "
                         f"got {len(operands)}")
    for kind, val in zip(kinds, operands):
        hi = ADDR_MAX if kind == ADDR else IMM_MAX
        if not 0 <= val <= hi:
            raise ValueError(f"{name}: {kind} operand {val} out of range "
                             f"[0, {hi}]")
    return cls(*operands)

# ---------------------------------------------------------------------------
#  Disassembly
# ---------------------------------------------------------------------------

def mnemonic_of(instr: Instruction) -> str:
    return _CLASS_NAMES.get(type(instr), "???")


def disassemble(word: int) -> str:
    """Render one word in assembler syntax, e.g. ``str 0, 0x0048``.

    Words that would not reassemble to themselves (unknown opcodes, or
    nonzero bytes in positions the opcode ignores) come out as ``.word``.
    """
    word &= 0xFFFF_FFFF
    instr = decode(word)
    if isinstance(instr, Unknown) or encode(instr) != word:
        return f".word {word:#010x}"
    name = mnemonic_of(instr)
    ops = []
    for kind, val in zip(ARITY[name], vars(instr).values()):
        ops.append(f"{val:#06x}" if kind == IMM else str(val))
    return f"{name} {', '.join(ops)}" if ops else name

"""
RVM Execution Engine
=====================
A word-addressed virtual CPU.  Programs are sequences of 32-bit big-endian
instruction words (see isa.py) loaded at address 0 of a small, fixed-size
memory.  The fetch/decode/execute loop reads the word at ``ip``, decodes it
once into an instruction object, applies it, and advances ``ip`` by one
unless the machine has halted.

The engine is the only writer of memory and flags.  It talks to the rest
of the system through two channels: characters from ``prn`` go to the
Output Channel, and a single HaltSignal goes to the Status Channel when the
machine stops, whether by ``eof`` or by a fault.
"""

from __future__ import annotations
import logging
import os
from typing import Optional

from isa import (Instruction, Eof, Mov, Mop, Str, Adi, Sui, Jmp, Jz, Cmp,
                 Prn, Mul, Div, Unknown, decode, disassemble, bytes_to_words)
from devices import Channel, HaltSignal

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

DEFAULT_MEM_SIZE = 500
MASK32 = (1 << 32) - 1

# Engine states
RUNNING = "running"
HALTED  = "halted"

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u32(v: int) -> int:
    """Mask to unsigned 32 bits."""
    return v & MASK32

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class RvmError(Exception):
    """Base for all engine errors."""
    pass

class LoadError(RvmError):
    pass

class HaltError(RvmError):
    pass

class FaultError(RvmError):
    """A fatal runtime fault.  Carries the instruction pointer."""

    def __init__(self, message: str, ip: Optional[int] = None):
        self.ip = ip
        super().__init__(message)

    def __str__(self):
        msg = super().__str__()
        if self.ip is not None:
            return f"{msg} (ip={self.ip:#06x})"
        return msg

class AddressFault(FaultError):
    def __init__(self, addr: int, ip: Optional[int] = None):
        self.addr = addr
        super().__init__(f"Address fault @ {addr:#x}", ip)

class ArithmeticFault(FaultError):
    pass

class StepLimitFault(FaultError):
    pass

# ---------------------------------------------------------------------------
#  Memory
# ---------------------------------------------------------------------------

class Memory:
    """Fixed-size array of 32-bit words.  Out-of-range access faults."""

    def __init__(self, size: int = DEFAULT_MEM_SIZE):
        if size <= 0:
            raise ValueError(f"Memory size must be positive, got {size}")
        self.size = size
        self.words: list[int] = [0] * size

    def __len__(self) -> int:
        return self.size

    def _check_addr(self, addr: int):
        if not 0 <= addr < self.size:
            raise AddressFault(addr)

    def read(self, addr: int) -> int:
        self._check_addr(addr)
        return self.words[addr]

    def write(self, addr: int, value: int):
        self._check_addr(addr)
        self.words[addr] = u32(value)

    def load_words(self, words: list[int]):
        """Copy *words* into the start of memory."""
        if len(words) > self.size:
            raise LoadError(f"Program has {len(words)} words, memory holds "
                            f"{self.size}")
        self.words[:len(words)] = [u32(w) for w in words]

    def dump(self, start: int = 0, end: Optional[int] = None) -> str:
        """Format words start..end (inclusive) for inspection."""
        if end is None:
            end = self.size - 1
        self._check_addr(start)
        self._check_addr(end)
        return "\n".join(f"  [{i:#06x}] {self.words[i]:#010x}"
                         for i in range(start, end + 1))

# ---------------------------------------------------------------------------
#  Flags
# ---------------------------------------------------------------------------

class Flags:
    """halt / zero / overflow.  ``halt`` can be set but never cleared."""

    __slots__ = ("_halt", "zero", "overflow")

    def __init__(self):
        self._halt: int = 0
        self.zero: int = 0
        self.overflow: int = 0

    @property
    def halt(self) -> int:
        return self._halt

    def set_halt(self):
        self._halt = 1

    def pack(self) -> int:
        """Pack into 3 bits: [O Z H] (bit 2..0)."""
        return self._halt | (self.zero << 1) | (self.overflow << 2)

    def __repr__(self):
        return f"Flags(H={self._halt} Z={self.zero} O={self.overflow})"

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class Virtmachine:
    """RVM engine: memory, flags, instruction pointer and the cycle loop."""

    def __init__(self, mem_size: int = DEFAULT_MEM_SIZE,
                 output: Optional[Channel] = None,
                 status: Optional[Channel] = None):
        log.debug("Creating new Virtmachine with size %d", mem_size)
        self.mem = Memory(mem_size)
        self.flags = Flags()
        self.ip: int = 0
        self.cycles: int = 0
        self.decode_anomalies: int = 0
        self.fault: Optional[FaultError] = None

        self.output = output if output is not None else Channel("output")
        self.status = status if status is not None else Channel("status")

        self._loaded = False
        self._signalled = False

    # -- State --

    @property
    def mem_size(self) -> int:
        return self.mem.size

    @property
    def halted(self) -> bool:
        return bool(self.flags.halt)

    @property
    def state(self) -> str:
        return HALTED if self.halted else RUNNING

    # -- Loading --

    def load(self, data: bytes | bytearray):
        """Load a big-endian word stream into memory at address 0."""
        if self._loaded:
            raise LoadError("Program already loaded")
        if self.cycles or self.halted:
            raise LoadError("Cannot load after execution has started")
        try:
            words = bytes_to_words(data)
        except ValueError as e:
            raise LoadError(str(e)) from e
        self.mem.load_words(words)
        self._loaded = True
        log.debug("Loaded %d words", len(words))

    def load_file(self, path: str | os.PathLike):
        log.debug("Attempting to load file %s", path)
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise LoadError(f"Failed to open {path}: {e.strerror or e}") from e
        self.load(data)

    # -- Execution --

    def run(self, max_steps: Optional[int] = None) -> int:
        """Cycle until halted.  Returns the number of cycles executed.

        Faults do not propagate: they are recorded in ``self.fault``, the
        machine halts and the halt signal is still sent.
        """
        log.debug("Starting virtual machine with size %d", self.mem_size)
        start = self.cycles
        try:
            while not self.halted:
                if max_steps is not None and self.cycles - start >= max_steps:
                    raise StepLimitFault(
                        f"Step limit of {max_steps} reached", self.ip)
                self.step()
        except FaultError as e:
            self._halt_on_fault(e)
        return self.cycles - start

    def step(self) -> Instruction:
        """Execute one instruction and return it.  Raises on fault."""
        if self.halted:
            raise HaltError("CPU is halted")
        ip = self.ip
        try:
            word = self.mem.read(ip)
            instr = decode(word)
            if log.isEnabledFor(logging.DEBUG):
                log.debug("Exec: [%#06x]:%#010x  %s", ip, word,
                          disassemble(word))
            self._execute(instr)
        except FaultError as e:
            if e.ip is None:
                e.ip = ip
            raise
        self.cycles += 1
        if self.halted:
            self._signal_halt()
        else:
            self.ip = u32(self.ip + 1)
        return instr

    def _execute(self, instr: Instruction):
        match instr:
            case Eof():
                self.flags.set_halt()
                log.debug("EOF reached.")
            case Mov(dst, src):
                self._set_mem(dst, self.mem.read(src))
            case Mop(dst, src):
                self._set_mem(dst, self.mem.read(self.mem.read(src)))
            case Str(dst, imm):
                self._set_mem(dst, imm)
            case Adi(dst, imm):
                self._checked(dst, self.mem.read(dst) + imm, "adding", imm)
            case Sui(dst, imm):
                if self._checked(dst, self.mem.read(dst) - imm,
                                 "subtracting", imm):
                    if self.mem.read(dst) == 0:
                        self.flags.zero = 1
            case Jmp(target):
                self._jump(target)
            case Jz(target):
                if self.flags.zero:
                    self._jump(target)
            case Cmp(a, b):
                self.flags.zero = 1 if self.mem.read(a) == self.mem.read(b) else 0
            case Prn(addr):
                self.output.put(chr(self.mem.read(addr) & 0xFF))
            case Mul(dst, src):
                self._checked(dst, self.mem.read(dst) * self.mem.read(src),
                              "multiplying by", self.mem.read(src))
            case Div(dst, src):
                divisor = self.mem.read(src)
                if divisor == 0:
                    raise ArithmeticFault(
                        f"Division by zero: [{dst:#x}] / [{src:#x}]")
                self.flags.overflow = 0
                self._set_mem(dst, self.mem.read(dst) // divisor)
            case Unknown(opcode, word):
                self.decode_anomalies += 1
                log.warning("Unrecognized operation %#04x in word %#010x at "
                            "ip=%#06x, skipping", opcode, word, self.ip)

    # -- Internals --

    def _set_mem(self, addr: int, value: int):
        self.mem.write(addr, value)
        log.debug("Memset: [%#06x]:%#010x", addr, u32(value))

    def _checked(self, dst: int, result: int, verb: str, operand: int) -> bool:
        """Store *result* if it fits in 32 bits, else set the overflow flag.

        Returns True if the store happened.
        """
        if 0 <= result <= MASK32:
            self.flags.overflow = 0
            self._set_mem(dst, result)
            return True
        log.debug("Overflow when %s %#010x at [%#06x](%#010x)",
                  verb, operand, dst, self.mem.read(dst))
        self.flags.overflow = 1
        return False

    def _jump(self, target: int):
        # ip lands on target after the post-cycle increment
        log.debug("Jumping to %#06x", target)
        self.ip = u32(target - 1)

    def _halt_on_fault(self, fault: FaultError):
        self.fault = fault
        self.flags.set_halt()
        log.error("Fatal fault: %s", fault)
        self._signal_halt()

    def abort(self, exc: Exception):
        """Halt after an unexpected error, recording it as a fault."""
        fault = FaultError(f"Engine error: {exc!r}", self.ip)
        fault.__cause__ = exc
        if self.fault is None:
            self.fault = fault
        self.flags.set_halt()
        log.error("Engine aborted: %s", fault)
        self._signal_halt()

    def _signal_halt(self):
        if self._signalled:
            return
        self._signalled = True
        self.status.put(HaltSignal(cycles=self.cycles, fault=self.fault))

    # -- Debug --

    def dump_state(self) -> str:
        lines = [
            f"  IP     = {self.ip:#06x}",
            f"  FLAGS  = H={self.flags.halt} Z={self.flags.zero} "
            f"O={self.flags.overflow}",
            f"  CYCLES = {self.cycles}",
            f"  STATE  = {self.state}",
        ]
        if self.decode_anomalies:
            lines.append(f"  UNKNOWN OPS = {self.decode_anomalies}")
        if self.fault is not None:
            lines.append(f"  FAULT  = {self.fault}")
        return "\n".join(lines)

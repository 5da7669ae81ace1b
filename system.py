"""
RVM System
===========
Wires together:
  - the execution engine (rvm.py)
  - the Output, Status and Control channels (devices.py)
  - the Monitor and Console device tasks

and runs them as three threads.  ``run()`` returns once the engine thread
has stopped and the console has drained every character it was sent.
"""

from __future__ import annotations
import logging
import os
import threading
from dataclasses import dataclass
from typing import Optional, TextIO

from rvm import Virtmachine, FaultError, DEFAULT_MEM_SIZE
from devices import Channel, Monitor, Console

log = logging.getLogger(__name__)


@dataclass
class RunResult:
    cycles: int
    fault: Optional[FaultError]
    output: str
    console_error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.fault is None and self.console_error is None


class RvmSystem:
    """One machine, one program, one run."""

    def __init__(self, mem_size: int = DEFAULT_MEM_SIZE,
                 sink: Optional[TextIO] = None,
                 max_steps: Optional[int] = None):
        self.output = Channel("output")
        self.status = Channel("status")
        self.control = Channel("control")

        self.cpu = Virtmachine(mem_size, output=self.output, status=self.status)
        self.monitor = Monitor(self.status, self.control)
        self.console = Console(self.output, self.control, sink=sink)
        self.max_steps = max_steps

        self._threads: list[threading.Thread] = []
        self._started = False

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_binary(self, data: bytes | bytearray):
        self.cpu.load(data)

    def load_binary_file(self, path: str | os.PathLike):
        self.cpu.load_file(path)

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    def _cpu_loop(self):
        try:
            self.cpu.run(max_steps=self.max_steps)
        except Exception as e:
            # anything run() does not turn into a fault itself
            self.cpu.abort(e)

    def start(self):
        """Start the engine, monitor and console threads."""
        if self._started:
            raise RuntimeError("System already started")
        self._started = True
        self._threads = [
            threading.Thread(target=self.console, name="rvm-console",
                             daemon=True),
            threading.Thread(target=self.monitor, name="rvm-monitor",
                             daemon=True),
            threading.Thread(target=self._cpu_loop, name="rvm-cpu",
                             daemon=True),
        ]
        for t in self._threads:
            t.start()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for all three tasks.  Returns True if they all finished."""
        for t in reversed(self._threads):
            t.join(timeout)
        return not any(t.is_alive() for t in self._threads)

    def run(self) -> RunResult:
        """Run the loaded program to completion or fault."""
        self.start()
        self.join()
        result = RunResult(cycles=self.cpu.cycles, fault=self.cpu.fault,
                           output=self.console.text,
                           console_error=self.console.error)
        if result.fault is not None:
            log.info("Run ended with fault after %d cycles: %s",
                     result.cycles, result.fault)
        else:
            log.info("Run halted cleanly after %d cycles", result.cycles)
        return result

    # -----------------------------------------------------------------
    #  State queries
    # -----------------------------------------------------------------

    @property
    def halted(self) -> bool:
        return self.cpu.halted

    @property
    def finished(self) -> bool:
        """Engine halted and console fully drained."""
        return self.cpu.halted and self.console.finished.is_set()

    def dump_state(self) -> str:
        lines = ["=== CPU ===", self.cpu.dump_state(), "",
                 "=== Channels ==="]
        for ch in (self.output, self.status, self.control):
            lines.append(f"  {ch.name}: {len(ch)} queued"
                         f"{' (closed)' if ch.closed else ''}")
        lines.append(f"  console: {len(self.console.transcript)} chars written")
        if self.console.error is not None:
            lines.append(f"  console error: {self.console.error!r}")
        return "\n".join(lines)

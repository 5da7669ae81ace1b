"""
RVM Device Layer
=================
Channels and the two device tasks that sit beside the execution engine.

  Output Channel   engine  → console   characters from ``prn``, FIFO
  Status Channel   engine  → monitor   one HaltSignal when the engine stops
  Control Channel  monitor → console   one StopSignal

Each channel has exactly one producer and one consumer.  Tasks never share
any other state: the engine owns memory and flags, the console owns its
sink.  Receivers block (``Channel.get`` / ``select``) instead of polling on
a fixed interval.

Shutdown order: engine pushes its last character, then the halt signal;
the monitor turns the halt signal into a stop signal; the console, once it
sees stop, drains whatever is still queued on the Output Channel and exits.
"""

from __future__ import annotations
import logging
import sys
import threading
from collections import deque
from dataclasses import dataclass
from queue import Empty
from typing import Optional, TextIO

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
#  Messages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HaltSignal:
    """Sent once on the Status Channel when the engine enters HALTED."""
    cycles: int = 0
    fault: Optional[Exception] = None


@dataclass(frozen=True)
class StopSignal:
    """Sent once on the Control Channel to stop the console."""
    pass


# ---------------------------------------------------------------------------
#  Channel
# ---------------------------------------------------------------------------

class ChannelClosed(Exception):
    pass


class Channel:
    """Unbounded single-producer / single-consumer FIFO.

    ``get`` blocks until an item arrives; ``select`` waits on several
    channels at once.  A closed channel still hands out what it holds, then
    raises ``ChannelClosed`` from blocking reads.
    """

    def __init__(self, name: str):
        self.name = name
        self._items: deque = deque()
        self._cond = threading.Condition()
        self._watchers: list[threading.Event] = []
        self.closed = False

    def __repr__(self):
        return f"<Channel {self.name} len={len(self)}{' closed' if self.closed else ''}>"

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def ready(self) -> bool:
        """True if a read would not block."""
        with self._cond:
            return bool(self._items) or self.closed

    def put(self, item):
        with self._cond:
            if self.closed:
                raise ChannelClosed(f"put on closed channel {self.name}")
            self._items.append(item)
            self._cond.notify()
            watchers = list(self._watchers)
        for ev in watchers:
            ev.set()

    def get_nowait(self):
        """Pop the oldest item or raise ``queue.Empty``."""
        with self._cond:
            if not self._items:
                raise Empty
            return self._items.popleft()

    def get(self, timeout: Optional[float] = None):
        """Block until an item is available and return it.

        Raises ``queue.Empty`` on timeout and ``ChannelClosed`` when the
        channel is closed and empty.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self.closed,
                                       timeout):
                raise Empty
            if self._items:
                return self._items.popleft()
            raise ChannelClosed(self.name)

    def drain(self) -> list:
        """Pop everything currently queued, oldest first."""
        with self._cond:
            items = list(self._items)
            self._items.clear()
            return items

    def close(self):
        with self._cond:
            self.closed = True
            self._cond.notify_all()
            watchers = list(self._watchers)
        for ev in watchers:
            ev.set()

    # -- select support --

    def _watch(self, ev: threading.Event):
        with self._cond:
            self._watchers.append(ev)

    def _unwatch(self, ev: threading.Event):
        with self._cond:
            self._watchers.remove(ev)


def select(channels: list[Channel],
           timeout: Optional[float] = None) -> list[Channel]:
    """Block until at least one channel is ready; return the ready ones.

    Returns an empty list on timeout.  Order of the result follows the
    order of *channels*.
    """
    ready = [ch for ch in channels if ch.ready]
    if ready:
        return ready
    ev = threading.Event()
    for ch in channels:
        ch._watch(ev)
    try:
        # re-check after registering so a put in between is not missed
        ready = [ch for ch in channels if ch.ready]
        if not ready and ev.wait(timeout):
            ready = [ch for ch in channels if ch.ready]
        return ready
    finally:
        for ch in channels:
            ch._unwatch(ev)


# ---------------------------------------------------------------------------
#  Device base class
# ---------------------------------------------------------------------------

class Device:
    """A task that runs in its own thread and talks only through channels.

    An exception escaping ``run()`` ends the task; it is kept in ``error``
    so the owner can report it after joining.
    """

    def __init__(self, name: str):
        self.name = name
        self.finished = threading.Event()
        self.error: Optional[Exception] = None

    def run(self):
        """Task body.  Override."""
        raise NotImplementedError

    def __call__(self):
        try:
            self.run()
        except Exception as e:
            self.error = e
            log.error("%s task failed: %r", self.name, e)
        finally:
            self.finished.set()


# ---------------------------------------------------------------------------
#  Monitor: halt signal → stop signal
# ---------------------------------------------------------------------------

class Monitor(Device):
    """Waits for the engine's halt signal and asks the console to stop."""

    def __init__(self, status: Channel, control: Channel):
        super().__init__("monitor")
        self.status = status
        self.control = control
        self.signal: Optional[HaltSignal] = None

    def run(self):
        while True:
            try:
                msg = self.status.get()
            except ChannelClosed:
                log.debug("Status channel closed without a halt signal")
                break
            if isinstance(msg, HaltSignal):
                self.signal = msg
                log.debug("Halt observed after %d cycles, stopping console",
                          msg.cycles)
                break
            log.debug("Monitor ignoring %r", msg)
        self.control.put(StopSignal())


# ---------------------------------------------------------------------------
#  Console: Output Channel → host sink
# ---------------------------------------------------------------------------

class Console(Device):
    """Output consumer: forwards characters to *sink* as they arrive.

    After the stop signal, everything still queued on the Output Channel
    is written before the task exits.
    """

    def __init__(self, output: Channel, control: Channel,
                 sink: Optional[TextIO] = None):
        super().__init__("console")
        self.output = output
        self.control = control
        self.sink = sink if sink is not None else sys.stdout
        self.transcript: list[str] = []

    def _emit(self, ch: str):
        try:
            self.sink.write(ch)
        except UnicodeEncodeError:
            # sink cannot encode the byte, write it as an escape instead
            ch = ch.encode("ascii", "backslashreplace").decode("ascii")
            self.sink.write(ch)
        self.sink.flush()
        self.transcript.append(ch)

    def run(self):
        while True:
            ready = select([self.output, self.control])
            if self.output in ready:
                try:
                    self._emit(self.output.get_nowait())
                except Empty:
                    # closed and empty: nothing more can arrive
                    break
            if self.control in ready:
                try:
                    self.control.get_nowait()
                except Empty:
                    # closed without a stop signal
                    pass
                break
        remaining = self.output.drain()
        for ch in remaining:
            self._emit(ch)
        log.debug("Console stopped, drained %d trailing character(s)",
                  len(remaining))

    @property
    def text(self) -> str:
        return "".join(self.transcript)

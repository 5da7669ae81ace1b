"""
Pytest configuration for the RVM test suite.

    python -m pytest                 # everything
    python -m pytest -m "not threaded"   # engine-only, no device threads

Tests marked ``threaded`` start the engine/monitor/console threads.  After
each one, the LeakedThreadCheck plugin fails the test if any ``rvm-*``
thread is still alive, so a stuck console or monitor shows up as a failure
instead of a hung interpreter.
"""

import threading
import time

import pytest

from asm import assemble
from rvm import Virtmachine

THREAD_PREFIX = "rvm-"
THREAD_GRACE_S = 2.0


def pytest_configure(config):
    """Register markers and the thread-leak plugin."""
    config.addinivalue_line("markers",
        "threaded: test starts the engine, monitor and console threads")
    config.pluginmanager.register(LeakedThreadCheck(), "rvm_thread_check")


class LeakedThreadCheck:
    """Fails threaded tests that leave rvm-* threads running."""

    @pytest.hookimpl(wrapper=True)
    def pytest_runtest_call(self, item):
        # re-raises if the test itself failed
        result = yield
        if item.get_closest_marker("threaded") is not None:
            leaked = _wait_for_threads(THREAD_GRACE_S)
            if leaked:
                names = ", ".join(t.name for t in leaked)
                pytest.fail(f"threads still running after test: {names}")
        return result


def _rvm_threads():
    return [t for t in threading.enumerate()
            if t.name.startswith(THREAD_PREFIX) and t.is_alive()]


def _wait_for_threads(grace: float):
    deadline = time.monotonic() + grace
    alive = _rvm_threads()
    while alive and time.monotonic() < deadline:
        time.sleep(0.01)
        alive = _rvm_threads()
    return alive


# ---------------------------------------------------------------------------
#  Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def make_vm():
    """Factory: assemble *source*, load it into a fresh Virtmachine."""
    def _make(source: str, mem_size: int = 500) -> Virtmachine:
        vm = Virtmachine(mem_size)
        vm.load(assemble(source))
        return vm
    return _make


@pytest.fixture
def run_source(make_vm):
    """Factory: assemble, load and run synchronously; return the machine."""
    def _run(source: str, mem_size: int = 500,
             max_steps: int = 100_000) -> Virtmachine:
        vm = make_vm(source, mem_size)
        vm.run(max_steps=max_steps)
        return vm
    return _run

"""Synchronous dispatch of process signals to registered handlers."""

from __future__ import annotations

import enum
import logging
import signal
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

_log = logging.getLogger("daemonkit.signals")

_DEFAULT_EXIT_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT, signal.SIGHUP)


class DispatchType(enum.Enum):
    """How a dispatched signal's handler is run."""

    DIRECT = "direct"
    THREAD_POOL = "thread_pool"


class DispatchResult(enum.Enum):
    """Outcome of waiting for and dispatching one signal."""

    SUCCESSFUL = "successful"
    EXIT_SUCCESSFUL = "exit_successful"
    NOT_EXISTS = "not_exists"
    WAIT_FAILED = "wait_failed"


@dataclass(frozen=True)
class SignalDescriptor:
    """A signal number, the callable it runs and how that callable is run."""

    signum: int
    handler: Callable[[], object]
    dispatch_type: DispatchType = DispatchType.DIRECT


class SignalDispatcher:
    """Blocks selected signals and dispatches them with ``sigwait``.

    Handlers must be added from the main thread before other threads are
    started, since the signal mask is inherited by new threads.
    """

    def __init__(self, exit_signals=_DEFAULT_EXIT_SIGNALS, executor=None):
        self._exit_signals = frozenset(int(s) for s in exit_signals)
        self._executor = executor
        self._handlers: dict[int, SignalDescriptor] = {}
        self._signal_set: set[int] = set()

    def add_ignored_signals(self, signals):
        """Ignore every signal in ``signals``; raise OSError on the first failure."""
        for sig in signals:
            try:
                signal.signal(sig, signal.SIG_IGN)
            except (OSError, ValueError) as exc:
                _log.error("Adding ignored signal failed (%s, %s).", sig, exc)
                raise OSError(f"cannot ignore signal {sig}: {exc}") from exc

    def add_dispatched_signals(self, *args):
        """Register descriptors; a signal already registered gets the new handler.

        On failure the descriptors before the failing one stay registered
        and OSError is raised. If the signal mask cannot be set, every
        registration is cleared.
        """
        error = None
        for descriptor in args:
            signum = int(descriptor.signum)
            if signum in self._handlers:
                self._handlers[signum] = descriptor
                continue
            try:
                signal.signal(signum, signal.SIG_DFL)
            except (OSError, ValueError) as exc:
                _log.error("Adding dispatched signal failed (%s).", signum)
                error = OSError(f"cannot dispatch signal {signum}: {exc}")
                error.__cause__ = exc
                break
            self._handlers[signum] = descriptor
            self._signal_set.add(signum)
        try:
            signal.pthread_sigmask(signal.SIG_BLOCK, self._signal_set)
        except (OSError, ValueError) as exc:
            self._signal_set.clear()
            self._handlers.clear()
            _log.error("Setting the signal mask failed (%s).", exc)
            raise OSError(f"cannot set signal mask: {exc}") from exc
        if error is not None:
            raise error

    def dispatch_signals(self):
        """Wait for one registered signal and run its handler.

        Returns ``(result, signum)``; ``signum`` is None when waiting failed.
        """
        try:
            signum = signal.sigwait(self._signal_set)
        except OSError as exc:
            _log.error("Waiting for a dispatched signal failed (%s).", exc)
            return DispatchResult.WAIT_FAILED, None
        signum = int(signum)
        descriptor = self._handlers.get(signum)
        if descriptor is None:
            _log.error("No dispatched handler for signal %d.", signum)
            return DispatchResult.NOT_EXISTS, signum
        if descriptor.dispatch_type is DispatchType.DIRECT:
            descriptor.handler()
        else:
            self._pool().submit(descriptor.handler)
        if self.is_exit_signal(signum):
            return DispatchResult.EXIT_SUCCESSFUL, signum
        return DispatchResult.SUCCESSFUL, signum

    def is_exit_signal(self, signum):
        """Return whether ``signum`` is one of the exit signals."""
        return int(signum) in self._exit_signals

    def dispatched_signals(self):
        """Return the set of signals this dispatcher waits for."""
        return frozenset(self._signal_set)

    def _pool(self):
        if self._executor is None:
            self._executor = ThreadPoolExecutor(thread_name_prefix="signal-dispatch")
        return self._executor


def discard_child_process_exit_info():
    """Have exited child processes reaped automatically.

    Must be called before any child process is created. Raises OSError
    on failure.
    """
    try:
        signal.signal(signal.SIGCHLD, signal.SIG_IGN)
    except (OSError, ValueError) as exc:
        _log.error("Setting child exit info discard failed (%s).", exc)
        raise OSError(f"cannot discard child exit information: {exc}") from exc
import os
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from daemonkit.signals import (
    DispatchResult,
    DispatchType,
    SignalDescriptor,
    SignalDispatcher,
    discard_child_process_exit_info,
)

_WATCHED = (signal.SIGUSR1, signal.SIGUSR2, signal.SIGTTIN, signal.SIGTTOU, signal.SIGCHLD)


@pytest.fixture(autouse=True)
def restore_signals():
    saved_mask = signal.pthread_sigmask(signal.SIG_BLOCK, [])
    saved = {sig: signal.getsignal(sig) for sig in _WATCHED}
    yield
    pending = signal.sigpending() & {signal.SIGUSR1, signal.SIGUSR2}
    for _ in pending:
        signal.sigwait(pending)
    for sig, handler in saved.items():
        if handler is not None:
            signal.signal(sig, handler)
    signal.pthread_sigmask(signal.SIG_SETMASK, saved_mask)


def _raise_here(sig):
    signal.pthread_kill(threading.get_ident(), sig)


def test_direct_dispatch_runs_handler():
    calls = []
    dispatcher = SignalDispatcher()
    dispatcher.add_dispatched_signals(
        SignalDescriptor(signal.SIGUSR1, lambda: calls.append("usr1"))
    )
    _raise_here(signal.SIGUSR1)
    result = dispatcher.dispatch_signals()
    assert result == (DispatchResult.SUCCESSFUL, signal.SIGUSR1)
    assert calls == ["usr1"]


def test_exit_signal_dispatch():
    calls = []
    dispatcher = SignalDispatcher(exit_signals=[signal.SIGUSR2])
    dispatcher.add_dispatched_signals(
        SignalDescriptor(signal.SIGUSR2, lambda: calls.append(1), DispatchType.DIRECT)
    )
    _raise_here(signal.SIGUSR2)
    assert dispatcher.dispatch_signals() == (DispatchResult.EXIT_SUCCESSFUL, signal.SIGUSR2)
    assert calls == [1]


def test_thread_pool_dispatch():
    done = threading.Event()
    seen = []

    def handler():
        seen.append(threading.get_ident())
        done.set()

    with ThreadPoolExecutor(max_workers=1) as executor:
        dispatcher = SignalDispatcher(executor=executor)
        dispatcher.add_dispatched_signals(
            SignalDescriptor(signal.SIGUSR1, handler, DispatchType.THREAD_POOL)
        )
        _raise_here(signal.SIGUSR1)
        result, signum = dispatcher.dispatch_signals()
        assert done.wait(5)
    assert result is DispatchResult.SUCCESSFUL
    assert signum == signal.SIGUSR1
    assert seen and seen[0] != threading.get_ident()


def test_adding_same_signal_replaces_handler():
    calls = []
    dispatcher = SignalDispatcher()
    dispatcher.add_dispatched_signals(
        SignalDescriptor(signal.SIGUSR1, lambda: calls.append("first")),
        SignalDescriptor(signal.SIGUSR1, lambda: calls.append("second")),
    )
    assert dispatcher.dispatched_signals() == frozenset({signal.SIGUSR1})
    _raise_here(signal.SIGUSR1)
    dispatcher.dispatch_signals()
    assert calls == ["second"]


def test_dispatched_signals_are_blocked():
    dispatcher = SignalDispatcher()
    dispatcher.add_dispatched_signals(SignalDescriptor(signal.SIGUSR2, lambda: None))
    assert signal.SIGUSR2 in signal.pthread_sigmask(signal.SIG_BLOCK, [])


def test_default_exit_signals():
    dispatcher = SignalDispatcher()
    for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT, signal.SIGHUP):
        assert dispatcher.is_exit_signal(sig)
    assert not dispatcher.is_exit_signal(signal.SIGUSR1)


def test_add_ignored_signals():
    dispatcher = SignalDispatcher()
    dispatcher.add_ignored_signals([signal.SIGTTIN, signal.SIGTTOU])
    assert signal.getsignal(signal.SIGTTIN) == signal.SIG_IGN
    assert signal.getsignal(signal.SIGTTOU) == signal.SIG_IGN


def test_ignoring_sigkill_fails():
    dispatcher = SignalDispatcher()
    with pytest.raises(OSError):
        dispatcher.add_ignored_signals([signal.SIGKILL])


def test_partial_add_keeps_earlier_descriptors():
    dispatcher = SignalDispatcher()
    with pytest.raises(OSError):
        dispatcher.add_dispatched_signals(
            SignalDescriptor(signal.SIGUSR1, lambda: None),
            SignalDescriptor(signal.SIGKILL, lambda: None),
            SignalDescriptor(signal.SIGUSR2, lambda: None),
        )
    assert dispatcher.dispatched_signals() == frozenset({signal.SIGUSR1})


def test_discard_child_process_exit_info():
    assert discard_child_process_exit_info() in (True, None)
    assert signal.getsignal(signal.SIGCHLD) == signal.SIG_IGN
    pid = os.posix_spawn(sys.executable, [sys.executable, "-c", "pass"], dict(os.environ))
    with pytest.raises(ChildProcessError):
        os.waitpid(pid, 0)
"""Service status reporting for daemons run under a service manager."""

from __future__ import annotations

import abc
import enum
import logging
import os
import socket

_log = logging.getLogger("daemonkit.progress")


class Status(enum.Enum):
    """Running status of a service or daemon."""

    START_PENDING = 0
    RUNNING = 1
    STOP_PENDING = 2
    STOPPED = 3


class ProgressReporter(abc.ABC):
    """Reports the running status of a service to its service manager."""

    @abc.abstractmethod
    def inc_progress(self, step, wait_hint):
        """Advance the current status by ``step``.

        ``wait_hint`` is how long, in milliseconds, the service manager
        should wait before expecting the next report.
        """

    @abc.abstractmethod
    def report_new_status(self, new_status, wait_hint, exit_code=0):
        """Report ``new_status``; ``exit_code`` matters when stopping."""

    @abc.abstractmethod
    def current_status(self):
        """Return the last reported status."""


class NullReporter(ProgressReporter):
    """A reporter that reports nothing and always claims to be stopped."""

    def inc_progress(self, step, wait_hint):
        return None

    def report_new_status(self, new_status, wait_hint, exit_code=0):
        return None

    def current_status(self):
        return Status.STOPPED


def _extend_timeout(wait_hint):
    return f"EXTEND_TIMEOUT_USEC={int(wait_hint) * 1000}"


class SystemdReporter(ProgressReporter):
    """Reports status to systemd through its notification socket.

    The socket path defaults to the ``NOTIFY_SOCKET`` environment variable.
    A path starting with ``@`` names a socket in the abstract namespace.
    The reporter is false when no notification socket is available.
    """

    def __init__(self, socket_path=None):
        if socket_path is None:
            socket_path = os.environ.get("NOTIFY_SOCKET", "")
        self._status = Status.START_PENDING
        self._sock = None
        self._address = None
        if not socket_path or not hasattr(socket, "AF_UNIX"):
            return
        if socket_path.startswith("@"):
            self._address = "\0" + socket_path[1:]
        else:
            self._address = socket_path
        try:
            self._sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
        except OSError as exc:
            _log.error("Unable to open the notification socket: %s", exc)
            self._sock = None

    def notify(self, message):
        """Send ``message`` to the service manager; return whether it was sent."""
        if self._sock is None:
            raise RuntimeError("systemd notification socket is not available")
        try:
            self._sock.sendto(message.encode("utf-8"), self._address)
        except OSError as exc:
            _log.error("Sending notification %r failed: %s", message, exc)
            return False
        return True

    def inc_progress(self, step, wait_hint):
        self.notify(_extend_timeout(wait_hint))

    def report_new_status(self, new_status, wait_hint, exit_code=0):
        """Report a new status.

        Only START_PENDING, RUNNING and STOP_PENDING send a notification;
        every status is remembered.
        """
        if new_status is Status.START_PENDING:
            self.notify(_extend_timeout(wait_hint))
        elif new_status is Status.RUNNING:
            self.notify("READY=1")
        elif new_status is Status.STOP_PENDING:
            self.notify("STOPPING=1\n" + _extend_timeout(wait_hint))
        self._status = new_status

    def current_status(self):
        return self._status

    def close(self):
        """Close the notification socket."""
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __bool__(self):
        return self._sock is not None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
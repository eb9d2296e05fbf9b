"""Installation records and install/uninstall scripts for Unix daemons."""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from pathlib import Path

_log = logging.getLogger("daemonkit.service")

MAX_SERVICE_NAME_LENGTH = 31
_FORBIDDEN_NAME_CHARS = frozenset(" /\\")
_MAX_EXEC_DELAY = 9999


class DaemonType(enum.Enum):
    """How the running application is installed as a daemon."""

    NONE = ""
    SYSTEMV = "systemV"
    SYSTEMD = "systemd"


@dataclass(frozen=True)
class ServiceInfo:
    """The installed daemon's name and installation type."""

    name: str
    daemon_type: DaemonType = DaemonType.NONE


class InstallError(RuntimeError):
    """Installing or uninstalling the daemon failed."""


def read_text_file(path):
    """Return the content of ``path``, or an empty string if it cannot be read."""
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as stream:
            return stream.read()
    except OSError:
        return ""


def remove_file(path):
    """Remove ``path`` if it exists; raise OSError if it cannot be removed."""
    Path(path).unlink(missing_ok=True)


def write_text_file(content, path):
    """Write ``content`` to ``path``, replacing it.

    If writing fails after the file was opened, the partial file is
    removed and the error is raised again.
    """
    stream = open(path, "w", encoding="utf-8")
    try:
        with stream:
            stream.write(content)
            stream.flush()
    except OSError:
        try:
            remove_file(path)
        except OSError as exc:
            _log.error("Removing partial file %s failed: %s", path, exc)
        raise


def read_service_info(path, default_name):
    """Read the installation record at ``path``.

    The record holds the service name and the installation type separated
    by whitespace. A missing name falls back to ``default_name``; a missing
    or unknown type gives ``DaemonType.NONE``.
    """
    tokens = read_text_file(path).split()
    name = tokens[0] if tokens else default_name
    type_text = tokens[1] if len(tokens) > 1 else ""
    if type_text in (DaemonType.SYSTEMV.value, DaemonType.SYSTEMD.value):
        daemon_type = DaemonType(type_text)
    else:
        daemon_type = DaemonType.NONE
    return ServiceInfo(name, daemon_type)


def write_service_info(path, info):
    """Write ``info`` as an installation record to ``path``."""
    write_text_file(f"{info.name}\n{info.daemon_type.value}", path)


def validate_service_name(name):
    """Return ``name`` if usable as a daemon name, else raise InstallError."""
    if any(ch in _FORBIDDEN_NAME_CHARS for ch in name) or len(name) > MAX_SERVICE_NAME_LENGTH:
        raise InstallError(
            f"service name {name!r} holds illegal characters or is too long"
        )
    return name


def format_exec_delay(delay):
    """Return the command-line fragment passing an execution delay.

    Delays outside 1..9998 seconds are dropped (a non-zero one is logged).
    """
    if not delay:
        return ""
    if 0 < delay < _MAX_EXEC_DELAY:
        return f" --svc-exec-delay={int(delay)}"
    _log.error("Execution delay out of range, dropped: %s.", delay)
    return ""


def _install_type_text(install_type):
    if isinstance(install_type, DaemonType):
        install_type = install_type.value
    if install_type not in (DaemonType.SYSTEMV.value, DaemonType.SYSTEMD.value):
        raise InstallError(f"invalid daemon installation type: {install_type!r}")
    return install_type


def build_install_command(
    script_dir,
    install_type,
    name,
    description,
    executable,
    deploy_path,
    start_order=80,
    stop_order=20,
    depends=(),
    exec_delay=None,
):
    """Return the shell command that runs the install script."""
    type_text = _install_type_text(install_type)
    depends_text = "".join(f" {dep}" for dep in depends)
    arguments = (
        f'install.sh {type_text} "{name}" "{description}" "{executable}" '
        f'"{deploy_path}" {int(start_order):02d} {int(stop_order):02d} '
        f'"{depends_text}" "{format_exec_delay(exec_delay)}"'
    )
    return os.path.join(script_dir, arguments)


def build_uninstall_command(script_dir, daemon_type, name):
    """Return the shell command that runs the uninstall script."""
    if daemon_type is DaemonType.NONE:
        raise InstallError("no daemon installation type to uninstall")
    type_text = "systemV" if daemon_type is DaemonType.SYSTEMV else "systemd"
    return os.path.join(script_dir, f"uninstall.sh {type_text} {name}")


def child_exec_succeeded(status, context):
    """Return whether a child's wait ``status`` means a clean zero exit.

    ``status`` is the value returned by ``os.system``; -1 means the child
    could not be started. Failures are logged with ``context``.
    """
    if status == -1:
        _log.error("Starting %s failed.", context)
        return False
    if os.WIFEXITED(status):
        code = os.WEXITSTATUS(status)
        if code != 0:
            _log.error("%s failed, exit code: %d", context, code)
            return False
        return True
    if os.WIFSIGNALED(status):
        _log.error(
            "%s did not exit normally (uncaught signal), signal: %d",
            context,
            os.WTERMSIG(status),
        )
        return False
    _log.error("%s failed with unknown status: %d", context, status)
    return False


def run_script(command, context):
    """Run ``command`` through the shell; raise InstallError if it fails."""
    status = os.system(command)
    if not child_exec_succeeded(status, context):
        raise InstallError(f"{context} failed")
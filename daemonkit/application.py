"""Application entry point that runs as a console program or a Unix daemon."""

from __future__ import annotations

import abc
import argparse
import configparser
import enum
import errno
import fcntl
import logging
import os
import signal
import sys
import time
from pathlib import Path

from daemonkit.progress import NullReporter, Status, SystemdReporter
from daemonkit.service import (
    DaemonType,
    InstallError,
    ServiceInfo,
    build_install_command,
    build_uninstall_command,
    read_service_info,
    remove_file,
    run_script,
    validate_service_name,
    write_service_info,
)
from daemonkit.signals import (
    DispatchResult,
    DispatchType,
    SignalDescriptor,
    SignalDispatcher,
)

_EXIT_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT, signal.SIGHUP)
_IGNORED_SIGNALS = (signal.SIGTTIN, signal.SIGTTOU)
_STATUS_WAIT_HINT = 30000
_DEFAULT_START_ORDER = 80
_DEFAULT_STOP_ORDER = 20


class SysVInitResult(enum.IntEnum):
    """Results of starting a SysV style daemon."""

    DAEMON_INI_SUCCESSFUL = 0
    SUCCESSFUL = 0
    FIRST_CHILD_SUCCESSFUL = 1
    ALREADY_EXEC = 2
    OPEN_PID_FILE_FAILED = 3
    OPEN_IPC_FAILED = 4
    FIRST_FORK_FAILED = 5
    PARENT_READ_PIPE_FAILED = 6
    SETSID_FAILED = 7
    SECOND_FORK_FAILED = 8
    DAEMON_OPEN_NULL_FILE_FAILED = 9
    DAEMON_REDIRECT_FAILED = 10
    DAEMON_INIT_FAILED = 11
    DAEMON_WRITE_PID_FILE_FAILED = 12
    DAEMON_STARTUP_FAILED = 13


class _PidFile:
    """An exclusively locked PID file."""

    def __init__(self, path):
        self.path = Path(path)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT | os.O_CLOEXEC, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise FileExistsError(errno.EEXIST, "PID file is locked", str(self.path)) from exc
        except OSError:
            os.close(fd)
            raise
        self._fd = fd

    def write(self):
        os.ftruncate(self._fd, 0)
        os.pwrite(self._fd, f"{os.getpid()}\n".encode("ascii"), 0)

    def close(self):
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None

    def remove(self):
        try:
            self.path.unlink(missing_ok=True)
        finally:
            self.close()


class _NotifyPipe:
    """Write end of the pipe telling the launching process how startup went."""

    def __init__(self, fd):
        self._fd = fd

    def notify(self, result):
        if self._fd is not None:
            try:
                os.write(self._fd, bytes([int(result)]))
            except OSError:
                pass

    def close(self):
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None


def _unsigned(text):
    value = int(text)
    if value < 0:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {text}")
    return value


class Application(abc.ABC):
    """Base class of an application that may be installed as a Unix daemon.

    Subclasses implement :meth:`startup` and :meth:`exit`, and may override
    :meth:`add_arguments` and :meth:`init_signal_dispatch`. Only one
    instance may exist at a time; :meth:`close` releases it.
    """

    SERVICE_NAME = "daemon"
    SERVICE_DESCRIPTION = "daemon"
    LOG_NAME = "daemonkit.application"
    CONFIG_DIR_NAME = "Configuration"
    SERVICE_INFO_FILE = "svcname.txt"
    LOG_CONFIG_FILE = "logging.ini"
    PID_DIR = "/var/run"

    _instance = None

    def __init__(self, deploy_path=None):
        if Application._instance is not None:
            raise RuntimeError("an application instance already exists")
        program = Path(sys.argv[0] if sys.argv and sys.argv[0] else "app").resolve()
        self.deploy_path = Path(deploy_path if deploy_path is not None else program.parent).resolve()
        self.executable = str(program)
        self.pid_dir = Path(self.PID_DIR)
        self.logger = logging.getLogger(self.LOG_NAME)
        self._options = None
        self._service_name = ""
        self._daemon_type = DaemonType.NONE
        self._reporter = None
        self._pid_file = None
        self._dispatcher = SignalDispatcher()
        self._saved_mask = None
        self._saved_handlers = {}
        self._parser = self._build_parser(program.name)
        Application._instance = self

    @classmethod
    def instance(cls):
        """Return the running application instance."""
        if Application._instance is None:
            raise RuntimeError("no application instance exists")
        return Application._instance

    @classmethod
    def exit_application(cls):
        """Request the application to exit without waiting for it."""
        os.kill(os.getpid(), signal.SIGTERM)

    def add_arguments(self, parser):
        """Add application specific options to ``parser``."""

    def init_signal_dispatch(self):
        """Register application specific signal handlers; raise OSError to fail."""

    @abc.abstractmethod
    def startup(self, reporter, options, logger):
        """Start the application's work; return a true value on success."""

    @abc.abstractmethod
    def exit(self, reporter, logger):
        """Stop the application's work."""

    def add_signal_dispatch_descriptors(self, *args):
        """Dispatch further signals; raises OSError on failure."""
        self._remember_signals(int(descriptor.signum) for descriptor in args)
        self._dispatcher.add_dispatched_signals(*args)

    @property
    def options(self):
        """The parsed command-line options, or None before parsing."""
        return self._options

    @property
    def service_name(self):
        """The installed service name."""
        return self._service_name

    @property
    def config_dir(self):
        return self.deploy_path / self.CONFIG_DIR_NAME

    @property
    def service_info_path(self):
        return self.config_dir / self.SERVICE_INFO_FILE

    def parse_args(self, argv=None):
        """Parse ``argv`` (without the program name) and keep the result."""
        self._options = self._parser.parse_args(argv)
        return self._options

    def run(self, argv=None):
        """Run the mode selected by ``argv`` and return the exit code."""
        options = self.parse_args(argv)
        modes = (
            ("help", self._help),
            ("install", self._install),
            ("uninstall", self._uninstall),
            ("svc_systemv", self._run_svc_systemv),
            ("svc_systemd", self._run_svc_systemd),
        )
        for dest, handler in modes:
            if getattr(options, dest) not in (None, False):
                return handler()
        return self._run_normal()

    def close(self):
        """Remove the PID file, restore signal state and release the instance."""
        if self._pid_file is not None:
            try:
                self._pid_file.remove()
            except OSError as exc:
                self.logger.error("Removing the PID file failed: %s", exc)
            self._pid_file = None
        if isinstance(self._reporter, SystemdReporter):
            self._reporter.close()
        for signum, handler in self._saved_handlers.items():
            if handler is not None:
                signal.signal(signum, handler)
        self._saved_handlers.clear()
        if self._saved_mask is not None:
            signal.pthread_sigmask(signal.SIG_SETMASK, self._saved_mask)
            self._saved_mask = None
        if Application._instance is self:
            Application._instance = None

    def _build_parser(self, prog):
        parser = argparse.ArgumentParser(prog=prog, add_help=False)
        parser.add_argument("-h", "--help", action="store_true", help="produce help message")
        parser.add_argument(
            "-i", "--install",
            help="install programme as unix daemon (alternative values: systemV, systemd)",
        )
        parser.add_argument("-n", "--name", help="optional, set daemon name when installing")
        parser.add_argument("--svc-desc", help="optional, set service description when installing")
        parser.add_argument(
            "--start-order", type=int,
            help="optional, set daemon script start order number (legacy systemV only)",
        )
        parser.add_argument(
            "--stop-order", type=int,
            help="optional, set daemon script stop order number (legacy systemV only)",
        )
        parser.add_argument(
            "--svc-depends", action="append",
            help="optional, set daemon dependencies when installing (systemd only)",
        )
        parser.add_argument(
            "--exec-delay", type=_unsigned,
            help="optional, set daemon execute delay time at startup (in seconds)",
        )
        parser.add_argument("-u", "--uninstall", action="store_true", help="uninstall installed unix daemon")
        parser.add_argument(
            "--svc-systemV", dest="svc_systemv", action="store_true",
            help="run programme as unix daemon (used by daemon script, don't use directly)",
        )
        parser.add_argument(
            "--svc-systemd", dest="svc_systemd", action="store_true",
            help="run programme as unix daemon (used by systemd, don't use directly)",
        )
        parser.add_argument(
            "--svc-exec-delay", type=_unsigned,
            help="daemon execute delay time (in seconds, used by service manager, don't use directly)",
        )
        self.add_arguments(parser)
        return parser

    def _help(self):
        print(self._parser.format_help())
        return 0

    def _remember_signals(self, signums):
        if self._saved_mask is None:
            self._saved_mask = signal.pthread_sigmask(signal.SIG_BLOCK, ())
        for signum in signums:
            self._saved_handlers.setdefault(signum, signal.getsignal(signum))

    def _configure_logging(self):
        """Apply the ``[logging]`` section (level, format, filename) if the file exists."""
        path = self.config_dir / self.LOG_CONFIG_FILE
        if not path.is_file():
            return
        config = configparser.ConfigParser(interpolation=None)
        with path.open(encoding="utf-8") as stream:
            config.read_file(stream)
        if not config.has_section("logging"):
            return
        section = config["logging"]
        level_name = section.get("level", "INFO").strip().upper()
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            raise ValueError(f"unknown logging level: {level_name!r}")
        settings = {"level": level, "force": True}
        fmt = section.get("format")
        if fmt:
            settings["format"] = fmt
        filename = section.get("filename")
        if filename:
            settings["filename"] = filename
        logging.basicConfig(**settings)

    def _initialize(self):
        try:
            os.chdir(self.deploy_path)
        except OSError as exc:
            self.logger.error("Changing to the deploy directory failed: %s", exc)
            return False
        try:
            self._configure_logging()
        except (OSError, ValueError, KeyError, RuntimeError, configparser.Error) as exc:
            self.logger.error("Loading the logging configuration failed: %s", exc)
            return False
        try:
            self._remember_signals(_IGNORED_SIGNALS + _EXIT_SIGNALS)
            self._dispatcher.add_ignored_signals(_IGNORED_SIGNALS)
            self._dispatcher.add_dispatched_signals(
                *(SignalDescriptor(sig, self._on_exit_signal, DispatchType.DIRECT) for sig in _EXIT_SIGNALS)
            )
            self.init_signal_dispatch()
        except OSError as exc:
            self.logger.error("Setting up signal dispatch failed: %s", exc)
            return False
        return True

    def _initialize_daemon_name(self):
        info = read_service_info(self.service_info_path, self.SERVICE_NAME)
        self._service_name = info.name
        self._daemon_type = info.daemon_type

    def _on_exit_signal(self):
        self._reporter.report_new_status(Status.STOP_PENDING, _STATUS_WAIT_HINT)
        self.exit(self._reporter, self.logger)

    def _startup(self):
        return bool(self.startup(self._reporter, self._options, self.logger))

    def _dispatch_until_exit(self):
        while self._dispatcher.dispatch_signals()[0] is not DispatchResult.EXIT_SUCCESSFUL:
            pass

    def _delay_exec(self, reporter):
        delay = self._options.svc_exec_delay or 0
        if delay:
            reporter.inc_progress(0, delay * 1000)
            time.sleep(delay)

    def _run_normal(self):
        if not self._initialize():
            return 1
        self._reporter = NullReporter()
        if self._startup():
            self._dispatch_until_exit()
            return 0
        self.exit(self._reporter, self.logger)
        return 1

    def _run_svc_systemd(self):
        self._initialize_daemon_name()
        reporter = SystemdReporter()
        self._reporter = reporter
        if not reporter:
            return 1
        reporter.report_new_status(Status.START_PENDING, _STATUS_WAIT_HINT)
        if not self._initialize():
            reporter.report_new_status(Status.STOP_PENDING, _STATUS_WAIT_HINT, 1)
            return 1
        self._delay_exec(reporter)
        if self._startup():
            reporter.report_new_status(Status.RUNNING, 0)
            self._dispatch_until_exit()
            return 0
        reporter.report_new_status(Status.STOP_PENDING, _STATUS_WAIT_HINT, 1)
        self.exit(reporter, self.logger)
        return 1

    def _run_svc_systemv(self):
        self._initialize_daemon_name()
        pid_path = Path(self.pid_dir) / f"{self._service_name}.pid"
        try:
            self._pid_file = _PidFile(pid_path)
        except FileExistsError:
            return int(SysVInitResult.ALREADY_EXEC)
        except OSError:
            return int(SysVInitResult.OPEN_PID_FILE_FAILED)
        try:
            read_fd, write_fd = os.pipe()
        except OSError:
            return int(SysVInitResult.OPEN_IPC_FAILED)
        try:
            pid = os.fork()
        except OSError:
            os.close(read_fd)
            os.close(write_fd)
            return int(SysVInitResult.FIRST_FORK_FAILED)
        if pid:
            return self._wait_for_daemon(pid, read_fd, write_fd)
        os.close(read_fd)
        pipe = _NotifyPipe(write_fd)
        try:
            result = self._detach(pipe)
            if result != SysVInitResult.DAEMON_INI_SUCCESSFUL:
                return int(result)
            return self._run_daemon(pipe)
        finally:
            pipe.close()

    def _wait_for_daemon(self, pid, read_fd, write_fd):
        os.close(write_fd)
        self._pid_file.close()
        self._pid_file = None
        os.waitpid(pid, 0)
        try:
            data = os.read(read_fd, 1)
        except OSError:
            data = b""
        finally:
            os.close(read_fd)
        return int(SysVInitResult.PARENT_READ_PIPE_FAILED) if not data else data[0]

    def _detach(self, pipe):
        try:
            os.setsid()
        except OSError:
            pipe.notify(SysVInitResult.SETSID_FAILED)
            pipe.close()
            os._exit(SysVInitResult.SETSID_FAILED)
        try:
            pid = os.fork()
        except OSError:
            pipe.notify(SysVInitResult.SECOND_FORK_FAILED)
            pipe.close()
            os._exit(SysVInitResult.SECOND_FORK_FAILED)
        if pid:
            pipe.close()
            self._pid_file.close()
            os._exit(SysVInitResult.FIRST_CHILD_SUCCESSFUL)
        try:
            null_fd = os.open(os.devnull, os.O_RDWR)
        except OSError:
            pipe.notify(SysVInitResult.DAEMON_OPEN_NULL_FILE_FAILED)
            return SysVInitResult.DAEMON_OPEN_NULL_FILE_FAILED
        try:
            for fd in (0, 1, 2):
                os.dup2(null_fd, fd)
        except OSError:
            pipe.notify(SysVInitResult.DAEMON_REDIRECT_FAILED)
            return SysVInitResult.DAEMON_REDIRECT_FAILED
        finally:
            os.close(null_fd)
        os.umask(0)
        return SysVInitResult.DAEMON_INI_SUCCESSFUL

    def _run_daemon(self, pipe):
        if not self._initialize():
            pipe.notify(SysVInitResult.DAEMON_INIT_FAILED)
            return int(SysVInitResult.DAEMON_INIT_FAILED)
        try:
            self._pid_file.write()
        except OSError as exc:
            pipe.notify(SysVInitResult.DAEMON_WRITE_PID_FILE_FAILED)
            self.logger.error(
                "Writing the PID file failed, daemon %s: %s", self._service_name, exc
            )
            return int(SysVInitResult.DAEMON_WRITE_PID_FILE_FAILED)
        self._reporter = NullReporter()
        self._delay_exec(self._reporter)
        if self._startup():
            pipe.notify(SysVInitResult.SUCCESSFUL)
            pipe.close()
            self._dispatch_until_exit()
            return 0
        pipe.notify(SysVInitResult.DAEMON_STARTUP_FAILED)
        self.exit(self._reporter, self.logger)
        return int(SysVInitResult.DAEMON_STARTUP_FAILED)

    def _install(self):
        self._initialize_daemon_name()
        if not self._initialize():
            return 1
        try:
            self._install_impl()
        except InstallError as exc:
            self.logger.error("Installing the daemon failed: %s", exc)
            return 1
        except OSError as exc:
            self.logger.error("Saving the service name failed: %s", exc)
            return 1
        self.logger.info("Service installation completed.")
        return 0

    def _install_impl(self):
        options = self._options
        if self._daemon_type is not DaemonType.NONE:
            self._uninstall_impl(self._service_name, self._daemon_type)
        name = validate_service_name(options.name or self.SERVICE_NAME)
        description = options.svc_desc or self.SERVICE_DESCRIPTION
        install_type = options.install
        if install_type not in (DaemonType.SYSTEMV.value, DaemonType.SYSTEMD.value):
            raise InstallError(f"invalid daemon installation type: {install_type!r}")
        start_order, stop_order = _DEFAULT_START_ORDER, _DEFAULT_STOP_ORDER
        if install_type == DaemonType.SYSTEMV.value:
            if options.start_order is not None:
                start_order = options.start_order
            if options.stop_order is not None:
                stop_order = options.stop_order
        command = build_install_command(
            str(self.config_dir),
            install_type,
            name,
            description,
            self.executable,
            str(self.deploy_path),
            start_order,
            stop_order,
            options.svc_depends or (),
            options.exec_delay,
        )
        run_script(command, "install script")
        write_service_info(self.service_info_path, ServiceInfo(name, DaemonType(install_type)))

    def _uninstall(self):
        self._initialize_daemon_name()
        if not self._initialize():
            return 1
        if not self._service_name or self._daemon_type is DaemonType.NONE:
            self.logger.error("Reading the installed service information failed.")
            return 1
        try:
            self._uninstall_impl(self._service_name, self._daemon_type)
        except InstallError as exc:
            self.logger.error("Uninstalling the daemon failed: %s", exc)
            return 1
        return 0

    def _uninstall_impl(self, name, daemon_type):
        command = build_uninstall_command(str(self.config_dir), daemon_type, name)
        run_script(command, "uninstall script")
        try:
            remove_file(self.service_info_path)
        except OSError as exc:
            self.logger.error("Removing the service record failed: %s", exc)
        self.logger.info("Service removal completed.")
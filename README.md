# daemonkit

`daemonkit` gives a long-running Python program on a POSIX system a single
entry point that can work in three ways:

* as an ordinary console program that runs until it gets an exit signal;
* as a classic SysV daemon (double fork, locked PID file, detached from the
  terminal);
* as a systemd service that reports its progress through the notification
  socket named by `NOTIFY_SOCKET`.

The same entry point installs and uninstalls the program as a daemon by
running the `install.sh` and `uninstall.sh` scripts found in the
`Configuration` directory of the deploy path. The installed name and type are
recorded in `Configuration/svcname.txt`.

## Modules

* `daemonkit.application`: the `Application` base class and the
  `SysVInitResult` codes returned when starting as a SysV daemon.
* `daemonkit.progress`: `Status`, the `ProgressReporter` interface,
  `NullReporter`, and `SystemdReporter`, which sends `READY=1`,
  `STOPPING=1` and `EXTEND_TIMEOUT_USEC=...` messages to systemd.
* `daemonkit.signals`: `SignalDispatcher`, `SignalDescriptor`,
  `DispatchType`, `DispatchResult` and `discard_child_process_exit_info()`.
* `daemonkit.service`: helpers for installation records and scripts:
  `DaemonType`, `ServiceInfo`, `read_service_info`, `write_service_info`,
  `validate_service_name`, `format_exec_delay`, `build_install_command`,
  `build_uninstall_command`, `child_exec_succeeded`, `run_script`,
  `read_text_file`, `write_text_file`, `remove_file` and `InstallError`.

## Writing an application

Subclass `Application` and give it `startup` and `exit`. To add options of
your own, override `add_arguments`, which receives the `argparse` parser.
The class attributes `SERVICE_NAME` and `SERVICE_DESCRIPTION` supply the
defaults used when installing.

```python
import sys

from daemonkit.application import Application


class Worker(Application):
    SERVICE_NAME = "worker"
    SERVICE_DESCRIPTION = "queue worker"

    def add_arguments(self, parser):
        parser.add_argument("--queue", default="jobs")

    def startup(self, reporter, options, logger):
        logger.info("serving queue %s", options.queue)
        return True          # a false value makes the run fail and calls exit()

    def exit(self, reporter, logger):
        logger.info("shutting down")


def main(argv=None):
    app = Worker("/opt/worker/")
    try:
        return app.run(argv)
    finally:
        app.close()


if __name__ == "__main__":
    sys.exit(main())
```

Only one `Application` may exist at a time; `Application.instance()` returns
it and `close()` releases it. `close()` also removes the PID file, closes the
systemd socket and restores the signal handlers and signal mask it changed.

`run(argv)` parses the arguments and does the first of these that applies:

| argument                        | action                                                        |
|---------------------------------|---------------------------------------------------------------|
| `-h`, `--help`                  | print the option summary                                      |
| `-i`, `--install systemV\|systemd` | install as a daemon, first removing an installed one       |
| `-u`, `--uninstall`             | remove the installed daemon                                   |
| `--svc-systemV`                 | run as a SysV daemon (used by the init script)                |
| `--svc-systemd`                 | run under systemd (used by the unit file)                     |
| none of these                   | run in the console until SIGTERM, SIGINT, SIGQUIT or SIGHUP   |

Installation also takes `-n/--name`, `--svc-desc`, `--start-order` and
`--stop-order` (used for systemV only; defaults 80 and 20), `--svc-depends`
(may be repeated) and `--exec-delay` (1 to 9998 seconds; other non-zero
values are dropped with an error logged). Service names may be at most 31
characters long and must not contain spaces, `/` or `\`. When running as a
daemon, `--svc-exec-delay` makes startup wait that many seconds.

`run` returns 0 on success and 1 on failure; in SysV mode the launching
process returns the `SysVInitResult` value sent back by the daemon, and the
PID file is `/var/run/<service name>.pid`.

`Application.exit_application()` asks the running instance to stop by sending
SIGTERM to its own process.

## Logging

If `Configuration/logging.ini` exists in the deploy path and has a
`[logging]` section, its `level`, `format` and `filename` keys are passed to
`logging.basicConfig`. An unknown level makes initialisation fail.

## Signals

The application waits for its exit signals through a `SignalDispatcher`, which
blocks the registered signals and takes them with `sigwait`. SIGTTIN and
SIGTTOU are ignored. To handle further signals, override
`init_signal_dispatch` and register `SignalDescriptor` objects with
`add_signal_dispatch_descriptors`. A descriptor runs its handler either
directly in the dispatching thread (`DispatchType.DIRECT`) or on a thread pool
(`DispatchType.THREAD_POOL`). Failures raise `OSError`.

## What it does not do

* It ships no `install.sh` or `uninstall.sh`; you provide those scripts in
  the `Configuration` directory, and the package only builds and runs their
  command lines.
* It installs no command of its own; your program calls `Application.run`.
* It supports POSIX systems only; there is no Windows service support.

## Tests

The test suite uses pytest. Install it with the `test` extra.
import os
import signal

import pytest

from daemonkit.service import (
    DaemonType,
    InstallError,
    ServiceInfo,
    build_install_command,
    build_uninstall_command,
    child_exec_succeeded,
    format_exec_delay,
    read_service_info,
    read_text_file,
    remove_file,
    run_script,
    validate_service_name,
    write_service_info,
    write_text_file,
)


def test_write_then_read_text_file(tmp_path):
    path = tmp_path / "svcname.txt"
    write_text_file("alpha\nsystemd", str(path))
    assert read_text_file(str(path)) == "alpha\nsystemd"


def test_write_text_file_truncates(tmp_path):
    path = tmp_path / "file.txt"
    write_text_file("a long first content", str(path))
    write_text_file("short", str(path))
    assert read_text_file(str(path)) == "short"


def test_read_missing_file_is_empty(tmp_path):
    assert read_text_file(str(tmp_path / "missing.txt")) == ""


def test_write_into_missing_directory_raises(tmp_path):
    with pytest.raises(OSError):
        write_text_file("x", str(tmp_path / "nodir" / "file.txt"))


def test_remove_file_removes(tmp_path):
    path = tmp_path / "file.txt"
    path.write_text("x")
    remove_file(str(path))
    assert not path.exists()


def test_remove_missing_file_is_quiet(tmp_path):
    path = tmp_path / "missing.txt"
    remove_file(str(path))
    assert not path.exists()


def test_remove_directory_raises(tmp_path):
    target = tmp_path / "adir"
    target.mkdir()
    with pytest.raises(OSError):
        remove_file(str(target))
    assert target.is_dir()


@pytest.mark.parametrize("daemon_type", [DaemonType.SYSTEMV, DaemonType.SYSTEMD])
def test_service_info_round_trip(tmp_path, daemon_type):
    path = str(tmp_path / "svcname.txt")
    info = ServiceInfo("mysvc", daemon_type)
    write_service_info(path, info)
    assert read_service_info(path, "fallback") == info


def test_service_info_file_format(tmp_path):
    path = tmp_path / "svcname.txt"
    write_service_info(str(path), ServiceInfo("mysvc", DaemonType.SYSTEMV))
    assert path.read_text() == "mysvc\nsystemV"


def test_read_service_info_missing_uses_default(tmp_path):
    info = read_service_info(str(tmp_path / "missing.txt"), "fallback")
    assert info == ServiceInfo("fallback", DaemonType.NONE)


def test_read_service_info_unknown_type(tmp_path):
    path = tmp_path / "svcname.txt"
    path.write_text("mysvc upstart")
    info = read_service_info(str(path), "fallback")
    assert info.name == "mysvc"
    assert info.daemon_type is DaemonType.NONE


def test_read_service_info_name_only(tmp_path):
    path = tmp_path / "svcname.txt"
    path.write_text("  mysvc  \n")
    assert read_service_info(str(path), "fallback") == ServiceInfo("mysvc", DaemonType.NONE)


def test_validate_service_name_accepts_valid():
    assert validate_service_name("my-service_1") == "my-service_1"


def test_validate_service_name_accepts_maximum_length():
    name = "s" * 31
    assert validate_service_name(name) == name


@pytest.mark.parametrize("name", ["has space", "has/slash", "has\\backslash", "s" * 32])
def test_validate_service_name_rejects(name):
    with pytest.raises(InstallError):
        validate_service_name(name)


@pytest.mark.parametrize("delay", [None, 0, 9999, 10000, -5])
def test_format_exec_delay_dropped(delay):
    assert format_exec_delay(delay) == ""


@pytest.mark.parametrize("delay", [1, 30, 9998])
def test_format_exec_delay_in_range(delay):
    assert format_exec_delay(delay) == f" --svc-exec-delay={delay}"


def test_build_install_command_full():
    command = build_install_command(
        "/opt/app/Configuration",
        "systemV",
        "mysvc",
        "My service",
        "/opt/app/bin/app",
        "/opt/app",
        80,
        20,
        ["network.target", "syslog"],
        5,
    )
    assert command == (
        '/opt/app/Configuration/install.sh systemV "mysvc" "My service" '
        '"/opt/app/bin/app" "/opt/app" 80 20 " network.target syslog" '
        '" --svc-exec-delay=5"'
    )


def test_build_install_command_accepts_enum_and_pads_orders():
    command = build_install_command(
        "/cfg", DaemonType.SYSTEMD, "svc", "desc", "/bin/app", "/app", 5, 7, (), None
    )
    assert command.startswith(os.path.join("/cfg", "install.sh systemd "))
    assert " 05 07 " in command
    assert command.endswith('"" ""')


def test_build_install_command_rejects_bad_type():
    with pytest.raises(InstallError):
        build_install_command("/cfg", "upstart", "svc", "d", "/bin/app", "/app")


def test_build_uninstall_command():
    assert build_uninstall_command("/cfg", DaemonType.SYSTEMV, "mysvc") == os.path.join(
        "/cfg", "uninstall.sh systemV mysvc"
    )
    assert build_uninstall_command("/cfg", DaemonType.SYSTEMD, "mysvc") == os.path.join(
        "/cfg", "uninstall.sh systemd mysvc"
    )


def test_build_uninstall_command_rejects_none():
    with pytest.raises(InstallError):
        build_uninstall_command("/cfg", DaemonType.NONE, "mysvc")


def test_child_exec_succeeded_start_failure():
    assert child_exec_succeeded(-1, "install script") is False


def test_child_exec_succeeded_zero_exit():
    assert child_exec_succeeded(0, "install script") is True


def test_child_exec_succeeded_signalled():
    assert child_exec_succeeded(int(signal.SIGKILL), "install script") is False


def test_child_exec_succeeded_real_statuses():
    assert child_exec_succeeded(os.system("exit 0"), "ok") is True
    assert child_exec_succeeded(os.system("exit 3"), "fail") is False


def test_run_script_success(tmp_path):
    marker = tmp_path / "marker"
    run_script(f'touch "{marker}"', "touch script")
    assert marker.exists()


def test_run_script_failure_raises():
    with pytest.raises(InstallError):
        run_script("exit 3", "failing script")
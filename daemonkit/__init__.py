"""Entry framework for console programs, SysV daemons and systemd services."""

__version__ = "0.1.0"
__all__ = ["application", "progress", "service", "signals"]
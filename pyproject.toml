[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "daemonkit"
version = "0.1.0"
description = "Application entry framework for programs that run in a console, as a SysV daemon or as a systemd service"
requires-python = ">=3.10"
dependencies = []
keywords = ["daemon", "service", "systemd", "sysv", "signals", "init"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Application Frameworks",
    "Topic :: System :: Boot :: Init",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["daemonkit"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

"""
Host precondition checks.

validate_environment() only observes the host; every probe goes through a
HostProbe so tests can describe any host without touching the real one.
"""

from __future__ import annotations

import errno
import logging
import platform
import shutil
import socket
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from .compose import ComposeRunner
from .console import error, info, success, warn
from .errors import ConfigError

logger = logging.getLogger(__name__)

GB = 1024 ** 3


class Severity(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


@dataclass
class CheckOutcome:
    name: str
    severity: Severity
    reason: str


@dataclass
class ValidationReport:
    outcomes: list[CheckOutcome] = field(default_factory=list)

    def add(self, name: str, severity: Severity, reason: str) -> CheckOutcome:
        outcome = CheckOutcome(name, severity, reason)
        self.outcomes.append(outcome)
        return outcome

    @property
    def failures(self) -> list[CheckOutcome]:
        return [o for o in self.outcomes if o.severity == Severity.FAIL]

    @property
    def warnings(self) -> list[CheckOutcome]:
        return [o for o in self.outcomes if o.severity == Severity.WARN]

    @property
    def passed(self) -> bool:
        return not self.failures


class HostProbe:
    """Reads host facts. Subclass or mock in tests."""

    def __init__(self, runner: Optional[ComposeRunner] = None) -> None:
        self.runner = runner

    def machine(self) -> str:
        return platform.machine()

    def free_disk_bytes(self, path: Path) -> int:
        return shutil.disk_usage(path).free

    def total_memory_bytes(self) -> Optional[int]:
        try:
            with open("/proc/meminfo", "r") as f:
                for line in f:
                    if line.startswith("MemTotal:"):
                        return int(line.split()[1]) * 1024
        except OSError:
            logger.debug("Could not read /proc/meminfo")
        return None

    def port_in_use(self, port: int, protocol: str) -> bool:
        """True only when binding fails because the address is taken."""
        sock_type = socket.SOCK_DGRAM if protocol == "udp" else socket.SOCK_STREAM
        with socket.socket(socket.AF_INET, sock_type) as sock:
            try:
                sock.bind(("0.0.0.0", port))
            except OSError as e:
                if e.errno == errno.EADDRINUSE:
                    return True
                logger.debug(f"Port {port}/{protocol} probe inconclusive: {e}")
        return False

    def docker_available(self) -> bool:
        return self.runner is not None and self.runner.tool_available(["docker", "--version"])

    def compose_available(self) -> bool:
        return self.runner is not None and self.runner.tool_available(["docker", "compose", "version"])

    def daemon_arch(self) -> str:
        return self.runner.server_arch() if self.runner is not None else ""


def parse_port(entry: str | int) -> tuple[int, str]:
    """'1812/udp' -> (1812, 'udp'); bare numbers are tcp."""
    text = str(entry).strip()
    port, _, protocol = text.partition("/")
    protocol = (protocol or "tcp").lower()
    if protocol not in ("tcp", "udp"):
        raise ConfigError(f"validate.ports: unsupported protocol in entry '{entry}'")
    try:
        number = int(port)
    except ValueError:
        raise ConfigError(f"validate.ports: invalid port number in entry '{entry}'") from None
    if not 0 < number < 65536:
        raise ConfigError(f"validate.ports: port out of range in entry '{entry}'")
    return number, protocol


def _arch_matches(detected: str, expected: list[str]) -> bool:
    return detected.lower() in {a.lower() for a in expected}


def validate_environment(settings: dict, project_dir: Path, probe: HostProbe) -> ValidationReport:
    """Run every host check and return the report. Never mutates anything."""
    report = ValidationReport()
    expected_arch = list(settings.get("architectures", ["aarch64", "arm64"]))

    # Architecture
    machine = probe.machine()
    if _arch_matches(machine, expected_arch):
        report.add("architecture", Severity.PASS, f"Architecture {machine}")
    else:
        report.add("architecture", Severity.FAIL,
                   f"Architecture {machine} is not supported (expected one of: {', '.join(expected_arch)})")

    # Disk
    min_gb = float(settings.get("min_disk_gb", 5))
    recommended_gb = float(settings.get("recommended_disk_gb", 10))
    free_gb = probe.free_disk_bytes(project_dir) / GB
    if free_gb < min_gb:
        report.add("disk", Severity.FAIL, f"{free_gb:.1f} GB free, at least {min_gb:g} GB required")
    elif free_gb < recommended_gb:
        report.add("disk", Severity.WARN, f"{free_gb:.1f} GB free, {recommended_gb:g} GB recommended")
    else:
        report.add("disk", Severity.PASS, f"{free_gb:.1f} GB free")

    # Memory
    min_mem_gb = float(settings.get("min_memory_gb", 4))
    total = probe.total_memory_bytes()
    if total is None:
        report.add("memory", Severity.WARN, "Could not determine total memory")
    elif total / GB < min_mem_gb:
        report.add("memory", Severity.WARN, f"{total / GB:.1f} GB RAM, {min_mem_gb:g} GB recommended")
    else:
        report.add("memory", Severity.PASS, f"{total / GB:.1f} GB RAM")

    # Ports
    busy = []
    for entry in settings.get("ports", []):
        port, protocol = parse_port(entry)
        if probe.port_in_use(port, protocol):
            busy.append(f"{port}/{protocol}")
    if busy:
        report.add("ports", Severity.WARN, f"Ports already in use: {', '.join(busy)}")
    else:
        report.add("ports", Severity.PASS, "All required ports available")

    # Container tooling
    if probe.docker_available():
        report.add("docker", Severity.PASS, "Docker Engine available")
    else:
        report.add("docker", Severity.FAIL, "Docker Engine not found (https://docs.docker.com/engine/install/)")
    if probe.compose_available():
        report.add("compose", Severity.PASS, "Docker Compose v2 available")
    else:
        report.add("compose", Severity.FAIL,
                   "Docker Compose v2 not found (https://docs.docker.com/compose/install/)")

    # Daemon architecture
    daemon_arch = probe.daemon_arch()
    if daemon_arch and not _arch_matches(daemon_arch, expected_arch):
        report.add("daemon-architecture", Severity.WARN,
                   f"Docker daemon reports architecture {daemon_arch}")

    return report


def print_report(report: ValidationReport) -> None:
    info("Environment checks:")
    for outcome in report.outcomes:
        if outcome.severity == Severity.PASS:
            success(f"  {outcome.name}: {outcome.reason}")
        elif outcome.severity == Severity.WARN:
            warn(f"  {outcome.name}: {outcome.reason}")
        else:
            error(f"  {outcome.name}: {outcome.reason}")

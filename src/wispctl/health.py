"""On-demand stack health snapshot."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .compose import ComposeRunner
from .console import error, info, success, warn
from .models import ServiceSpec

logger = logging.getLogger(__name__)


@dataclass
class ServiceHealth:
    service: str
    running: bool
    state: str = "missing"
    container: str = ""
    cpu_percent: Optional[float] = None
    memory_percent: Optional[float] = None


@dataclass
class HealthSnapshot:
    services: list[ServiceHealth] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return all(s.running for s in self.services)

    @property
    def stopped(self) -> list[str]:
        return [s.service for s in self.services if not s.running]


class HealthReporter:
    """Reads container state and resource usage; has no side effects."""

    def __init__(self, runner: ComposeRunner, specs: list[ServiceSpec],
                 cpu_threshold: float = 80, memory_threshold: float = 80) -> None:
        self.runner = runner
        self.services = [spec.compose_service for spec in specs if spec.runs]
        self.cpu_threshold = float(cpu_threshold)
        self.memory_threshold = float(memory_threshold)

    def snapshot(self) -> HealthSnapshot:
        containers = {}
        for entry in self.runner.ps():
            service = entry.get("Service")
            if service:
                containers[service] = entry
        usage = self.runner.stats()

        snapshot = HealthSnapshot()
        for service in self.services:
            entry = containers.get(service)
            if entry is None:
                snapshot.services.append(ServiceHealth(service=service, running=False))
                continue

            state = str(entry.get("State", "unknown")).lower()
            name = entry.get("Name", "")
            health = ServiceHealth(service=service, running=state == "running", state=state, container=name)
            if name in usage:
                health.cpu_percent, health.memory_percent = usage[name]
                if health.cpu_percent > self.cpu_threshold:
                    snapshot.warnings.append(
                        f"{service} CPU usage {health.cpu_percent:.1f}% exceeds {self.cpu_threshold:g}%"
                    )
                if health.memory_percent > self.memory_threshold:
                    snapshot.warnings.append(
                        f"{service} memory usage {health.memory_percent:.1f}% exceeds {self.memory_threshold:g}%"
                    )
            snapshot.services.append(health)
        return snapshot


def print_snapshot(snapshot: HealthSnapshot) -> None:
    info(f"{'SERVICE':<14} {'STATE':<12} {'CPU%':>7} {'MEM%':>7}")
    for s in snapshot.services:
        cpu = f"{s.cpu_percent:.1f}" if s.cpu_percent is not None else "-"
        mem = f"{s.memory_percent:.1f}" if s.memory_percent is not None else "-"
        info(f"{s.service:<14} {s.state:<12} {cpu:>7} {mem:>7}")
    for message in snapshot.warnings:
        warn(message)
    if snapshot.healthy:
        success(f"All {len(snapshot.services)} services running")
    else:
        error(f"Not running: {', '.join(snapshot.stopped)}")

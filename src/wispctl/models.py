"""Data model shared by the deployment stages."""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional


class ReadinessKind(str, Enum):
    NONE = "none"
    DATA_STORE = "data-store"
    HTTP_ENDPOINT = "http-endpoint"
    CONTAINER_HEALTH = "container-health"


@dataclass(frozen=True)
class ReadinessSignal:
    """How to tell that a launched service is ready to serve."""

    kind: ReadinessKind = ReadinessKind.NONE
    command: tuple[str, ...] = ()
    url: str = ""
    verify_tls: bool = True
    interval: float = 2.0
    timeout: float = 60.0


@dataclass(frozen=True)
class ServiceSpec:
    """One deployable unit, created from static configuration."""

    name: str
    compose_service: str
    image: str = ""
    build: bool = False
    depends_on: tuple[str, ...] = ()
    readiness: tuple[ReadinessSignal, ...] = ()
    build_command: tuple[str, ...] = ()
    context: str = ""
    dockerfile: str = "Dockerfile"
    base_image_ref: str = ""
    base_image_arg: str = "BASE_IMAGE"
    runs: bool = True

    @property
    def base(self) -> Optional[str]:
        """Name of the service whose image this one builds on, if any."""
        return self.depends_on[0] if self.depends_on else None

    def dockerfile_path(self, project_dir: Path) -> Path:
        return Path(project_dir) / self.context / self.dockerfile


class BuildStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class BuildResult:
    service: str
    status: BuildStatus = BuildStatus.PENDING
    output: str = ""
    reused: bool = False
    duration: float = 0.0
    image: str = ""


@dataclass(frozen=True)
class BuildStage:
    index: int
    services: tuple[ServiceSpec, ...]

    @property
    def names(self) -> list[str]:
        return [spec.name for spec in self.services]


class RunState:
    """
    State of a single deployment attempt.

    Only the build pipeline and launch controller mutate it, through the
    methods below; the diagnostics handler reads it. All access goes through
    the lock because builds within a stage record results from worker threads.
    """

    def __init__(self, services: list[ServiceSpec] | None = None) -> None:
        self.run_id = uuid.uuid4().hex[:8]
        self.started_at = time.monotonic()
        self._lock = threading.Lock()
        self._stage = "init"
        self._builds: dict[str, BuildResult] = {}
        self._started: list[str] = []
        self._launch_attempted = False
        for spec in services or []:
            if spec.build:
                self._builds[spec.name] = BuildResult(service=spec.name, image=spec.image)

    @property
    def stage(self) -> str:
        with self._lock:
            return self._stage

    def set_stage(self, stage: str) -> None:
        with self._lock:
            self._stage = stage

    def record_build(self, result: BuildResult) -> None:
        with self._lock:
            self._builds[result.service] = result

    def build_result(self, name: str) -> Optional[BuildResult]:
        with self._lock:
            return self._builds.get(name)

    def build_results(self) -> list[BuildResult]:
        with self._lock:
            return [self._builds[name] for name in sorted(self._builds)]

    def mark_launch_attempted(self) -> None:
        with self._lock:
            self._launch_attempted = True

    @property
    def launch_attempted(self) -> bool:
        with self._lock:
            return self._launch_attempted

    def mark_started(self, services: list[str]) -> None:
        with self._lock:
            for name in services:
                if name not in self._started:
                    self._started.append(name)

    @property
    def started_services(self) -> list[str]:
        with self._lock:
            return list(self._started)

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def summary(self) -> str:
        """Get deployment summary for logging."""
        with self._lock:
            built = sum(1 for r in self._builds.values() if r.status == BuildStatus.SUCCESS)
            failed = sum(1 for r in self._builds.values() if r.status == BuildStatus.FAILED)
            started = len(self._started)
            stage = self._stage
        return (
            f"Run {self.run_id}: stage={stage}, {built} built, {failed} failed, "
            f"{started} started, {self.elapsed():.1f}s elapsed"
        )


class CheckStatus(str, Enum):
    WAITING = "waiting"
    READY = "ready"
    TIMED_OUT = "timed-out"


ProbeResult = tuple[bool, str]


@dataclass
class ReadinessCheck:
    """One polled condition. Terminates on success or timeout, never retried."""

    name: str
    target: str
    probe: Callable[[], ProbeResult]
    interval: float
    timeout: float
    status: CheckStatus = CheckStatus.WAITING
    elapsed: float = 0.0
    attempts: int = 0
    message: str = ""

    @property
    def done(self) -> bool:
        return self.status != CheckStatus.WAITING


@dataclass
class ReadinessReport:
    checks: list[ReadinessCheck] = field(default_factory=list)

    @property
    def ready(self) -> list[ReadinessCheck]:
        return [c for c in self.checks if c.status == CheckStatus.READY]

    @property
    def timed_out(self) -> list[ReadinessCheck]:
        return [c for c in self.checks if c.status == CheckStatus.TIMED_OUT]

    @property
    def all_ready(self) -> bool:
        return len(self.ready) == len(self.checks)


class ResourceKind(str, Enum):
    CONTAINER = "container"
    IMAGE = "image"
    DANGLING_IMAGE = "dangling-image"
    NETWORK = "network"
    VOLUME = "volume"

    @property
    def destructive(self) -> bool:
        return self is ResourceKind.VOLUME


# Removal order: containers must go before the images and networks they use.
REMOVAL_ORDER = (
    ResourceKind.CONTAINER,
    ResourceKind.IMAGE,
    ResourceKind.DANGLING_IMAGE,
    ResourceKind.NETWORK,
    ResourceKind.VOLUME,
)


@dataclass(frozen=True)
class CleanupResource:
    kind: ResourceKind
    identifier: str
    label: str = ""

    @property
    def display(self) -> str:
        return self.label or self.identifier


@dataclass
class CleanupPlan:
    resources: list[CleanupResource] = field(default_factory=list)
    include_volumes: bool = False
    confirmed: bool = False

    @property
    def destructive(self) -> bool:
        return any(r.kind.destructive for r in self.resources)

    def by_kind(self, kind: ResourceKind) -> list[CleanupResource]:
        return [r for r in self.resources if r.kind == kind]

    @property
    def empty(self) -> bool:
        return not self.resources


@dataclass
class CleanupReport:
    removed: dict[ResourceKind, int] = field(default_factory=dict)
    failed: dict[ResourceKind, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def record(self, kind: ResourceKind, ok: bool, message: str = "") -> None:
        bucket = self.removed if ok else self.failed
        bucket[kind] = bucket.get(kind, 0) + 1
        if not ok and message:
            self.errors.append(message)

    @property
    def total_removed(self) -> int:
        return sum(self.removed.values())

    @property
    def total_failed(self) -> int:
        return sum(self.failed.values())

    @property
    def ok(self) -> bool:
        return self.total_failed == 0

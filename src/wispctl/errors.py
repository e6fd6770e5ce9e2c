"""Exception types raised by the deployment pipeline.

Every error carries the name of the pipeline stage it came from so the CLI
and the diagnostics dump can tell the operator where the run stopped.
"""

from __future__ import annotations

from typing import Sequence


class WispctlError(Exception):
    """Base class for all wispctl failures."""

    stage = "wispctl"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class ConfigError(WispctlError):
    stage = "config"


class EnvironmentCheckError(WispctlError):
    """Host preconditions failed; raised before anything is mutated."""

    stage = "validate"

    def __init__(self, message: str, report=None) -> None:
        super().__init__(message)
        self.report = report


class DependencyCycleError(WispctlError):
    stage = "build"

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(
            "Build dependency cycle detected: " + " -> ".join(self.cycle)
        )


class BuildError(WispctlError):
    stage = "build"

    def __init__(self, service: str, message: str, output: str = "") -> None:
        super().__init__(message)
        self.service = service
        self.output = output


class StaleBaseImageError(BuildError):
    """A build context references a base image other than the one just built."""

    def __init__(self, service: str, found: str, expected: str, source: str) -> None:
        super().__init__(
            service,
            f"Service '{service}' references base image '{found}' in {source}, "
            f"but the base image built in this run is '{expected}'. "
            f"Use a build argument in FROM or update the reference to '{expected}'.",
        )
        self.found = found
        self.expected = expected
        self.source = source


class LaunchError(WispctlError):
    stage = "launch"

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class ReadinessError(WispctlError):
    """Raised only when readiness timeouts are configured as fatal."""

    stage = "readiness"

    def __init__(self, message: str, report=None) -> None:
        super().__init__(message)
        self.report = report


class CleanupError(WispctlError):
    stage = "cleanup"


class LockError(WispctlError):
    stage = "lock"

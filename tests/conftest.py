"""
Shared fixtures: a recording ComposeRunner, a manual clock and config builders.
"""

import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from wispctl.compose import CommandResult, ComposeRunner  # noqa: E402
from wispctl.environment import HostProbe  # noqa: E402
from wispctl.settings import DeploymentConfig, load_packaged_defaults, parse_service_specs  # noqa: E402

GB = 1024 ** 3


class FakeRunner(ComposeRunner):
    """
    Records every command instead of running it.

    handler(args) may return a CommandResult, an (returncode, stdout) tuple,
    or None for a successful empty result.
    """

    def __init__(self, project_dir, handler=None, project_name="openwisp"):
        super().__init__(
            project_dir=Path(project_dir),
            compose_file=Path(project_dir) / "docker-compose.yml",
            project_name=project_name,
        )
        self.handler = handler
        self.calls = []
        self._lock = threading.Lock()

    def run(self, args, timeout=None):
        with self._lock:
            self.calls.append(list(args))
        result = self.handler(list(args)) if self.handler else None
        if result is None:
            return CommandResult(list(args), 0, "", "")
        if isinstance(result, CommandResult):
            return result
        returncode, stdout = result
        return CommandResult(list(args), returncode, stdout, "")

    def calls_matching(self, *tokens):
        return [call for call in self.calls if all(token in call for token in tokens)]


class FakeClock:
    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds

    def advance(self, seconds):
        self.now += seconds


class FakeProbe(HostProbe):
    def __init__(self, machine="aarch64", free_gb=50, memory_gb=8, busy_ports=(),
                 docker=True, compose=True, daemon_arch="aarch64"):
        super().__init__(runner=None)
        self._machine = machine
        self._free = int(free_gb * GB)
        self._memory = None if memory_gb is None else int(memory_gb * GB)
        self._busy = set(busy_ports)
        self._docker = docker
        self._compose = compose
        self._daemon_arch = daemon_arch

    def machine(self):
        return self._machine

    def free_disk_bytes(self, path):
        return self._free

    def total_memory_bytes(self):
        return self._memory

    def port_in_use(self, port, protocol):
        return f"{port}/{protocol}" in self._busy

    def docker_available(self):
        return self._docker

    def compose_available(self):
        return self._compose

    def daemon_arch(self):
        return self._daemon_arch


def make_config(project_dir, services=None, **sections):
    """Packaged defaults with the services table and any sections replaced."""
    raw = load_packaged_defaults()
    if services is not None:
        raw["services"] = services
    for name, value in sections.items():
        raw[name] = {**raw.get(name, {}), **value}
    return DeploymentConfig(raw=raw, project_dir=Path(project_dir), services=parse_service_specs(raw))


BASE_SERVICES = {
    "base": {"image": "openwisp/openwisp-base:latest", "build": True, "runs": False},
    "dashboard": {"image": "openwisp/openwisp-dashboard:latest", "build": True, "depends_on": ["base"]},
    "api": {"image": "openwisp/openwisp-api:latest", "build": True, "depends_on": ["base"]},
}


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def runner(tmp_path):
    return FakeRunner(tmp_path)

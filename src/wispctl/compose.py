"""
Docker / docker compose command boundary.

Every container runtime interaction goes through ComposeRunner.run() so
tests can substitute a fake runner that records calls.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .models import ResourceKind

logger = logging.getLogger(__name__)

PROJECT_LABEL = "com.docker.compose.project"


@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, as an operator would see it."""
        return "\n".join(part for part in (self.stdout.rstrip(), self.stderr.rstrip()) if part)


def tail(text: str, lines: int) -> str:
    """Return the last N lines of text."""
    if lines <= 0:
        return ""
    return "\n".join(text.splitlines()[-lines:])


class ComposeRunner:
    """Issues docker and docker compose commands for one compose project."""

    def __init__(self, project_dir: Path, compose_file: Path, project_name: str,
                 env: Optional[dict] = None, platform: str = "") -> None:
        self.project_dir = Path(project_dir)
        self.compose_file = Path(compose_file)
        self.project_name = project_name
        self.env = dict(env or {})
        if platform:
            self.env.setdefault("DOCKER_DEFAULT_PLATFORM", platform)

    def run(self, args: list[str], timeout: Optional[float] = None) -> CommandResult:
        """Run a command, capturing output. Never raises for command failures."""
        logger.debug(f"Running: {' '.join(args)}")
        env = {**os.environ, **self.env}
        try:
            proc = subprocess.run(
                args,
                cwd=self.project_dir,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            return CommandResult(list(args), 127, "", str(e))
        except subprocess.TimeoutExpired:
            return CommandResult(list(args), 124, "", f"Timed out after {timeout}s: {' '.join(args)}")
        return CommandResult(list(args), proc.returncode, proc.stdout or "", proc.stderr or "")

    # ------------------------------------------------------------------
    # docker compose
    # ------------------------------------------------------------------

    def compose_args(self, *args: str) -> list[str]:
        return ["docker", "compose", "-f", str(self.compose_file), "-p", self.project_name, *args]

    def compose(self, *args: str, timeout: Optional[float] = None) -> CommandResult:
        return self.run(self.compose_args(*args), timeout=timeout)

    def up(self, services: Iterable[str] = ()) -> CommandResult:
        return self.compose("up", "-d", *services)

    def stop(self, services: Iterable[str] = ()) -> CommandResult:
        return self.compose("stop", *services)

    def exec(self, service: str, command: Iterable[str], timeout: Optional[float] = None) -> CommandResult:
        return self.compose("exec", "-T", service, *command, timeout=timeout)

    def logs(self, service: str, tail_lines: int) -> CommandResult:
        return self.compose("logs", "--no-color", "--tail", str(tail_lines), service)

    def ps(self) -> list[dict]:
        """
        List compose containers (including stopped ones).

        Compose emits either a JSON array or one JSON object per line
        depending on its version; both are accepted.
        """
        result = self.compose("ps", "-a", "--format", "json")
        if not result.ok:
            logger.debug(f"compose ps failed: {result.output}")
            return []
        text = result.stdout.strip()
        if not text:
            return []
        if text.startswith("["):
            return json.loads(text)
        return [json.loads(line) for line in text.splitlines() if line.strip()]

    def container_id(self, service: str) -> str:
        result = self.compose("ps", "-q", service)
        if not result.ok:
            return ""
        ids = result.stdout.split()
        return ids[0] if ids else ""

    # ------------------------------------------------------------------
    # docker
    # ------------------------------------------------------------------

    def image_exists(self, image: str) -> bool:
        return self.run(["docker", "image", "inspect", image]).ok

    def remove_image(self, image: str) -> CommandResult:
        return self.run(["docker", "rmi", "-f", image])

    def inspect_health(self, container: str) -> tuple[Optional[bool], str]:
        """Check if a container is running and healthy.

        Returns (True, msg) when healthy or running without a healthcheck,
        (None, msg) while the healthcheck is still starting and (False, msg)
        otherwise.
        """
        result = self.run(["docker", "inspect", "--format={{.State.Status}}", container])
        if not result.ok:
            return False, "Not found"

        status = result.stdout.strip()
        if status != "running":
            return False, f"Status: {status}"

        result = self.run(["docker", "inspect", "--format={{if .State.Health}}{{.State.Health.Status}}{{end}}",
                           container])
        if result.ok and result.stdout.strip():
            health = result.stdout.strip()
            if health == "healthy":
                return True, "Running (healthy)"
            elif health == "starting":
                return None, "Running (starting)"
            else:
                return False, f"Running ({health})"

        # No healthcheck defined, just check if running
        return True, "Running"

    def stats(self) -> dict[str, tuple[float, float]]:
        """Map container name to (cpu%, mem%) for running containers."""
        result = self.run([
            "docker", "stats", "--no-stream", "--format", "{{.Name}}\t{{.CPUPerc}}\t{{.MemPerc}}",
        ])
        if not result.ok:
            logger.debug(f"docker stats failed: {result.output}")
            return {}
        usage = {}
        for line in result.stdout.splitlines():
            parts = line.strip().split("\t")
            if len(parts) != 3:
                continue
            name, cpu, mem = parts
            try:
                usage[name] = (float(cpu.rstrip("%")), float(mem.rstrip("%")))
            except ValueError:
                logger.debug(f"Unparseable stats line: {line}")
        return usage

    def _list(self, args: list[str]) -> list[str]:
        result = self.run(args)
        if not result.ok:
            logger.debug(f"{' '.join(args)} failed: {result.output}")
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def list_containers(self) -> list[str]:
        return self._list(["docker", "ps", "-a", "-q", "-f", f"label={PROJECT_LABEL}={self.project_name}"])

    def list_networks(self) -> list[str]:
        return self._list(["docker", "network", "ls", "-q", "-f", f"label={PROJECT_LABEL}={self.project_name}"])

    def list_volumes(self) -> list[str]:
        return self._list(["docker", "volume", "ls", "-q", "-f", f"label={PROJECT_LABEL}={self.project_name}"])

    def list_images(self, prefixes: Iterable[str]) -> list[str]:
        """Images (repo:tag) whose repository starts with one of the prefixes."""
        prefixes = tuple(prefixes)
        if not prefixes:
            return []
        images = self._list(["docker", "images", "--format", "{{.Repository}}:{{.Tag}}"])
        return sorted({
            image for image in images
            if not image.startswith("<none>") and image.split(":", 1)[0].startswith(prefixes)
        })

    def list_dangling_images(self) -> list[str]:
        return self._list(["docker", "images", "-f", "dangling=true", "-q"])

    def remove(self, kind: ResourceKind, identifier: str) -> CommandResult:
        if kind is ResourceKind.CONTAINER:
            return self.run(["docker", "rm", "-f", identifier])
        if kind in (ResourceKind.IMAGE, ResourceKind.DANGLING_IMAGE):
            return self.run(["docker", "rmi", identifier])
        if kind is ResourceKind.NETWORK:
            return self.run(["docker", "network", "rm", identifier])
        if kind is ResourceKind.VOLUME:
            return self.run(["docker", "volume", "rm", identifier])
        raise ValueError(f"Unsupported resource kind: {kind}")

    def tool_available(self, args: list[str]) -> bool:
        return self.run(args, timeout=5).ok

    def server_arch(self) -> str:
        result = self.run(["docker", "info", "--format", "{{.Architecture}}"], timeout=10)
        return result.stdout.strip() if result.ok else ""

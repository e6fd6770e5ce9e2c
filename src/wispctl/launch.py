"""Host data directories and stack start-up."""

from __future__ import annotations

import logging
from pathlib import Path

from .compose import ComposeRunner, tail
from .console import info, success
from .errors import ConfigError, LaunchError
from .models import RunState, ServiceSpec

logger = logging.getLogger(__name__)


def prepare_data_directories(project_dir: Path, settings: dict) -> list[Path]:
    """
    Create data directories with their configured modes. Idempotent:
    existing directories are kept and their mode is reapplied.
    """
    data_root = Path(project_dir) / settings.get("data_root", "data")
    directories = settings.get("data_directories", {})
    created = []

    data_root.mkdir(parents=True, exist_ok=True)
    data_root.chmod(0o755)

    for name, raw_mode in directories.items():
        try:
            mode = int(str(raw_mode), 8)
        except ValueError:
            raise ConfigError(f"launch.data_directories.{name}: invalid octal mode '{raw_mode}'") from None
        path = data_root / name
        path.mkdir(parents=True, exist_ok=True)
        path.chmod(mode)
        logger.debug(f"Data directory {path} mode {mode:o}")
        created.append(path)
    return created


class LaunchController:
    """Starts the composed services as one unit."""

    def __init__(self, runner: ComposeRunner, state: RunState, specs: list[ServiceSpec],
                 tail_lines: int = 50) -> None:
        self.runner = runner
        self.state = state
        self.specs = specs
        self.tail_lines = tail_lines

    @property
    def services(self) -> list[str]:
        return [spec.compose_service for spec in self.specs if spec.runs]

    def launch(self) -> list[str]:
        """Run `docker compose up -d`; returns once the command completes."""
        self.state.set_stage("launch")
        self.state.mark_launch_attempted()
        info("Starting services...")
        result = self.runner.up()
        if not result.ok:
            output = tail(result.output, self.tail_lines)
            raise LaunchError(f"docker compose up failed (exit {result.returncode})", output)

        services = self.services
        self.state.mark_started(services)
        success(f"Started {len(services)} services: {', '.join(services)}")
        return services

"""
Failure diagnostics for the forward pipeline.

DiagnosticsHandler.guard() wraps a run: on an unrecoverable error it
collects build output tails, recent container logs and per-service status,
prints them with troubleshooting steps, appends them to the diagnostics log
and re-raises the original error.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from .compose import ComposeRunner, tail
from .console import RULE, error, info, warn
from .errors import WispctlError
from .models import RunState, ServiceSpec

logger = logging.getLogger(__name__)

TROUBLESHOOTING_STEPS = (
    "Check container logs: docker compose logs <service>",
    "Check service status: wispctl --status",
    "Verify free disk space and memory on the host",
    "Rebuild images from scratch: wispctl setup --force",
    "Remove containers and images, then retry: wispctl --cleanup",
)


@dataclass
class DiagnosticsReport:
    run_id: str
    stage: str
    error: str
    build_output: dict[str, str] = field(default_factory=dict)
    service_logs: dict[str, str] = field(default_factory=dict)
    statuses: dict[str, str] = field(default_factory=dict)
    steps: tuple[str, ...] = TROUBLESHOOTING_STEPS

    def render(self) -> str:
        lines = [
            RULE,
            f"wispctl diagnostics: run {self.run_id} failed in stage '{self.stage}'",
            f"Time: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}",
            f"Error: {self.error}",
            RULE,
            "Service status:",
        ]
        lines += [f"  {name}: {status}" for name, status in sorted(self.statuses.items())]
        for name, output in sorted(self.build_output.items()):
            lines += ["", f"--- build output: {name} ---", output]
        for name, output in sorted(self.service_logs.items()):
            lines += ["", f"--- logs: {name} ---", output]
        lines += ["", "Troubleshooting:"]
        lines += [f"  {i}. {step}" for i, step in enumerate(self.steps, start=1)]
        lines.append(RULE)
        return "\n".join(lines) + "\n"


class DiagnosticsHandler:
    def __init__(self, runner: ComposeRunner, state: RunState, specs: list[ServiceSpec],
                 log_path: Path, tail_lines: int = 50) -> None:
        self.runner = runner
        self.state = state
        self.specs = specs
        self.log_path = Path(log_path)
        self.tail_lines = tail_lines

    def capture(self, exc: BaseException) -> DiagnosticsReport:
        stage = getattr(exc, "stage", None) or self.state.stage
        report = DiagnosticsReport(run_id=self.state.run_id, stage=stage, error=str(exc))

        for result in self.state.build_results():
            report.statuses[result.service] = (
                f"build {result.status.value}" + (" (reused)" if result.reused else "")
            )
            if result.output and not result.reused:
                report.build_output[result.service] = tail(result.output, self.tail_lines)
        output = getattr(exc, "output", "")
        service = getattr(exc, "service", None)
        if output and service and service not in report.build_output:
            report.build_output[service] = tail(output, self.tail_lines)

        if self.state.launch_attempted:
            started = set(self.state.started_services)
            for spec in self.specs:
                if not spec.runs:
                    continue
                name = spec.compose_service
                logs = self.runner.logs(name, self.tail_lines)
                report.service_logs[name] = tail(logs.output, self.tail_lines)
                prefix = report.statuses.get(spec.name)
                run_status = "started" if name in started else "not started"
                report.statuses[spec.name] = f"{prefix}, {run_status}" if prefix else run_status
        return report

    def report(self, report: DiagnosticsReport) -> None:
        text = report.render()
        for line in text.rstrip("\n").splitlines():
            error(line)
        try:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(text)
            info(f"Diagnostics appended to {self.log_path}")
        except OSError as e:
            warn(f"Could not write diagnostics log {self.log_path}: {e}")

    def stop_started(self) -> None:
        started = self.state.started_services
        if not started:
            return
        warn(f"Interrupted; stopping services started in this run: {', '.join(started)}")
        result = self.runner.stop(started)
        if not result.ok:
            warn(f"Could not stop services: {tail(result.output, 5)}")

    @contextmanager
    def guard(self) -> Iterator[None]:
        """Capture diagnostics for any failure inside the block, then re-raise."""
        try:
            yield
        except KeyboardInterrupt:
            self.stop_started()
            raise
        except Exception as exc:
            if isinstance(exc, WispctlError):
                logger.debug(f"Pipeline failed in stage {exc.stage}: {exc}")
            try:
                report: Optional[DiagnosticsReport] = self.capture(exc)
            except Exception as capture_exc:
                warn(f"Could not capture diagnostics: {capture_exc}")
                report = None
            if report is not None:
                self.report(report)
            raise

"""
Forward deployment pipeline.

validate -> materialize -> build -> launch -> readiness -> health, run
under the per-directory run lock and wrapped by the diagnostics handler.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from .build import BuildPipeline
from .cleanup import CleanupController, CleanupOptions, run_cleanup
from .compose import ComposeRunner
from .config_constants import DIAGNOSTICS_LOG, LOCK_FILE
from .console import banner, info, success, warn
from .diagnostics import DiagnosticsHandler
from .environment import HostProbe, print_report, validate_environment
from .errors import EnvironmentCheckError, ReadinessError
from .health import HealthReporter, HealthSnapshot, print_snapshot
from .launch import LaunchController, prepare_data_directories
from .lock import RunLock
from .materialize import MaterializedConfig, materialize_configuration
from .models import BuildResult, CleanupReport, ReadinessReport, RunState
from .readiness import ReadinessProber, build_readiness_checks
from .settings import DeploymentConfig
from .stages import compute_build_stages

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SetupOptions:
    force: bool = False
    no_wait: bool = False
    interactive: bool = False
    domains: dict = field(default_factory=dict)


@dataclass
class SetupOutcome:
    run_id: str
    builds: list[BuildResult] = field(default_factory=list)
    readiness: Optional[ReadinessReport] = None
    health: Optional[HealthSnapshot] = None
    materialized: Optional[MaterializedConfig] = None

    @property
    def degraded(self) -> bool:
        return self.readiness is not None and bool(self.readiness.timed_out)


def make_runner(config: DeploymentConfig) -> ComposeRunner:
    return ComposeRunner(
        project_dir=config.project_dir,
        compose_file=config.compose_file,
        project_name=config.project_name,
        platform=config.section("deploy").get("platform", ""),
    )


class DeploymentOrchestrator:
    """Owns the RunState of one invocation and drives every stage."""

    def __init__(self, config: DeploymentConfig, runner: Optional[ComposeRunner] = None,
                 probe: Optional[HostProbe] = None, prober: Optional[ReadinessProber] = None,
                 prompt: Callable[[str], str] = input) -> None:
        self.config = config
        self.runner = runner or make_runner(config)
        self.probe = probe or HostProbe(self.runner)
        self.prober = prober or ReadinessProber()
        self.prompt = prompt
        self.state = RunState(config.services)
        diagnostics = config.section("diagnostics")
        self.tail_lines = int(diagnostics.get("tail_lines", 50))
        self.diagnostics = DiagnosticsHandler(
            self.runner,
            self.state,
            config.services,
            log_path=config.project_dir / diagnostics.get("log_file", DIAGNOSTICS_LOG),
            tail_lines=self.tail_lines,
        )

    @property
    def lock(self) -> RunLock:
        return RunLock(self.config.project_dir / LOCK_FILE)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def validate(self) -> None:
        self.state.set_stage("validate")
        report = validate_environment(self.config.section("validate"), self.config.project_dir, self.probe)
        print_report(report)
        if not report.passed:
            reasons = "; ".join(o.reason for o in report.failures)
            raise EnvironmentCheckError(f"Environment checks failed: {reasons}", report)

    def materialize(self, options: SetupOptions) -> MaterializedConfig:
        self.state.set_stage("materialize")
        return materialize_configuration(
            self.config,
            run_id=self.state.run_id,
            domains=options.domains,
            interactive=options.interactive,
            prompt=self.prompt,
        )

    def build(self, force: bool) -> list[BuildResult]:
        self.state.set_stage("build")
        stages = compute_build_stages(self.config.services)
        settings = self.config.section("build")
        pipeline = BuildPipeline(
            self.runner,
            self.state,
            self.config.services,
            max_workers=settings.get("max_workers", 4),
            tail_lines=self.tail_lines,
            timeout=settings.get("timeout", 0),
        )
        return pipeline.run(stages, force=force)

    def launch(self) -> list[str]:
        prepare_data_directories(self.config.project_dir, self.config.section("launch"))
        return LaunchController(self.runner, self.state, self.config.services, self.tail_lines).launch()

    def wait_ready(self, values: dict[str, str]) -> ReadinessReport:
        self.state.set_stage("readiness")
        checks = build_readiness_checks(self.config.services, self.runner, {**os.environ, **values})
        report = self.prober.run(checks)
        if report.timed_out:
            names = ", ".join(c.name for c in report.timed_out)
            if self.config.section("readiness").get("timeout_is_fatal", False):
                raise ReadinessError(f"Readiness timed out: {names}", report)
            warn(f"Continuing with partial readiness; timed out: {names}")
        return report

    def health(self) -> HealthSnapshot:
        settings = self.config.section("health")
        reporter = HealthReporter(
            self.runner,
            self.config.services,
            cpu_threshold=settings.get("cpu_threshold", 80),
            memory_threshold=settings.get("memory_threshold", 80),
        )
        return reporter.snapshot()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run_setup(self, options: SetupOptions) -> SetupOutcome:
        outcome = SetupOutcome(run_id=self.state.run_id)
        banner(f"wispctl setup: {self.config.project_name} (run {self.state.run_id})")
        with self.lock, self.diagnostics.guard():
            self.validate()
            outcome.materialized = self.materialize(options)
            outcome.builds = self.build(options.force)
            self.launch()
            if options.no_wait:
                info("Skipping readiness checks (--no-wait)")
            else:
                outcome.readiness = self.wait_ready(outcome.materialized.values)
            self.state.set_stage("health")
            outcome.health = self.health()
            print_snapshot(outcome.health)
        self.state.set_stage("done")
        self.print_completion(outcome)
        return outcome

    def run_cleanup(self, options: CleanupOptions) -> Optional[CleanupReport]:
        controller = CleanupController(self.runner, self.config.section("cleanup").get("image_prefixes", []))
        with self.lock:
            return run_cleanup(controller, options, self.prompt)

    def print_completion(self, outcome: SetupOutcome) -> None:
        values = outcome.materialized.values if outcome.materialized else {}
        dashboard = values.get("DASHBOARD_DOMAIN", "localhost")
        api = values.get("API_DOMAIN", "localhost")
        banner("Deployment complete" + (" (degraded: some services not ready)" if outcome.degraded else ""))
        success(self.state.summary())
        info(f"Dashboard: https://{dashboard}")
        info(f"API: https://{api}")
        info("For local testing add to /etc/hosts:")
        info(f"  127.0.0.1 {dashboard}")
        info(f"  127.0.0.1 {api}")
        info("Useful commands:")
        info("  wispctl --status          show service status")
        info("  wispctl --health-check    exit non-zero when a service is down")
        info("  docker compose logs <service>")
        if outcome.materialized and outcome.materialized.generated:
            warn(f"Secrets were generated into {Path(outcome.materialized.path).name}; back it up securely")

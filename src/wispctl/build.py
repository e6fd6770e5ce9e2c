"""
Stage-by-stage image builds.

The base image reference of each dependent service is resolved once from
its dependency's ServiceSpec and passed to the build as a build argument
(or the {base_image} placeholder of a custom build command).
"""

from __future__ import annotations

import logging
import re
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .compose import ComposeRunner, tail
from .console import debug, info, success, warn
from .errors import BuildError, StaleBaseImageError
from .models import BuildResult, BuildStage, BuildStatus, RunState, ServiceSpec

logger = logging.getLogger(__name__)

FROM_PATTERN = re.compile(
    r"^\s*FROM\s+(?:--platform=\S+\s+)?(?P<image>\S+)(?:\s+AS\s+\S+)?\s*$",
    re.IGNORECASE | re.MULTILINE,
)


def normalize_image(image: str) -> str:
    """Add the implicit :latest tag so references compare equal."""
    image = image.strip()
    if "@" in image:
        return image
    name = image.rsplit("/", 1)[-1]
    if ":" not in name:
        return f"{image}:latest"
    return image


@dataclass(frozen=True)
class BaseImageReference:
    service: str
    arg_name: str
    image: str


def resolve_base_reference(spec: ServiceSpec, specs: dict[str, ServiceSpec]) -> Optional[BaseImageReference]:
    """
    Compute the base image identifier for spec from its dependency.

    A declared base_image_ref that differs from the dependency's image is
    reported and replaced by the resolved identifier.
    """
    if spec.base is None:
        return None
    base_spec = specs[spec.base]
    resolved = base_spec.image
    if spec.base_image_ref and normalize_image(spec.base_image_ref) != normalize_image(resolved):
        warn(
            f"{spec.name}: declared base image '{spec.base_image_ref}' does not match "
            f"'{resolved}' built from '{base_spec.name}'; using '{resolved}'"
        )
    return BaseImageReference(service=base_spec.name, arg_name=spec.base_image_arg, image=resolved)


def check_dockerfile_base(spec: ServiceSpec, ref: BaseImageReference, project_dir: Path) -> None:
    """
    Fail if the Dockerfile hard-codes a FROM image other than the resolved base.

    A FROM line using the build argument (or naming the resolved image)
    passes; a missing Dockerfile is left for the build itself to report.
    """
    dockerfile = spec.dockerfile_path(project_dir)
    if not dockerfile.is_file():
        logger.debug(f"{spec.name}: no Dockerfile at {dockerfile}, skipping base check")
        return

    images = [m.group("image") for m in FROM_PATTERN.finditer(dockerfile.read_text(encoding="utf-8"))]
    if not images:
        return

    arg_refs = (f"${ref.arg_name}", f"${{{ref.arg_name}}}")
    expected = normalize_image(ref.image)
    for image in images:
        if any(token in image for token in arg_refs):
            return
        if normalize_image(image) == expected:
            return
    raise StaleBaseImageError(spec.name, images[0], ref.image, str(dockerfile))


def build_command(spec: ServiceSpec, ref: Optional[BaseImageReference], runner: ComposeRunner,
                  force: bool) -> list[str]:
    if spec.build_command:
        placeholders = {
            "service": spec.compose_service,
            "image": spec.image,
            "context": str(runner.project_dir / spec.context) if spec.context else str(runner.project_dir),
            "dockerfile": str(spec.dockerfile_path(runner.project_dir)),
            "base_image": ref.image if ref else "",
            "compose_file": str(runner.compose_file),
            "no_cache": "--no-cache" if force else "",
        }
        try:
            args = [token.format(**placeholders) for token in spec.build_command]
        except (KeyError, IndexError) as e:
            raise BuildError(spec.name, f"Invalid placeholder in build command for '{spec.name}': {e}") from e
        args = [arg for arg in args if arg]
        if ref and "{base_image}" not in " ".join(spec.build_command):
            args += ["--build-arg", f"{ref.arg_name}={ref.image}"]
        return args

    args = ["build"]
    if force:
        args.append("--no-cache")
    if ref:
        args += ["--build-arg", f"{ref.arg_name}={ref.image}"]
    args.append(spec.compose_service)
    return runner.compose_args(*args)


class BuildPipeline:
    """Builds stages in order, in parallel within a stage."""

    def __init__(self, runner: ComposeRunner, state: RunState, specs: list[ServiceSpec],
                 max_workers: int = 4, tail_lines: int = 50, timeout: Optional[float] = None) -> None:
        self.runner = runner
        self.state = state
        self.specs = {spec.name: spec for spec in specs}
        self.max_workers = max(1, int(max_workers))
        self.tail_lines = tail_lines
        self.timeout = timeout or None

    def preflight(self, stages: list[BuildStage]) -> dict[str, Optional[BaseImageReference]]:
        """Resolve base references and reject stale ones before any build runs."""
        refs: dict[str, Optional[BaseImageReference]] = {}
        for stage in stages:
            for spec in stage.services:
                ref = resolve_base_reference(spec, self.specs)
                if ref is not None:
                    check_dockerfile_base(spec, ref, self.runner.project_dir)
                    debug(f"{spec.name}: base image {ref.image} via --build-arg {ref.arg_name}")
                refs[spec.name] = ref
        return refs

    def remove_existing(self, stages: list[BuildStage]) -> None:
        for stage in stages:
            for spec in stage.services:
                if self.runner.image_exists(spec.image):
                    result = self.runner.remove_image(spec.image)
                    if result.ok:
                        info(f"Removed existing image {spec.image}")
                    else:
                        warn(f"Could not remove image {spec.image}: {tail(result.output, 5)}")

    def build_one(self, spec: ServiceSpec, ref: Optional[BaseImageReference], force: bool) -> BuildResult:
        if not force and self.runner.image_exists(spec.image):
            result = BuildResult(service=spec.name, status=BuildStatus.SUCCESS, reused=True, image=spec.image,
                                 output=f"Reused existing image {spec.image}")
            self.state.record_build(result)
            info(f"Reusing existing image {spec.image} for {spec.name}")
            return result

        args = build_command(spec, ref, self.runner, force)
        info(f"Building {spec.name} ({spec.image})...")
        started = time.monotonic()
        outcome = self.runner.run(args, timeout=self.timeout)
        result = BuildResult(
            service=spec.name,
            status=BuildStatus.SUCCESS if outcome.ok else BuildStatus.FAILED,
            output=outcome.output,
            duration=time.monotonic() - started,
            image=spec.image,
        )
        self.state.record_build(result)
        if outcome.ok:
            success(f"Built {spec.name} in {result.duration:.1f}s")
        return result

    def run_stage(self, stage: BuildStage, refs: dict, force: bool) -> list[BuildResult]:
        self.state.set_stage(f"build:{stage.index}")
        info(f"Build stage {stage.index + 1}: {', '.join(stage.names)}")
        results: list[BuildResult] = []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(stage.services))) as pool:
            futures = {pool.submit(self.build_one, spec, refs.get(spec.name), force): spec
                       for spec in stage.services}
            pending = set(futures)
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                failure = None
                for future in done:
                    try:
                        result = future.result()
                    except Exception:
                        for other in pending:
                            other.cancel()
                        raise
                    results.append(result)
                    if result.status == BuildStatus.FAILED and failure is None:
                        failure = result
                if failure is not None:
                    for future in pending:
                        future.cancel()
                    output_tail = tail(failure.output, self.tail_lines)
                    raise BuildError(
                        failure.service,
                        f"Build failed for '{failure.service}' in stage {stage.index + 1}",
                        output_tail,
                    )
        return results

    def run(self, stages: list[BuildStage], force: bool = False) -> list[BuildResult]:
        """
        Build every stage. The first failure aborts the pipeline; images
        built by earlier stages are kept.
        """
        refs = self.preflight(stages)
        if force:
            self.remove_existing(stages)

        results: list[BuildResult] = []
        for stage in stages:
            results.extend(self.run_stage(stage, refs, force))
        built = sum(1 for r in results if not r.reused)
        reused = len(results) - built
        success(f"Build pipeline complete: {built} built, {reused} reused")
        return results

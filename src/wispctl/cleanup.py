"""
Teardown of deployed resources.

The controller is a small state machine:

    IDLE -> PLAN_BUILT -> CONFIRMED -> EXECUTING -> DONE
                      \\-> ABORTED

Interactive and flag-driven cleanup both go through resolve_plan(), which
returns a plan with its confirmed flag settled, and execute(), which is the
only place removal commands are issued.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from .compose import ComposeRunner, tail
from .console import error, info, success, warn
from .errors import CleanupError
from .models import REMOVAL_ORDER, CleanupPlan, CleanupReport, CleanupResource, ResourceKind

logger = logging.getLogger(__name__)


class CleanupState(str, Enum):
    IDLE = "idle"
    PLAN_BUILT = "plan-built"
    CONFIRMED = "confirmed"
    EXECUTING = "executing"
    DONE = "done"
    ABORTED = "aborted"


TRANSITIONS = {
    CleanupState.IDLE: {CleanupState.PLAN_BUILT},
    CleanupState.PLAN_BUILT: {CleanupState.CONFIRMED, CleanupState.ABORTED},
    CleanupState.CONFIRMED: {CleanupState.EXECUTING},
    CleanupState.EXECUTING: {CleanupState.DONE},
    CleanupState.DONE: set(),
    CleanupState.ABORTED: set(),
}


class CleanupMode(str, Enum):
    INTERACTIVE = "interactive"
    ALL = "all"
    IMAGES = "images"


@dataclass(frozen=True)
class CleanupOptions:
    mode: CleanupMode
    assume_yes: bool = False


NON_DESTRUCTIVE_KINDS = (
    ResourceKind.CONTAINER,
    ResourceKind.IMAGE,
    ResourceKind.DANGLING_IMAGE,
    ResourceKind.NETWORK,
)
IMAGE_KINDS = (ResourceKind.IMAGE, ResourceKind.DANGLING_IMAGE)


class CleanupController:
    def __init__(self, runner: ComposeRunner, image_prefixes: Iterable[str]) -> None:
        self.runner = runner
        self.image_prefixes = tuple(image_prefixes)
        self.state = CleanupState.IDLE
        self.plan: Optional[CleanupPlan] = None

    def _transition(self, target: CleanupState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise CleanupError(f"Illegal cleanup transition: {self.state.value} -> {target.value}")
        logger.debug(f"Cleanup state {self.state.value} -> {target.value}")
        self.state = target

    def discover(self, kinds: Iterable[ResourceKind]) -> CleanupPlan:
        """Enumerate resources of the given kinds into a new, unconfirmed plan."""
        if self.state is not CleanupState.IDLE:
            raise CleanupError(f"Cannot build a plan in state {self.state.value}")
        kinds = set(kinds)
        listers = {
            ResourceKind.CONTAINER: self.runner.list_containers,
            ResourceKind.IMAGE: lambda: self.runner.list_images(self.image_prefixes),
            ResourceKind.DANGLING_IMAGE: self.runner.list_dangling_images,
            ResourceKind.NETWORK: self.runner.list_networks,
            ResourceKind.VOLUME: self.runner.list_volumes,
        }
        resources = []
        for kind in REMOVAL_ORDER:
            if kind in kinds:
                resources.extend(CleanupResource(kind, identifier) for identifier in listers[kind]())

        self.plan = CleanupPlan(resources=resources, include_volumes=ResourceKind.VOLUME in kinds)
        self._transition(CleanupState.PLAN_BUILT)
        return self.plan

    def confirm(self, approved: bool) -> CleanupPlan:
        if self.plan is None:
            raise CleanupError("No cleanup plan to confirm")
        if approved:
            self._transition(CleanupState.CONFIRMED)
            self.plan.confirmed = True
        else:
            self._transition(CleanupState.ABORTED)
        return self.plan

    def execute(self) -> CleanupReport:
        """
        Remove every planned resource, containers first and volumes last.
        Each removal is attempted even when earlier ones failed.
        """
        if self.plan is None or not self.plan.confirmed:
            raise CleanupError("Cleanup plan has not been confirmed")
        self._transition(CleanupState.EXECUTING)

        report = CleanupReport()
        for kind in REMOVAL_ORDER:
            for resource in self.plan.by_kind(kind):
                try:
                    result = self.runner.remove(kind, resource.identifier)
                    ok, detail = result.ok, tail(result.output, 1)
                except Exception as e:
                    ok, detail = False, str(e)
                if ok:
                    logger.debug(f"Removed {kind.value} {resource.display}")
                    report.record(kind, True)
                else:
                    message = f"Failed to remove {kind.value} {resource.display}: {detail}"
                    warn(message)
                    report.record(kind, False, message)

        self._transition(CleanupState.DONE)
        return report


def describe_plan(plan: CleanupPlan) -> None:
    if plan.empty:
        info("Nothing to clean up")
        return
    info("Cleanup plan:")
    for kind in REMOVAL_ORDER:
        items = plan.by_kind(kind)
        if items:
            marker = " (DESTRUCTIVE: data will be lost)" if kind.destructive else ""
            info(f"  {kind.value}: {len(items)}{marker}")
            for item in items:
                info(f"    - {item.display}")


def _answer(prompt: Callable[[str], str], question: str) -> str:
    """Read one answer; end of input (no terminal) counts as no answer."""
    try:
        return prompt(question).strip()
    except EOFError:
        warn("No input available; treating the answer as 'no'")
        return ""


def _ask_yes_no(prompt: Callable[[str], str], question: str) -> bool:
    return _answer(prompt, f"{question} [y/N]: ").lower() in ("y", "yes")


def resolve_plan(controller: CleanupController, options: CleanupOptions,
                 prompt: Callable[[str], str] = input) -> CleanupPlan:
    """
    Build the plan for the requested mode and settle its confirmation.

    Non-destructive plans are confirmed without asking. A destructive plan
    is confirmed by the --cleanup-all flag or by typing 'yes' at the prompt.
    """
    if options.mode is CleanupMode.IMAGES:
        kinds = IMAGE_KINDS
    elif options.mode is CleanupMode.ALL:
        kinds = NON_DESTRUCTIVE_KINDS + (ResourceKind.VOLUME,)
    else:
        include_volumes = False
        if not options.assume_yes:
            include_volumes = _ask_yes_no(prompt, "Also remove volumes (ALL persistent data)?")
        kinds = NON_DESTRUCTIVE_KINDS + ((ResourceKind.VOLUME,) if include_volumes else ())

    plan = controller.discover(kinds)
    describe_plan(plan)

    if not plan.destructive:
        return controller.confirm(True)
    if options.mode is CleanupMode.ALL:
        return controller.confirm(True)

    answer = _answer(prompt, "This permanently deletes data. Type 'yes' to continue: ")
    return controller.confirm(answer == "yes")


def print_report(report: CleanupReport) -> None:
    for kind in REMOVAL_ORDER:
        removed = report.removed.get(kind, 0)
        failed = report.failed.get(kind, 0)
        if removed or failed:
            info(f"  {kind.value}: {removed} removed, {failed} failed")
    if report.ok:
        success(f"Cleanup complete: {report.total_removed} resources removed")
    else:
        error(f"Cleanup finished with {report.total_failed} failures ({report.total_removed} removed)")


def run_cleanup(controller: CleanupController, options: CleanupOptions,
                prompt: Callable[[str], str] = input) -> Optional[CleanupReport]:
    """Resolve, then execute. Returns None when the operator declined."""
    plan = resolve_plan(controller, options, prompt)
    if not plan.confirmed:
        info("Cleanup aborted, nothing was removed")
        return None
    report = controller.execute()
    print_report(report)
    return report

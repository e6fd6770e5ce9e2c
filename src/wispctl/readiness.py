"""
Bounded readiness polling.

Each ReadinessCheck is polled in its own thread at a fixed interval until
its probe succeeds or its timeout budget is spent. A timeout is a terminal
status on the check, never an exception; the caller decides whether it is
fatal.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Mapping, Optional

import requests
import urllib3

from .compose import ComposeRunner, tail
from .console import debug, info, success, warn
from .models import CheckStatus, ProbeResult, ReadinessCheck, ReadinessKind, ReadinessReport, ServiceSpec
from .settings import expand_placeholders

logger = logging.getLogger(__name__)


class ReadinessProber:
    """
    Polls readiness checks concurrently with an injectable clock.

    Without an injected sleep, waits between attempts use a stop event so an
    interrupt ends every poll thread at its next wait.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], None]] = None) -> None:
        self.clock = clock
        self.sleep = sleep or self._wait
        self._stop = threading.Event()

    def _wait(self, seconds: float) -> None:
        self._stop.wait(seconds)

    def stop(self) -> None:
        self._stop.set()

    def poll(self, check: ReadinessCheck) -> ReadinessCheck:
        """
        Poll one check until ready, timed out or stopped.

        The last sleep is shortened to the remaining budget, so a probe that
        never succeeds times out within [timeout, timeout + interval) as long
        as a single probe attempt returns within the interval.
        """
        start = self.clock()
        while not self._stop.is_set():
            check.attempts += 1
            try:
                ok, msg = check.probe()
            except Exception as e:
                ok, msg = False, f"Probe error: {e}"
            check.elapsed = self.clock() - start
            check.message = msg

            if ok:
                check.status = CheckStatus.READY
                success(f"{check.name} is ready after {check.elapsed:.0f}s: {msg}")
                return check

            if check.elapsed >= check.timeout:
                check.status = CheckStatus.TIMED_OUT
                warn(f"{check.name} not ready after {check.elapsed:.0f}s (timeout {check.timeout:g}s): {msg}")
                return check

            wait_for = min(check.interval, check.timeout - check.elapsed)
            debug(f"  [{check.elapsed:.0f}s] {check.name}: {msg}, retrying in {wait_for:g}s...")
            self.sleep(wait_for)
        logger.debug(f"Polling of {check.name} stopped after {check.attempts} attempts")
        return check

    def run(self, checks: list[ReadinessCheck]) -> ReadinessReport:
        """
        Poll every check in its own thread and wait for all of them.

        On an interrupt the polls are stopped and the interrupt re-raised
        without waiting for the remaining budgets.
        """
        report = ReadinessReport(checks=list(checks))
        if not checks:
            return report

        self._stop.clear()
        for check in checks:
            info(f"Waiting for {check.name} ({check.target}, timeout: {check.timeout:g}s)...")
        pool = ThreadPoolExecutor(max_workers=len(checks))
        try:
            # list() propagates any unexpected error from a poll thread
            list(pool.map(self.poll, checks))
        except BaseException:
            self.stop()
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        pool.shutdown(wait=True)
        return report


def data_store_probe(runner: ComposeRunner, service: str, command: tuple[str, ...],
                     timeout: float) -> Callable[[], ProbeResult]:
    def probe() -> ProbeResult:
        result = runner.exec(service, command, timeout=timeout)
        if result.ok:
            return True, tail(result.stdout, 1) or "accepting connections"
        return False, tail(result.output, 1) or f"exit {result.returncode}"
    return probe


def http_probe(url: str, verify_tls: bool, timeout: float,
               session: requests.Session | None = None) -> Callable[[], ProbeResult]:
    """Any HTTP response below 500 means the endpoint is reachable."""
    getter = session or requests

    def probe() -> ProbeResult:
        try:
            response = getter.get(url, verify=verify_tls, timeout=timeout)
        except requests.RequestException as e:
            return False, f"{type(e).__name__}: {e}"
        if response.status_code < 500:
            return True, f"HTTP {response.status_code}"
        return False, f"HTTP {response.status_code}"
    return probe


def container_health_probe(runner: ComposeRunner, service: str) -> Callable[[], ProbeResult]:
    def probe() -> ProbeResult:
        container = runner.container_id(service)
        if not container:
            return False, "Container not found"
        healthy, msg = runner.inspect_health(container)
        return bool(healthy), msg
    return probe


def build_readiness_checks(specs: list[ServiceSpec], runner: ComposeRunner,
                           values: Mapping[str, str]) -> list[ReadinessCheck]:
    """
    Create one check per readiness signal.

    Placeholders in commands and URLs are expanded from the runtime
    configuration values. A single probe attempt is bounded by the poll
    interval.
    """
    checks = []
    for spec in specs:
        if not spec.runs:
            continue
        for signal in spec.readiness:
            source = f"services.{spec.name}.readiness"
            if signal.kind is ReadinessKind.DATA_STORE:
                command = tuple(expand_placeholders(part, values, source) for part in signal.command)
                probe = data_store_probe(runner, spec.compose_service, command, signal.interval)
                name, target = f"{spec.name} (data-store)", " ".join(command)
            elif signal.kind is ReadinessKind.HTTP_ENDPOINT:
                url = expand_placeholders(signal.url, values, source)
                if not signal.verify_tls:
                    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
                probe = http_probe(url, signal.verify_tls, signal.interval)
                name, target = f"{spec.name} (http)", url
            elif signal.kind is ReadinessKind.CONTAINER_HEALTH:
                probe = container_health_probe(runner, spec.compose_service)
                name, target = f"{spec.name} (container)", spec.compose_service
            else:
                continue
            checks.append(ReadinessCheck(
                name=name,
                target=target,
                probe=probe,
                interval=signal.interval,
                timeout=signal.timeout,
            ))
    return checks

"""
Health reporter tests.
"""

import json

from conftest import FakeRunner
from wispctl.health import HealthReporter, print_snapshot
from wispctl.models import ServiceSpec

SPECS = [
    ServiceSpec(name="base", compose_service="base", build=True, image="base:1", runs=False),
    ServiceSpec(name="dashboard", compose_service="dashboard"),
    ServiceSpec(name="postgres", compose_service="postgres"),
]

PS = [
    {"Service": "dashboard", "Name": "openwisp-dashboard-1", "State": "running"},
    {"Service": "postgres", "Name": "openwisp-postgres-1", "State": "running"},
]
STATS = "openwisp-dashboard-1\t91.50%\t12.00%\nopenwisp-postgres-1\t3.10%\t85.25%\n"


def _runner(tmp_path, ps_output, stats=STATS):
    def handler(args):
        if "ps" in args and "json" in args:
            return (0, ps_output)
        if args[:2] == ["docker", "stats"]:
            return (0, stats)
        return None
    return FakeRunner(tmp_path, handler)


class TestSnapshot:
    def test_all_running_is_healthy(self, tmp_path):
        snapshot = HealthReporter(_runner(tmp_path, json.dumps(PS)), SPECS).snapshot()

        assert snapshot.healthy
        assert [s.service for s in snapshot.services] == ["dashboard", "postgres"]

    def test_ndjson_output_is_accepted(self, tmp_path):
        ndjson = "\n".join(json.dumps(entry) for entry in PS)

        snapshot = HealthReporter(_runner(tmp_path, ndjson), SPECS).snapshot()

        assert snapshot.healthy

    def test_stopped_service_is_unhealthy(self, tmp_path):
        ps = [PS[0], {**PS[1], "State": "exited"}]

        snapshot = HealthReporter(_runner(tmp_path, json.dumps(ps)), SPECS).snapshot()

        assert not snapshot.healthy
        assert snapshot.stopped == ["postgres"]

    def test_missing_container_is_unhealthy(self, tmp_path):
        snapshot = HealthReporter(_runner(tmp_path, json.dumps(PS[:1])), SPECS).snapshot()

        assert snapshot.stopped == ["postgres"]
        assert snapshot.services[1].state == "missing"

    def test_resource_usage_and_thresholds(self, tmp_path):
        snapshot = HealthReporter(_runner(tmp_path, json.dumps(PS)), SPECS,
                                  cpu_threshold=80, memory_threshold=80).snapshot()

        dashboard, postgres = snapshot.services
        assert dashboard.cpu_percent == 91.5
        assert postgres.memory_percent == 85.25
        assert len(snapshot.warnings) == 2
        assert "dashboard CPU usage 91.5%" in snapshot.warnings[0]
        assert "postgres memory usage 85.2%" in snapshot.warnings[1]

    def test_no_side_effects(self, tmp_path):
        runner = _runner(tmp_path, json.dumps(PS))

        HealthReporter(runner, SPECS).snapshot()

        assert all(c[:2] == ["docker", "stats"] or "ps" in c for c in runner.calls)

    def test_print_snapshot(self, tmp_path, capsys):
        snapshot = HealthReporter(_runner(tmp_path, json.dumps(PS[:1])), SPECS).snapshot()

        print_snapshot(snapshot)

        out = capsys.readouterr().out
        assert "dashboard" in out
        assert "Not running: postgres" in out

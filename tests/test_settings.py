"""
Deployment configuration loading tests.
"""

import tomllib

import pytest

from wispctl.errors import ConfigError
from wispctl.models import ReadinessKind
from wispctl.settings import (
    deep_merge_configs,
    dump_config,
    expand_placeholders,
    load_config,
    parse_service_specs,
)


class TestDeepMerge:
    def test_nested_tables_merge_key_by_key(self):
        base = {"validate": {"min_disk_gb": 5, "ports": ["80/tcp"]}, "deploy": {"project_name": "a"}}
        project = {"validate": {"min_disk_gb": 8}}

        merged = deep_merge_configs(base, project)

        assert merged == {"validate": {"min_disk_gb": 8, "ports": ["80/tcp"]}, "deploy": {"project_name": "a"}}

    def test_lists_replace(self):
        merged = deep_merge_configs({"validate": {"ports": ["80/tcp", "443/tcp"]}},
                                    {"validate": {"ports": ["8080/tcp"]}})

        assert merged["validate"]["ports"] == ["8080/tcp"]

    def test_inputs_not_mutated(self):
        base = {"a": {"b": 1}}

        deep_merge_configs(base, {"a": {"b": 2}})

        assert base == {"a": {"b": 1}}


class TestLoadConfig:
    def test_packaged_defaults(self, tmp_path):
        config = load_config(tmp_path, environ={})

        assert config.project_name == "openwisp"
        assert config.compose_file == tmp_path / "docker-compose.yml"
        assert config.section("validate")["min_disk_gb"] == 5
        assert config.section("readiness")["timeout_is_fatal"] is False
        assert {s.name for s in config.services} >= {"base", "dashboard", "api", "postgres", "redis"}
        assert config.service("dashboard").base == "base"
        assert not config.service("base").runs

    def test_project_file_overrides(self, tmp_path):
        (tmp_path / "wispctl.toml").write_text(
            '[validate]\nmin_disk_gb = 8\n\n[services.dashboard]\nbase_image_ref = "openwisp/openwisp-base:2"\n'
        )

        config = load_config(tmp_path, environ={})

        assert config.section("validate")["min_disk_gb"] == 8
        assert config.section("validate")["recommended_disk_gb"] == 10
        dashboard = config.service("dashboard")
        assert dashboard.base_image_ref == "openwisp/openwisp-base:2"
        assert dashboard.depends_on == ("base",)
        assert len(config.sources) == 2

    def test_explicit_config_must_exist(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path, tmp_path / "missing.toml", environ={})

    def test_invalid_toml(self, tmp_path):
        (tmp_path / "wispctl.toml").write_text("[validate\n")

        with pytest.raises(ConfigError, match="Failed to parse TOML"):
            load_config(tmp_path, environ={})

    def test_environment_expansion(self, tmp_path):
        (tmp_path / "wispctl.toml").write_text('[deploy]\nproject_name = "wisp-${SITE}"\n')

        config = load_config(tmp_path, environ={"SITE": "lab"})

        assert config.project_name == "wisp-lab"

    def test_missing_environment_value_fails_fast(self, tmp_path):
        (tmp_path / "wispctl.toml").write_text('[deploy]\nproject_name = "wisp-$SITE"\n')

        with pytest.raises(ConfigError, match="SITE"):
            load_config(tmp_path, environ={})

    def test_service_placeholders_left_for_runtime(self, tmp_path):
        config = load_config(tmp_path, environ={})

        postgres = config.service("postgres")
        assert postgres.readiness[0].command == ("pg_isready", "-U", "${DB_USER}", "-d", "${DB_NAME}")
        assert postgres.readiness[0].interval == 2
        assert postgres.readiness[0].timeout == 60
        http = config.service("dashboard").readiness[0]
        assert http.kind == ReadinessKind.HTTP_ENDPOINT
        assert (http.interval, http.timeout, http.verify_tls) == (5, 120, False)

    def test_dump_config_round_trips(self, tmp_path):
        config = load_config(tmp_path, environ={})

        assert tomllib.loads(dump_config(config)) == config.raw


class TestParseServiceSpecs:
    def test_built_service_requires_image(self):
        with pytest.raises(ConfigError, match="require 'image'"):
            parse_service_specs({"services": {"app": {"build": True}}})

    def test_depends_on_requires_build(self):
        with pytest.raises(ConfigError, match="only valid for locally built"):
            parse_service_specs({"services": {"app": {"image": "a", "depends_on": ["base"]}}})

    def test_invalid_readiness_type(self):
        services = {"services": {"db": {"readiness": {"type": "telepathy"}}}}

        with pytest.raises(ConfigError, match="telepathy"):
            parse_service_specs(services)

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="unknown keys: imagee"):
            parse_service_specs({"services": {"app": {"imagee": "x"}}})

    def test_http_readiness_requires_url(self):
        with pytest.raises(ConfigError, match="requires 'url'"):
            parse_service_specs({"services": {"app": {"readiness": {"type": "http-endpoint"}}}})

    def test_readiness_defaults_per_kind(self):
        config = {
            "readiness": {"defaults": {"data-store": {"interval": 1, "timeout": 9}}},
            "services": {"db": {"readiness": {"type": "data-store", "command": ["redis-cli", "ping"]}}},
        }

        spec = parse_service_specs(config)[0]

        assert spec.readiness[0].command == ("redis-cli", "ping")
        assert (spec.readiness[0].interval, spec.readiness[0].timeout) == (1, 9)

    def test_compose_service_defaults_to_name(self):
        spec = parse_service_specs({"services": {"redis": {"image": "redis"}}})[0]

        assert spec.compose_service == "redis"
        assert spec.build is False


class TestExpandPlaceholders:
    def test_both_forms(self):
        assert expand_placeholders("$A-${B}", {"A": "1", "B": "2"}, "test") == "1-2"

    def test_empty_value_counts_as_missing(self):
        with pytest.raises(ConfigError, match="A"):
            expand_placeholders("$A", {"A": ""}, "test")

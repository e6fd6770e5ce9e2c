"""
Deployment configuration loading.

Packaged defaults (defaults.toml) are deep-merged with an optional project
file (wispctl.toml) next to docker-compose.yml. Project keys win at every
nesting level; lists and scalars replace.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import tomllib
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Mapping, Optional

import tomli_w

from .config_constants import DOCKER_COMPOSE_FILE, PACKAGED_DEFAULTS, PROJECT_CONFIG
from .errors import ConfigError
from .models import ReadinessKind, ReadinessSignal, ServiceSpec

logger = logging.getLogger(__name__)

# Sections whose placeholders refer to runtime (.env) values and are
# expanded late, when the runtime configuration exists.
LATE_EXPANDED_SECTIONS = ("services",)

SERVICE_KEYS = {
    "compose_service", "image", "build", "depends_on", "readiness", "build_command",
    "context", "dockerfile", "base_image_ref", "base_image_arg", "runs",
}
READINESS_KEYS = {"type", "command", "url", "verify_tls", "interval", "timeout"}


def parse_toml(file_path: str | Path) -> dict:
    """
    Parse a TOML configuration file.
    """
    path = Path(file_path)
    if not path.exists():
        raise ConfigError(f"TOML file not found: {file_path}")

    with open(path, 'rb') as f:
        try:
            return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Failed to parse TOML from {path}: {e}") from e


def parse_toml_string(toml_text: str, source: str) -> dict:
    """
    Parse TOML from a string with fail-fast error context.
    """
    try:
        return tomllib.loads(toml_text)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse TOML from {source}: {e}") from e


def deep_merge_configs(base_config: dict, project_config: dict) -> dict:
    """
    Deep merge packaged defaults and project overrides (key-level merge).
    """
    result = base_config.copy()

    for key, value in project_config.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge_configs(result[key], value)
        else:
            # Scalars, lists, and new keys
            if key in result:
                logger.debug(f"  Override: {key} = {value} (was: {result[key]})")
            result[key] = value
    return result


ENV_VAR_PATTERN = re.compile(r"\$(\w+)|\$\{([^}]+)\}")


def expand_placeholders(raw_text: str, values: Mapping[str, str], source: str) -> str:
    """
    Expand $VAR / ${VAR} from values; fail-fast on missing values.
    """
    missing = set()

    def _replace(match: re.Match) -> str:
        var_name = match.group(1) or match.group(2)
        value = values.get(var_name)
        if value is None or value == "":
            missing.add(var_name)
            return match.group(0)
        return str(value)

    expanded = ENV_VAR_PATTERN.sub(_replace, raw_text)

    if missing:
        missing_list = ", ".join(sorted(missing))
        raise ConfigError(f"Missing required values in {source}: {missing_list}")

    return expanded


def expand_config_values(value: Any, values: Mapping[str, str], source: str, path: str = "") -> Any:
    """Recursively expand placeholders in every string of a config subtree."""
    if isinstance(value, dict):
        return {
            k: (v if not path and k in LATE_EXPANDED_SECTIONS
                else expand_config_values(v, values, source, f"{path}.{k}" if path else k))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [expand_config_values(v, values, source, path) for v in value]
    if isinstance(value, str) and "$" in value:
        return expand_placeholders(value, values, f"{source} ({path})")
    return value


def load_packaged_defaults() -> dict:
    text = resources.files("wispctl").joinpath(PACKAGED_DEFAULTS).read_text(encoding="utf-8")
    return parse_toml_string(text, f"packaged {PACKAGED_DEFAULTS}")


def _as_command(value: Any, source: str) -> tuple[str, ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        return tuple(shlex.split(value))
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise ConfigError(f"{source} must be a string or a list of strings")


def _parse_readiness(name: str, entries: Any, defaults: dict) -> tuple[ReadinessSignal, ...]:
    if entries is None:
        return ()
    if isinstance(entries, dict):
        entries = [entries]
    if not isinstance(entries, list):
        raise ConfigError(f"services.{name}.readiness must be a table or an array of tables")

    signals = []
    for entry in entries:
        unknown = set(entry) - READINESS_KEYS
        if unknown:
            raise ConfigError(f"services.{name}.readiness has unknown keys: {', '.join(sorted(unknown))}")
        raw_kind = entry.get("type", "none")
        try:
            kind = ReadinessKind(raw_kind)
        except ValueError:
            valid = ", ".join(k.value for k in ReadinessKind)
            raise ConfigError(
                f"services.{name}.readiness type '{raw_kind}' is invalid (expected one of: {valid})"
            ) from None
        if kind is ReadinessKind.NONE:
            continue

        kind_defaults = defaults.get(kind.value, {})
        command = _as_command(entry.get("command"), f"services.{name}.readiness.command")
        url = entry.get("url", "")
        if kind is ReadinessKind.DATA_STORE and not command:
            raise ConfigError(f"services.{name}: data-store readiness requires 'command'")
        if kind is ReadinessKind.HTTP_ENDPOINT and not url:
            raise ConfigError(f"services.{name}: http-endpoint readiness requires 'url'")

        interval = float(entry.get("interval", kind_defaults.get("interval", 2)))
        timeout = float(entry.get("timeout", kind_defaults.get("timeout", 60)))
        if interval <= 0 or timeout <= 0:
            raise ConfigError(f"services.{name}: readiness interval and timeout must be positive")

        signals.append(ReadinessSignal(
            kind=kind,
            command=command,
            url=url,
            verify_tls=bool(entry.get("verify_tls", kind_defaults.get("verify_tls", True))),
            interval=interval,
            timeout=timeout,
        ))
    return tuple(signals)


def parse_service_specs(config: dict) -> list[ServiceSpec]:
    """Build ServiceSpecs from the [services] table, sorted by name."""
    services = config.get("services") or {}
    if not isinstance(services, dict):
        raise ConfigError("[services] must be a table")
    readiness_defaults = (config.get("readiness") or {}).get("defaults", {})

    specs = []
    for name, raw in sorted(services.items()):
        if not isinstance(raw, dict):
            raise ConfigError(f"services.{name} must be a table")
        unknown = set(raw) - SERVICE_KEYS
        if unknown:
            raise ConfigError(f"services.{name} has unknown keys: {', '.join(sorted(unknown))}")

        build = bool(raw.get("build", False))
        image = raw.get("image", "")
        depends_on = raw.get("depends_on", [])
        if isinstance(depends_on, str):
            depends_on = [depends_on]

        if build and not image:
            raise ConfigError(f"services.{name}: locally built services require 'image'")
        if depends_on and not build:
            raise ConfigError(f"services.{name}: 'depends_on' is only valid for locally built services")

        specs.append(ServiceSpec(
            name=name,
            compose_service=raw.get("compose_service", name),
            image=image,
            build=build,
            depends_on=tuple(depends_on),
            readiness=_parse_readiness(name, raw.get("readiness"), readiness_defaults),
            build_command=_as_command(raw.get("build_command"), f"services.{name}.build_command"),
            context=raw.get("context", ""),
            dockerfile=raw.get("dockerfile", "Dockerfile"),
            base_image_ref=raw.get("base_image_ref", ""),
            base_image_arg=raw.get("base_image_arg", "BASE_IMAGE"),
            runs=bool(raw.get("runs", True)),
        ))
    return specs


@dataclass
class DeploymentConfig:
    """Merged deployment configuration for one project directory."""

    raw: dict
    project_dir: Path
    services: list[ServiceSpec] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)

    def section(self, name: str) -> dict:
        value = self.raw.get(name) or {}
        if not isinstance(value, dict):
            raise ConfigError(f"[{name}] must be a table")
        return value

    @property
    def project_name(self) -> str:
        return self.section("deploy").get("project_name") or self.project_dir.resolve().name

    @property
    def compose_file(self) -> Path:
        compose = self.section("deploy").get("compose_file", DOCKER_COMPOSE_FILE)
        return self.project_dir / compose

    def service(self, name: str) -> ServiceSpec:
        for spec in self.services:
            if spec.name == name:
                return spec
        raise ConfigError(f"Unknown service '{name}'")


def load_config(project_dir: str | Path, config_path: Optional[str | Path] = None,
                environ: Optional[Mapping[str, str]] = None) -> DeploymentConfig:
    """
    Load packaged defaults, merge the project file and validate services.

    An explicit config_path must exist; the implicit wispctl.toml is optional.
    """
    project_dir = Path(project_dir)
    merged = load_packaged_defaults()
    sources = [f"packaged {PACKAGED_DEFAULTS}"]

    if config_path is not None:
        project_file = Path(config_path)
        if not project_file.exists():
            raise ConfigError(f"Configuration file not found: {project_file}")
    else:
        project_file = project_dir / PROJECT_CONFIG

    if project_file.exists():
        logger.debug(f"Merging project config: {project_file}")
        merged = deep_merge_configs(merged, parse_toml(project_file))
        sources.append(str(project_file))

    merged = expand_config_values(
        merged, os.environ if environ is None else environ, " + ".join(sources)
    )
    config = DeploymentConfig(raw=merged, project_dir=project_dir, sources=sources)
    config.services = parse_service_specs(merged)
    return config


def dump_config(config: DeploymentConfig) -> str:
    """Render the merged configuration as TOML."""
    return tomli_w.dumps(config.raw)

"""
Runtime configuration (.env) materialization.

The .env file is generated once: secrets, domains, settings and tuning
values rendered through a Jinja2 template and written owner-only. Any later
run parses and reuses the existing file verbatim.
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from importlib import resources
from pathlib import Path
from typing import Callable, Mapping, Optional

from jinja2 import Environment, StrictUndefined, TemplateError

from . import __version__
from .config_constants import ENV_TEMPLATE, PRIVATE_FILE_MODE, RUNTIME_ENV
from .console import info, success, warn
from .errors import ConfigError
from .settings import DeploymentConfig

logger = logging.getLogger(__name__)

MIN_SECRET_BYTES = 16
DOMAIN_PROMPTS = {
    "DASHBOARD_DOMAIN": "Dashboard domain",
    "API_DOMAIN": "API domain",
    "EMAIL_DJANGO_DEFAULT": "Admin email",
}


@dataclass
class MaterializedConfig:
    path: Path
    values: dict[str, str] = field(default_factory=dict)
    generated: bool = False

    def get(self, key: str, default: str = "") -> str:
        return self.values.get(key, default)


def parse_env_file(path: str | Path) -> dict[str, str]:
    """
    Parse a flat KEY=value file.

    Blank lines and comments are skipped; values are kept verbatim apart
    from one pair of matching surrounding quotes.
    """
    values: dict[str, str] = {}
    with open(path, "r", encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export "):].lstrip()
            if "=" not in line:
                raise ConfigError(f"{path}:{lineno}: expected KEY=value, got: {line}")
            key, value = line.split("=", 1)
            key = key.strip()
            if not key:
                raise ConfigError(f"{path}:{lineno}: empty key")
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
                value = value[1:-1]
            values[key] = value
    return values


def generate_secrets(fields: Mapping[str, int],
                     token_factory: Callable[[int], str] = secrets.token_urlsafe) -> dict[str, str]:
    """Generate one random token per field; no two fields share a value."""
    generated: dict[str, str] = {}
    used: set[str] = set()
    for name, nbytes in fields.items():
        try:
            nbytes = int(nbytes)
        except (TypeError, ValueError):
            raise ConfigError(f"materialize.secrets.{name} must be an integer byte length") from None
        if nbytes < MIN_SECRET_BYTES:
            raise ConfigError(
                f"materialize.secrets.{name} is {nbytes} bytes; minimum is {MIN_SECRET_BYTES}"
            )
        value = token_factory(nbytes)
        while value in used:
            logger.debug(f"Secret collision for {name}, regenerating")
            value = token_factory(nbytes)
        used.add(value)
        generated[name] = value
    return generated


def resolve_domains(defaults: Mapping[str, str], overrides: Mapping[str, Optional[str]],
                    interactive: bool, prompt: Callable[[str], str] = input) -> dict[str, str]:
    """Flags win, then interactive answers, then configured defaults."""
    domains = {key: str(value) for key, value in defaults.items()}
    for key, value in overrides.items():
        if value:
            domains[key] = value

    if interactive:
        for key, label in DOMAIN_PROMPTS.items():
            if overrides.get(key):
                continue
            current = domains.get(key, "")
            try:
                answer = prompt(f"{label} [{current}]: ").strip()
            except EOFError:
                warn("No input available; using configured domains")
                break
            if answer:
                domains[key] = answer

    if not domains.get("VPN_DOMAIN"):
        domains["VPN_DOMAIN"] = f"vpn.{domains.get('DASHBOARD_DOMAIN', 'localhost')}"
    return domains


def load_env_template(config: DeploymentConfig) -> str:
    override = config.section("materialize").get("template")
    if override:
        template_path = config.project_dir / override
        if not template_path.exists():
            raise ConfigError(f"Template file not found: {template_path}")
        return template_path.read_text(encoding="utf-8")
    return resources.files("wispctl").joinpath("templates", ENV_TEMPLATE).read_text(encoding="utf-8")


def render_env(template_text: str, context: dict) -> str:
    env = Environment(undefined=StrictUndefined, keep_trailing_newline=True, autoescape=False)
    try:
        return env.from_string(template_text).render(**context)
    except TemplateError as e:
        raise ConfigError(f"Failed to render runtime configuration template: {e}") from e


def write_private_file(path: Path, content: str) -> None:
    """Create path with owner-only permissions; never overwrite."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, PRIVATE_FILE_MODE)
    try:
        os.fchmod(fd, PRIVATE_FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            fd = -1
            f.write(content)
    finally:
        if fd >= 0:
            os.close(fd)


def materialize_configuration(config: DeploymentConfig, *, run_id: str = "",
                              domains: Optional[Mapping[str, Optional[str]]] = None,
                              interactive: bool = False,
                              prompt: Callable[[str], str] = input,
                              token_factory: Callable[[int], str] = secrets.token_urlsafe) -> MaterializedConfig:
    """
    Produce the runtime configuration, reusing an existing .env untouched.
    """
    path = config.project_dir / RUNTIME_ENV
    if path.exists():
        info(f"Reusing existing runtime configuration: {path}")
        mode = path.stat().st_mode & 0o777
        if mode & 0o077:
            warn(f"{path} is readable by other users (mode {mode:o}); consider chmod 600")
        return MaterializedConfig(path=path, values=parse_env_file(path), generated=False)

    section = config.section("materialize")
    domain_values = resolve_domains(section.get("domains", {}), domains or {}, interactive, prompt)
    secret_values = generate_secrets(section.get("secrets", {}), token_factory)

    aliases = {}
    for alias, target in section.get("aliases", {}).items():
        if target not in secret_values:
            raise ConfigError(f"materialize.aliases.{alias} refers to unknown secret '{target}'")
        aliases[alias] = secret_values[target]

    context = {
        "version": __version__,
        "run_id": run_id,
        "generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "domains": domain_values,
        "secrets": secret_values,
        "aliases": aliases,
        "settings": {k: str(v) for k, v in section.get("settings", {}).items()},
        "tuning": {k: str(v) for k, v in section.get("tuning", {}).items()},
    }
    rendered = render_env(load_env_template(config), context)

    try:
        write_private_file(path, rendered)
    except FileExistsError:
        raise ConfigError(f"{path} appeared while generating configuration; re-run to reuse it") from None

    success(f"Generated runtime configuration: {path}")
    info(f"Generated secrets: {', '.join(secret_values)} (stored only in {path.name})")
    return MaterializedConfig(path=path, values=parse_env_file(path), generated=True)

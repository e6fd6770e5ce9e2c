"""
Filename constants for wispctl.

All modules import file and directory names from here instead of
hardcoding strings.

Naming Convention:
- defaults.toml      = Packaged deployment defaults (shipped in the wheel)
- wispctl.toml       = Project overrides (next to docker-compose.yml)
- .env               = Materialized runtime configuration (owner-only, never committed)
"""

# ============================================================================
# Deployment configuration
# ============================================================================

# Packaged defaults (resource inside the wispctl package)
PACKAGED_DEFAULTS = 'defaults.toml'

# Project overrides (deployment directory)
PROJECT_CONFIG = 'wispctl.toml'

# Packaged template used to render the runtime .env
ENV_TEMPLATE = 'env.j2'

# ============================================================================
# Runtime files (deployment directory)
# ============================================================================

RUNTIME_ENV = '.env'
DOCKER_COMPOSE_FILE = 'docker-compose.yml'
LOCK_FILE = '.wispctl.lock'
DIAGNOSTICS_LOG = 'wispctl-diagnostics.log'

# File mode for anything holding secrets
PRIVATE_FILE_MODE = 0o600

"""Site configuration management.

Configuration is loaded from site-config YAML files:
- site.yaml: Site-wide defaults (engine binary, owner, timeouts)
- secrets.yaml: Sensitive variable values (decrypted)
- manifests/*.yaml: Named repository manifests

Site-config discovery order:
1. $REPO_IAC_SITE_CONFIG environment variable
2. ../site-config/ sibling directory (dev workspace)
3. /usr/local/etc/repo-iac/ (FHS-compliant install)

A missing site-config is not an error: defaults apply and manifests are
read from the repository's own manifests/ directory.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

SITE_CONFIG_ENV = 'REPO_IAC_SITE_CONFIG'
FHS_SITE_CONFIG = Path('/usr/local/etc/repo-iac')

# Environment fallback for the provider token variable
TOKEN_ENV_FALLBACK = 'GITHUB_TOKEN'


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class SiteConfig:
    """Resolved site configuration.

    Attributes:
        site_config_dir: Directory the config was loaded from (None = defaults)
        tofu_binary: Engine executable (tofu or terraform)
        owner: Default GitHub owner when a manifest leaves provider.owner empty
        timeout_init: Seconds allowed for engine init
        timeout_plan: Seconds allowed for engine plan
        timeout_apply: Seconds allowed for engine apply/destroy
    """
    site_config_dir: Optional[Path] = None
    tofu_binary: str = 'tofu'
    owner: str = ''
    timeout_init: int = 120
    timeout_plan: int = 300
    timeout_apply: int = 600
    _variables: dict = field(default_factory=dict, repr=False)

    @property
    def name(self) -> str:
        """Short label used in log and report output."""
        if self.site_config_dir is None:
            return 'local'
        return self.site_config_dir.name

    @property
    def manifests_dir(self) -> Path:
        """Directory holding named manifests.

        Falls back to the repository's own manifests/ when the site-config
        has none.
        """
        if self.site_config_dir is not None:
            site_manifests = self.site_config_dir / 'manifests'
            if site_manifests.exists():
                return site_manifests
        return get_base_dir() / 'manifests'

    def get_variable(self, name: str) -> Optional[str]:
        """Get a variable value from secrets.yaml (None if absent)."""
        value = self._variables.get(name)
        return str(value) if value is not None else None

    def set_variable(self, name: str, value: str) -> None:
        """Set a variable value (for tests and local overrides)."""
        self._variables[name] = value


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def _load_secrets(site_config_dir: Path) -> Optional[dict]:
    """Load decrypted secrets from secrets.yaml."""
    secrets_file = site_config_dir / 'secrets.yaml'
    if not secrets_file.exists():
        return None
    return _parse_yaml(secrets_file)


def get_base_dir() -> Path:
    """Get the repo-iac directory."""
    return Path(__file__).parent.parent  # src/ -> repo-iac/


def get_site_config_dir() -> Optional[Path]:
    """Discover site-config directory.

    Returns None when no site-config exists. An explicitly configured
    $REPO_IAC_SITE_CONFIG that does not exist is an error.
    """
    if env_path := os.environ.get(SITE_CONFIG_ENV):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"{SITE_CONFIG_ENV}={env_path} does not exist")

    sibling = get_base_dir().parent / 'site-config'
    if sibling.exists():
        return sibling

    if FHS_SITE_CONFIG.exists():
        return FHS_SITE_CONFIG

    return None


def load_site_config(site_config_path: Optional[str] = None) -> SiteConfig:
    """Load site configuration.

    Merge order is: built-in defaults -> site.yaml defaults; secrets are
    loaded separately and only resolved on demand.

    Args:
        site_config_path: Explicit site-config directory. If None, uses
                          auto-discovery.
    """
    site_dir = Path(site_config_path) if site_config_path else get_site_config_dir()
    config = SiteConfig(site_config_dir=site_dir)
    if site_dir is None:
        logger.debug("No site-config found, using defaults")
        return config

    site_file = site_dir / 'site.yaml'
    if site_file.exists():
        defaults = _parse_yaml(site_file).get('defaults', {}) or {}
        if tofu_binary := defaults.get('tofu_binary'):
            config.tofu_binary = str(tofu_binary)
        if owner := defaults.get('owner'):
            config.owner = str(owner)
        for key in ('timeout_init', 'timeout_plan', 'timeout_apply'):
            if key in defaults:
                try:
                    setattr(config, key, int(defaults[key]))
                except (TypeError, ValueError):
                    raise ConfigError(f"site.yaml: {key} must be an integer, got {defaults[key]!r}")

    secrets = _load_secrets(site_dir) or {}
    config._variables = dict(secrets.get('variables', {}) or {})
    logger.debug(f"Loaded site-config from {site_dir}")
    return config


def resolve_variable(config: SiteConfig, name: str, token_variable: Optional[str] = None) -> Optional[str]:
    """Resolve a declared variable's value.

    Resolution order:
    1. TF_VAR_<name> already in the environment
    2. variables.<name> in secrets.yaml
    3. $GITHUB_TOKEN, for the provider token variable only

    Returns None when the value cannot be resolved.
    """
    if value := os.environ.get(f'TF_VAR_{name}'):
        return value
    if (value := config.get_variable(name)) is not None:
        return value
    if token_variable and name == token_variable:
        return os.environ.get(TOKEN_ENV_FALLBACK) or None
    return None


def build_engine_env(config: SiteConfig, variable_names: list[str],
                     token_variable: Optional[str] = None) -> dict:
    """Build the environment for engine invocations.

    Resolved variable values travel only as TF_VAR_* environment entries.
    Unresolvable variables are left out so the engine reports them itself.
    """
    env = dict(os.environ)
    for name in variable_names:
        value = resolve_variable(config, name, token_variable)
        if value is not None:
            env[f'TF_VAR_{name}'] = value
    return env


def list_manifests(config: SiteConfig) -> list[str]:
    """List available manifest names."""
    manifests_dir = config.manifests_dir
    if not manifests_dir.exists():
        return []
    return sorted(f.stem for f in manifests_dir.glob('*.yaml') if f.is_file())

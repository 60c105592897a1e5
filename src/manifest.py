"""Manifest loading and validation for repository provisioning.

A manifest declares the target state of a single GitHub repository:
the repository itself, collaborators, committed files, branches,
branch protections, deploy keys and Actions secrets. It is translated
into engine resources by provisioner.render.

Schema v1 is the only supported version.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError, SiteConfig, list_manifests

logger = logging.getLogger(__name__)

# Default manifest name when none specified
DEFAULT_MANIFEST = 'default'

SUPPORTED_SCHEMA_VERSIONS = {1}

# Branch GitHub creates for an auto-initialized repository
DEFAULT_SOURCE_BRANCH = 'main'

VALID_PERMISSIONS = {'pull', 'triage', 'push', 'maintain', 'admin'}
VALID_VISIBILITIES = {'public', 'private', 'internal'}
VALID_KEY_ALGORITHMS = {'RSA', 'ECDSA', 'ED25519'}
MIN_RSA_BITS = 2048
MAX_REVIEW_COUNT = 6


@dataclass
class ProviderSpec:
    """Provider binding: account scope and credential variable."""
    owner: str = ''
    token_variable: str = 'github_token'

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ProviderSpec':
        if not data:
            return cls()
        return cls(
            owner=data.get('owner', ''),
            token_variable=data.get('token_variable', 'github_token'),
        )


@dataclass
class VariableSpec:
    """An input variable supplied by the environment."""
    name: str
    description: str = ''
    sensitive: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> 'VariableSpec':
        return cls(
            name=data['name'],
            description=data.get('description', ''),
            sensitive=data.get('sensitive', True),
        )


@dataclass
class RepositorySpec:
    """The repository resource; every other resource references it."""
    name: str
    description: str = ''
    visibility: str = 'private'
    has_issues: bool = True
    has_wiki: bool = False
    has_projects: bool = False
    auto_init: bool = True
    delete_branch_on_merge: bool = True
    vulnerability_alerts: bool = True
    topics: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> 'RepositorySpec':
        return cls(
            name=data['name'],
            description=data.get('description', ''),
            visibility=data.get('visibility', 'private'),
            has_issues=data.get('has_issues', True),
            has_wiki=data.get('has_wiki', False),
            has_projects=data.get('has_projects', False),
            auto_init=data.get('auto_init', True),
            delete_branch_on_merge=data.get('delete_branch_on_merge', True),
            vulnerability_alerts=data.get('vulnerability_alerts', True),
            topics=list(data.get('topics', [])),
        )


@dataclass
class CollaboratorSpec:
    """A named external account granted a fixed permission."""
    username: str
    permission: str = 'push'

    @property
    def name(self) -> str:
        return self.username

    @classmethod
    def from_dict(cls, data: dict) -> 'CollaboratorSpec':
        return cls(
            username=data['username'],
            permission=data.get('permission', 'push'),
        )


@dataclass
class FileSpec:
    """A file committed to a branch.

    Content comes from exactly one of:
        template: Path to a local file (relative to the manifest), read verbatim
        content: Inline literal
    """
    name: str
    path: str
    template: Optional[str] = None
    content: Optional[str] = None
    branch: Optional[str] = None
    commit_message: str = ''
    overwrite_on_create: bool = True

    @property
    def is_template(self) -> bool:
        return self.template is not None

    @classmethod
    def from_dict(cls, data: dict) -> 'FileSpec':
        return cls(
            name=data['name'],
            path=data['path'],
            template=data.get('template'),
            content=data.get('content'),
            branch=data.get('branch'),
            commit_message=data.get('commit_message', ''),
            overwrite_on_create=data.get('overwrite_on_create', True),
        )


@dataclass
class BranchSpec:
    """A non-default branch created after the listed files are committed.

    Attributes:
        name: Branch name
        source_branch: Branch to fork from
        after_files: File names that must exist first (None = all files)
    """
    name: str
    source_branch: str = DEFAULT_SOURCE_BRANCH
    after_files: Optional[list[str]] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'BranchSpec':
        after = data.get('after_files')
        return cls(
            name=data['name'],
            source_branch=data.get('source_branch', DEFAULT_SOURCE_BRANCH),
            after_files=list(after) if after is not None else None,
        )


@dataclass
class ProtectionSpec:
    """Branch protection policy attached to a branch name pattern."""
    name: str
    pattern: str
    required_approving_review_count: int = 1
    require_code_owner_reviews: bool = False
    dismiss_stale_reviews: bool = True
    required_status_checks: list[str] = field(default_factory=list)
    strict: bool = True
    enforce_admins: bool = False
    allows_deletions: bool = False
    allows_force_pushes: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> 'ProtectionSpec':
        return cls(
            name=data['name'],
            pattern=data.get('pattern', data['name']),
            required_approving_review_count=data.get('required_approving_review_count', 1),
            require_code_owner_reviews=data.get('require_code_owner_reviews', False),
            dismiss_stale_reviews=data.get('dismiss_stale_reviews', True),
            required_status_checks=list(data.get('required_status_checks', [])),
            strict=data.get('strict', True),
            enforce_admins=data.get('enforce_admins', False),
            allows_deletions=data.get('allows_deletions', False),
            allows_force_pushes=data.get('allows_force_pushes', False),
        )


@dataclass
class DeployKeySpec:
    """Generated key pair whose public half is registered as a deploy key."""
    name: str
    title: str = ''
    algorithm: str = 'RSA'
    rsa_bits: int = 4096
    ecdsa_curve: str = 'P384'
    read_only: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> 'DeployKeySpec':
        return cls(
            name=data['name'],
            title=data.get('title', data['name']),
            algorithm=str(data.get('algorithm', 'RSA')).upper(),
            rsa_bits=data.get('rsa_bits', 4096),
            ecdsa_curve=data.get('ecdsa_curve', 'P384'),
            read_only=data.get('read_only', True),
        )


@dataclass
class SecretSpec:
    """An Actions secret; the value comes from exactly one source."""
    name: str
    from_variable: Optional[str] = None
    from_deploy_key: Optional[str] = None
    value: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'SecretSpec':
        return cls(
            name=data['name'],
            from_variable=data.get('from_variable'),
            from_deploy_key=data.get('from_deploy_key'),
            value=data.get('value'),
        )


@dataclass
class ManifestSettings:
    """Optional settings for manifest execution.

    Attributes:
        cleanup_on_failure: Destroy on failed test run (default: True)
        parallelism: Engine parallelism for independent resources (default: 10)
        lock_timeout: Engine state lock timeout (default: '0s')
    """
    cleanup_on_failure: bool = True
    parallelism: int = 10
    lock_timeout: str = '0s'

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ManifestSettings':
        if not data:
            return cls()
        return cls(
            cleanup_on_failure=data.get('cleanup_on_failure', True),
            parallelism=data.get('parallelism', 10),
            lock_timeout=data.get('lock_timeout', '0s'),
        )


@dataclass
class Manifest:
    """Repository provisioning manifest.

    Attributes:
        schema_version: Manifest schema version
        name: Manifest name (also names the local workspace)
        repository: The repository definition
        source_path: Path the manifest was loaded from (templates resolve against it)
    """
    schema_version: int
    name: str
    repository: RepositorySpec
    description: str = ''
    provider: ProviderSpec = field(default_factory=ProviderSpec)
    variables: list[VariableSpec] = field(default_factory=list)
    collaborators: list[CollaboratorSpec] = field(default_factory=list)
    files: list[FileSpec] = field(default_factory=list)
    branches: list[BranchSpec] = field(default_factory=list)
    default_branch: Optional[str] = None
    protections: list[ProtectionSpec] = field(default_factory=list)
    deploy_keys: list[DeployKeySpec] = field(default_factory=list)
    secrets: list[SecretSpec] = field(default_factory=list)
    settings: ManifestSettings = field(default_factory=ManifestSettings)
    source_path: Optional[Path] = None

    @property
    def base_dir(self) -> Path:
        """Directory that template paths are relative to."""
        if self.source_path is not None:
            return self.source_path.parent
        return Path.cwd()

    @property
    def sensitive_variables(self) -> list[str]:
        return [v.name for v in self.variables if v.sensitive]

    def get_file(self, name: str) -> FileSpec:
        """Get a file definition by name.

        Raises:
            KeyError: If no file has that name
        """
        for f in self.files:
            if f.name == name:
                return f
        raise KeyError(name)

    def template_paths(self) -> list[Path]:
        """Absolute paths of all template files the manifest reads."""
        return [self.base_dir / f.template for f in self.files if f.template]

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Manifest':
        """Create Manifest from dictionary.

        Raises:
            ConfigError: If manifest is invalid
        """
        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ConfigError(
                f"Unsupported manifest schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        if 'name' not in data:
            raise ConfigError("Manifest missing required field: name")
        repo_data = data.get('repository')
        if not isinstance(repo_data, dict) or 'name' not in repo_data:
            raise ConfigError("Manifest missing required field: repository.name")

        try:
            manifest = cls(
                schema_version=schema_version,
                name=data['name'],
                description=data.get('description', ''),
                repository=RepositorySpec.from_dict(repo_data),
                provider=ProviderSpec.from_dict(data.get('provider')),
                variables=[VariableSpec.from_dict(v) for v in data.get('variables', [])],
                collaborators=[CollaboratorSpec.from_dict(c) for c in data.get('collaborators', [])],
                files=[FileSpec.from_dict(f) for f in data.get('files', [])],
                branches=[BranchSpec.from_dict(b) for b in data.get('branches', [])],
                default_branch=data.get('default_branch'),
                protections=[ProtectionSpec.from_dict(p) for p in data.get('protections', [])],
                deploy_keys=[DeployKeySpec.from_dict(k) for k in data.get('deploy_keys', [])],
                secrets=[SecretSpec.from_dict(s) for s in data.get('secrets', [])],
                settings=ManifestSettings.from_dict(data.get('settings')),
                source_path=source_path,
            )
        except KeyError as e:
            raise ConfigError(f"Manifest entry missing required field: {e.args[0]}")

        _validate_manifest(manifest)
        return manifest

    @classmethod
    def from_json(cls, json_str: str) -> 'Manifest':
        """Create Manifest from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid manifest JSON: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Manifest JSON must be an object")
        return cls.from_dict(data)


def _check_unique(section: str, names: list[str]) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise ConfigError(f"Duplicate {section} name: '{name}'")
        seen.add(name)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_manifest(manifest: Manifest) -> None:
    """Validate cross-references and value ranges.

    Raises:
        ConfigError: If validation fails
    """
    _check_unique('variable', [v.name for v in manifest.variables])
    _check_unique('collaborator', [c.username for c in manifest.collaborators])
    _check_unique('file', [f.name for f in manifest.files])
    _check_unique('file path', [f.path for f in manifest.files])
    _check_unique('branch', [b.name for b in manifest.branches])
    _check_unique('protection', [p.name for p in manifest.protections])
    _check_unique('deploy key', [k.name for k in manifest.deploy_keys])
    _check_unique('secret', [s.name for s in manifest.secrets])

    if manifest.repository.visibility not in VALID_VISIBILITIES:
        raise ConfigError(
            f"Repository visibility '{manifest.repository.visibility}' is invalid. "
            f"Valid: {', '.join(sorted(VALID_VISIBILITIES))}"
        )

    variable_names = {v.name for v in manifest.variables}
    if manifest.provider.token_variable not in variable_names:
        raise ConfigError(
            f"Provider token variable '{manifest.provider.token_variable}' is not declared in variables"
        )

    for collab in manifest.collaborators:
        if collab.permission not in VALID_PERMISSIONS:
            raise ConfigError(
                f"Collaborator '{collab.username}' has invalid permission '{collab.permission}'. "
                f"Valid: {', '.join(sorted(VALID_PERMISSIONS))}"
            )

    branch_names = {b.name for b in manifest.branches}
    known_branches = branch_names | {DEFAULT_SOURCE_BRANCH}

    for f in manifest.files:
        if (f.template is None) == (f.content is None):
            raise ConfigError(f"File '{f.name}' requires exactly one of 'template' or 'content'")
        for source_key, value in (('template', f.template), ('content', f.content)):
            if value is not None and not isinstance(value, str):
                raise ConfigError(f"File '{f.name}': {source_key} must be a string, got {type(value).__name__}")
        if f.branch is not None and f.branch not in known_branches:
            raise ConfigError(f"File '{f.name}' targets unknown branch '{f.branch}'")
        if f.branch in branch_names:
            raise ConfigError(
                f"File '{f.name}' targets branch '{f.branch}', which is created after files are committed"
            )

    file_names = {f.name for f in manifest.files}
    for branch in manifest.branches:
        if branch.name == DEFAULT_SOURCE_BRANCH:
            raise ConfigError(f"Branch '{branch.name}' already exists as the initial default branch")
        if branch.source_branch not in known_branches or branch.source_branch == branch.name:
            raise ConfigError(f"Branch '{branch.name}' has invalid source branch '{branch.source_branch}'")
        for file_name in branch.after_files or []:
            if file_name not in file_names:
                raise ConfigError(f"Branch '{branch.name}' waits on unknown file '{file_name}'")

    if manifest.default_branch is not None and manifest.default_branch not in known_branches:
        raise ConfigError(f"Default branch '{manifest.default_branch}' is not a declared branch")

    for prot in manifest.protections:
        count = prot.required_approving_review_count
        if not _is_int(count) or not 0 <= count <= MAX_REVIEW_COUNT:
            raise ConfigError(
                f"Protection '{prot.name}': required_approving_review_count must be "
                f"between 0 and {MAX_REVIEW_COUNT}, got {count!r}"
            )

    for key in manifest.deploy_keys:
        if key.algorithm not in VALID_KEY_ALGORITHMS:
            raise ConfigError(
                f"Deploy key '{key.name}' has unknown algorithm '{key.algorithm}'. "
                f"Valid: {', '.join(sorted(VALID_KEY_ALGORITHMS))}"
            )
        if key.algorithm == 'RSA' and (not _is_int(key.rsa_bits) or key.rsa_bits < MIN_RSA_BITS):
            raise ConfigError(
                f"Deploy key '{key.name}': rsa_bits must be an integer of at least {MIN_RSA_BITS}, "
                f"got {key.rsa_bits!r}"
            )

    key_names = {k.name for k in manifest.deploy_keys}
    for secret in manifest.secrets:
        sources = [s for s in (secret.from_variable, secret.from_deploy_key, secret.value) if s is not None]
        if len(sources) != 1:
            raise ConfigError(
                f"Secret '{secret.name}' requires exactly one of 'from_variable', 'from_deploy_key' or 'value'"
            )
        if secret.from_variable is not None and secret.from_variable not in variable_names:
            raise ConfigError(f"Secret '{secret.name}' references unknown variable '{secret.from_variable}'")
        if secret.from_deploy_key is not None and secret.from_deploy_key not in key_names:
            raise ConfigError(f"Secret '{secret.name}' references unknown deploy key '{secret.from_deploy_key}'")

    parallelism = manifest.settings.parallelism
    if not _is_int(parallelism) or parallelism < 1:
        raise ConfigError(f"settings.parallelism must be a positive integer, got {parallelism!r}")


class ManifestLoader:
    """Loads manifests from the site-config (or bundled) manifests/ directory."""

    def __init__(self, config: SiteConfig):
        self.config = config
        self.manifests_dir = config.manifests_dir

    def list_manifests(self) -> list[str]:
        """List available manifest names."""
        return list_manifests(self.config)

    def load(self, name: str) -> Manifest:
        """Load manifest by name.

        Raises:
            ConfigError: If manifest not found or invalid
        """
        path = self.manifests_dir / f'{name}.yaml'
        if not path.exists():
            available = self.list_manifests()
            raise ConfigError(
                f"Manifest '{name}' not found at {path}. "
                f"Available: {', '.join(available) if available else 'none'}"
            )
        return self.load_file(path)

    def load_file(self, path: Path) -> Manifest:
        """Load manifest from specific file path.

        Raises:
            ConfigError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigError(f"Manifest file not found: {path}")

        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in manifest {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Manifest {path} must be a YAML object (dict)")

        logger.debug(f"Loaded manifest from {path}")
        return Manifest.from_dict(data, source_path=path.resolve())


def load_manifest(
    config: SiteConfig,
    name: Optional[str] = None,
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
) -> Manifest:
    """Load manifest from various sources.

    Priority:
    1. json_str - Inline JSON
    2. file_path - Specific file path
    3. name - Named manifest from manifests/
    4. Default manifest

    Raises:
        ConfigError: If manifest not found or invalid
    """
    if json_str:
        return Manifest.from_json(json_str)
    loader = ManifestLoader(config)
    if file_path:
        return loader.load_file(Path(file_path))
    return loader.load(name or DEFAULT_MANIFEST)


def summarize(manifest: Manifest) -> dict[str, Any]:
    """Count declared entities per section."""
    return {
        'collaborators': len(manifest.collaborators),
        'files': len(manifest.files),
        'branches': len(manifest.branches),
        'protections': len(manifest.protections),
        'deploy_keys': len(manifest.deploy_keys),
        'secrets': len(manifest.secrets),
    }

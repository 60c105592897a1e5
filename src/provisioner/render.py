"""Render a Manifest into engine resources and JSON configuration.

Produces the engine's JSON configuration syntax (main.tf.json) for the
integrations/github and hashicorp/tls providers. Values that reference
other resources are engine interpolations; the graph module derives
implicit dependency edges from them.
"""

import json
import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from config import ConfigError, SiteConfig
from manifest import DEFAULT_SOURCE_BRANCH, Manifest

logger = logging.getLogger(__name__)

GITHUB_PROVIDER = {'source': 'integrations/github', 'version': '~> 6.0'}
TLS_PROVIDER = {'source': 'hashicorp/tls', 'version': '~> 4.0'}

CONFIG_FILENAME = 'main.tf.json'
TEMPLATES_DIRNAME = 'templates'

# Resource name of the single repository resource
REPO_RESOURCE = 'repo'

# ${type.name.attr} not preceded by an escaping '$'
_REFERENCE_RE = re.compile(r'(?<!\$)\$\{([a-z][a-z0-9_]*)\.([A-Za-z_][A-Za-z0-9_-]*)\.')
_NON_REFERENCE_PREFIXES = {'var', 'path', 'local', 'data', 'module', 'terraform', 'each', 'count', 'self'}


@dataclass
class Resource:
    """A declared engine resource.

    Attributes:
        type: Provider resource type (e.g., github_branch)
        name: Resource name, unique per type
        attributes: Declared attribute values
        depends_on: Explicit prerequisite addresses
    """
    type: str
    name: str
    attributes: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    @property
    def address(self) -> str:
        return f'{self.type}.{self.name}'

    def references(self) -> list[str]:
        """Addresses referenced through interpolations, in first-seen order."""
        found: list[str] = []
        for rtype, rname in _REFERENCE_RE.findall(json.dumps(self.attributes)):
            if rtype in _NON_REFERENCE_PREFIXES:
                continue
            addr = f'{rtype}.{rname}'
            if addr not in found:
                found.append(addr)
        return found

    def body(self) -> dict:
        """Resource body as it appears in the JSON configuration."""
        body = dict(self.attributes)
        if self.depends_on:
            body['depends_on'] = list(self.depends_on)
        return body

    def __repr__(self) -> str:
        return f"Resource({self.address})"


def resource_name(value: str) -> str:
    """Derive a valid engine resource name from an arbitrary label."""
    name = re.sub(r'[^a-z0-9_-]', '_', value.lower())
    if not name or not (name[0].isalpha() or name[0] == '_'):
        name = f'_{name}'
    return name


def ref(resource_type: str, name: str, attribute: str) -> str:
    """Interpolation referencing another resource's attribute."""
    return '${%s.%s.%s}' % (resource_type, name, attribute)


def var_ref(name: str) -> str:
    return '${var.%s}' % name


def escape_template(text: str) -> str:
    """Escape engine template sequences so a literal is used verbatim."""
    return text.replace('${', '$${').replace('%{', '%%{')


def template_target(template: str) -> str:
    """Workspace-relative path a template file is copied to."""
    return f'{TEMPLATES_DIRNAME}/{Path(template).name}'


def _repo_name_ref() -> str:
    return ref('github_repository', REPO_RESOURCE, 'name')


def render_resources(manifest: Manifest) -> list[Resource]:
    """Translate a manifest into engine resources in declaration order."""
    resources: list[Resource] = []
    repo = manifest.repository

    repo_attrs: dict[str, Any] = {
        'name': repo.name,
        'description': repo.description,
        'visibility': repo.visibility,
        'has_issues': repo.has_issues,
        'has_wiki': repo.has_wiki,
        'has_projects': repo.has_projects,
        'auto_init': repo.auto_init,
        'delete_branch_on_merge': repo.delete_branch_on_merge,
        'vulnerability_alerts': repo.vulnerability_alerts,
    }
    if repo.topics:
        repo_attrs['topics'] = list(repo.topics)
    resources.append(Resource('github_repository', REPO_RESOURCE, repo_attrs))

    for collab in manifest.collaborators:
        resources.append(Resource(
            'github_repository_collaborator',
            resource_name(collab.username),
            {
                'repository': _repo_name_ref(),
                'username': collab.username,
                'permission': collab.permission,
            },
        ))

    file_addresses: dict[str, str] = {}
    seen_targets: set[str] = set()
    for f in manifest.files:
        if f.template is not None:
            target = template_target(f.template)
            if target in seen_targets:
                raise ConfigError(f"File '{f.name}': template name '{Path(f.template).name}' is used twice")
            seen_targets.add(target)
            content = '${file("${path.module}/%s")}' % target
        else:
            content = escape_template(f.content or '')
        file_resource = Resource(
            'github_repository_file',
            resource_name(f.name),
            {
                'repository': _repo_name_ref(),
                'branch': f.branch or DEFAULT_SOURCE_BRANCH,
                'file': f.path,
                'content': content,
                'commit_message': f.commit_message or f'Add {f.path}',
                'overwrite_on_create': f.overwrite_on_create,
            },
        )
        resources.append(file_resource)
        file_addresses[f.name] = file_resource.address

    all_file_addresses = list(file_addresses.values())
    declared_branches = {b.name for b in manifest.branches}
    branch_addresses: dict[str, str] = {}
    for branch in manifest.branches:
        after = branch.after_files if branch.after_files is not None else list(file_addresses)
        source = branch.source_branch
        if source in declared_branches:
            source = ref('github_branch', resource_name(source), 'branch')
        branch_resource = Resource(
            'github_branch',
            resource_name(branch.name),
            {
                'repository': _repo_name_ref(),
                'branch': branch.name,
                'source_branch': source,
            },
            depends_on=[file_addresses[name] for name in after],
        )
        resources.append(branch_resource)
        branch_addresses[branch.name] = branch_resource.address

    if manifest.default_branch is not None:
        if manifest.default_branch in branch_addresses:
            target_branch = ref('github_branch', resource_name(manifest.default_branch), 'branch')
        else:
            target_branch = manifest.default_branch
        resources.append(Resource(
            'github_branch_default',
            'default',
            {
                'repository': _repo_name_ref(),
                'branch': target_branch,
            },
        ))

    for prot in manifest.protections:
        attrs: dict[str, Any] = {
            'repository_id': ref('github_repository', REPO_RESOURCE, 'node_id'),
            'pattern': prot.pattern,
            'enforce_admins': prot.enforce_admins,
            'allows_deletions': prot.allows_deletions,
            'allows_force_pushes': prot.allows_force_pushes,
            'required_pull_request_reviews': [{
                'required_approving_review_count': prot.required_approving_review_count,
                'require_code_owner_reviews': prot.require_code_owner_reviews,
                'dismiss_stale_reviews': prot.dismiss_stale_reviews,
            }],
        }
        if prot.required_status_checks:
            attrs['required_status_checks'] = [{
                'strict': prot.strict,
                'contexts': list(prot.required_status_checks),
            }]
        depends_on = list(all_file_addresses)
        if prot.pattern in branch_addresses:
            depends_on.append(branch_addresses[prot.pattern])
        resources.append(Resource(
            'github_branch_protection',
            resource_name(prot.name),
            attrs,
            depends_on=depends_on,
        ))

    for key in manifest.deploy_keys:
        key_attrs: dict[str, Any] = {'algorithm': key.algorithm}
        if key.algorithm == 'RSA':
            key_attrs['rsa_bits'] = key.rsa_bits
        elif key.algorithm == 'ECDSA':
            key_attrs['ecdsa_curve'] = key.ecdsa_curve
        name = resource_name(key.name)
        resources.append(Resource('tls_private_key', name, key_attrs))
        resources.append(Resource(
            'github_repository_deploy_key',
            name,
            {
                'repository': _repo_name_ref(),
                'title': key.title,
                'key': ref('tls_private_key', name, 'public_key_openssh'),
                'read_only': key.read_only,
            },
        ))

    for secret in manifest.secrets:
        if secret.from_variable is not None:
            value = var_ref(secret.from_variable)
        elif secret.from_deploy_key is not None:
            value = ref('tls_private_key', resource_name(secret.from_deploy_key), 'private_key_openssh')
        else:
            value = escape_template(secret.value or '')
        resources.append(Resource(
            'github_actions_secret',
            resource_name(secret.name),
            {
                'repository': _repo_name_ref(),
                'secret_name': secret.name,
                'plaintext_value': value,
            },
        ))

    return resources


def render_document(manifest: Manifest, config: Optional[SiteConfig] = None,
                    resources: Optional[list[Resource]] = None) -> dict:
    """Render the complete engine configuration document.

    Args:
        manifest: Manifest to render
        config: Site config supplying a fallback owner
        resources: Pre-rendered resources (rendered from manifest if None)

    Raises:
        ConfigError: If no owner is configured or two labels render to the same address
    """
    if resources is None:
        resources = render_resources(manifest)

    owner = manifest.provider.owner or (config.owner if config else '')
    if not owner:
        raise ConfigError(
            f"Manifest '{manifest.name}' has no provider.owner and site.yaml defines no owner"
        )

    required_providers = {'github': dict(GITHUB_PROVIDER)}
    if any(r.type == 'tls_private_key' for r in resources):
        required_providers['tls'] = dict(TLS_PROVIDER)

    variables = {}
    for v in manifest.variables:
        block: dict[str, Any] = {'type': 'string', 'sensitive': v.sensitive}
        if v.description:
            block['description'] = v.description
        variables[v.name] = block

    resource_blocks: dict[str, dict] = {}
    for r in resources:
        blocks = resource_blocks.setdefault(r.type, {})
        if r.name in blocks:
            raise ConfigError(f"Duplicate resource address: '{r.address}'")
        blocks[r.name] = r.body()

    outputs: dict[str, dict] = {
        'repository_full_name': {'value': ref('github_repository', REPO_RESOURCE, 'full_name')},
        'repository_url': {'value': ref('github_repository', REPO_RESOURCE, 'html_url')},
    }
    for r in resources:
        if r.type == 'tls_private_key':
            outputs[f'deploy_key_{r.name}_public_key'] = {
                'value': ref('tls_private_key', r.name, 'public_key_openssh'),
            }

    return {
        'terraform': {'required_providers': required_providers},
        'provider': {
            'github': {
                'owner': owner,
                'token': var_ref(manifest.provider.token_variable),
            },
        },
        'variable': variables,
        'resource': resource_blocks,
        'output': outputs,
    }


def write_workspace(manifest: Manifest, work_dir: Path, config: Optional[SiteConfig] = None) -> Path:
    """Write the configuration and copy template files into work_dir.

    Returns:
        Path to the written configuration file

    Raises:
        ConfigError: If a template file is missing
    """
    document = render_document(manifest, config)
    work_dir.mkdir(parents=True, exist_ok=True)

    templates_dir = work_dir / TEMPLATES_DIRNAME
    if templates_dir.exists():
        shutil.rmtree(templates_dir)

    for f in manifest.files:
        if f.template is None:
            continue
        source = manifest.base_dir / f.template
        if not source.is_file():
            raise ConfigError(f"Template for file '{f.name}' not found: {source}")
        target = work_dir / template_target(f.template)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        logger.debug(f"Copied template {source} -> {target}")

    config_path = work_dir / CONFIG_FILENAME
    with open(config_path, 'w', encoding='utf-8') as fh:
        json.dump(document, fh, indent=2)
        fh.write('\n')
    logger.debug(f"Wrote engine configuration to {config_path}")
    return config_path

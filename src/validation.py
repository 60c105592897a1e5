"""Pre-flight and structural validation for repository manifests.

Pre-flight checks run before engine verbs, catching configuration issues
early with actionable error messages. Structural checks inspect the
rendered resource graph for the ordering and policy properties the
manifest is expected to hold.
"""

import logging
import re
import shutil
from pathlib import Path
from typing import Optional

from config import SiteConfig, resolve_variable
from manifest import Manifest
from provisioner.graph import ResourceGraph
from provisioner.render import GITHUB_PROVIDER

logger = logging.getLogger(__name__)

CODEOWNERS_PATHS = {'CODEOWNERS', '.github/CODEOWNERS', 'docs/CODEOWNERS'}


# -----------------------------------------------------------------------------
# Engine and Input Validation
# -----------------------------------------------------------------------------

def validate_engine_installed(config: SiteConfig) -> list[str]:
    """Check the engine binary is on PATH."""
    if shutil.which(config.tofu_binary) is None:
        return [
            f"Engine binary '{config.tofu_binary}' not found on PATH\n"
            f"  Install OpenTofu, or set defaults.tofu_binary in site.yaml"
        ]
    return []


def validate_variables(manifest: Manifest, config: SiteConfig) -> list[str]:
    """Check every sensitive variable can be resolved.

    Values are never included in messages.
    """
    errors = []
    for name in manifest.sensitive_variables:
        if resolve_variable(config, name, manifest.provider.token_variable) is None:
            hint = f"export TF_VAR_{name}=... or set variables.{name} in secrets.yaml"
            if name == manifest.provider.token_variable:
                hint += " (GITHUB_TOKEN is also accepted)"
            errors.append(f"Variable '{name}' is not set\n  Fix: {hint}")
    return errors


def validate_templates(manifest: Manifest) -> list[str]:
    """Check template files referenced by the manifest exist."""
    errors = []
    for f in manifest.files:
        if f.template is None:
            continue
        path = manifest.base_dir / f.template
        if not path.is_file():
            errors.append(f"File '{f.name}' template not found: {path}")
    return errors


def validate_owner(manifest: Manifest, config: SiteConfig) -> list[str]:
    if not manifest.provider.owner and not config.owner:
        return ["No GitHub owner configured\n  Fix: set provider.owner in the manifest or defaults.owner in site.yaml"]
    return []


# -----------------------------------------------------------------------------
# Provider Lockfile Validation
# -----------------------------------------------------------------------------

def parse_lockfile_version(lockfile: Path) -> Optional[str]:
    """Extract the integrations/github version from .terraform.lock.hcl.

    Parses:
        provider "registry.opentofu.org/integrations/github" {
            version = "6.2.1"
            ...
        }
    """
    if not lockfile.exists():
        return None

    try:
        content = lockfile.read_text()
    except OSError as e:
        logger.warning(f"Cannot read lockfile {lockfile}: {e}")
        return None

    source = re.escape(GITHUB_PROVIDER['source'])
    pattern = r'provider\s+"[^"]*' + source + r'"[^}]*version\s*=\s*"([^"]+)"'
    match = re.search(pattern, content, re.DOTALL)
    if match:
        return match.group(1)
    return None


def _version_tuple(version: str) -> tuple[int, ...]:
    parts = []
    for piece in version.strip().split('.'):
        digits = re.match(r'\d+', piece)
        parts.append(int(digits.group(0)) if digits else 0)
    return tuple(parts)


def version_satisfies(version: str, constraint: str) -> bool:
    """Check a version against a comma-separated constraint list.

    Supports =, !=, >, >=, <, <= and the pessimistic operator ~>.
    """
    current = _version_tuple(version)
    for clause in constraint.split(','):
        clause = clause.strip()
        if not clause:
            continue
        match = re.match(r'^(~>|>=|<=|!=|=|>|<)?\s*(\S+)$', clause)
        if not match:
            logger.warning(f"Unrecognized version constraint: {clause}")
            return True
        op, target_str = match.group(1) or '=', match.group(2)
        target = _version_tuple(target_str)
        width = max(len(current), len(target))
        cur = current + (0,) * (width - len(current))
        tgt = target + (0,) * (width - len(target))

        if op == '~>':
            # ~> 6.0 allows >= 6.0, < 7.0; ~> 6.2.1 allows >= 6.2.1, < 6.3.0
            prefix_len = max(len(target) - 1, 1)
            if cur < tgt or current[:prefix_len] != target[:prefix_len]:
                return False
        elif op == '=' and cur != tgt:
            return False
        elif op == '!=' and cur == tgt:
            return False
        elif op == '>' and not cur > tgt:
            return False
        elif op == '>=' and not cur >= tgt:
            return False
        elif op == '<' and not cur < tgt:
            return False
        elif op == '<=' and not cur <= tgt:
            return False
    return True


def validate_provider_lockfile(lockfile: Path, constraint: Optional[str] = None,
                               auto_fix: bool = True) -> tuple[list[str], list[str]]:
    """Validate the workspace lockfile against the github provider constraint.

    The constraint defaults to the one the next render writes, so a lock
    left behind by an older provider pin is caught before init runs.

    When the locked version no longer satisfies the constraint:
    - auto_fix=True: Delete the stale lockfile (regenerated on next init)
    - auto_fix=False: Return an error message with fix instructions

    Returns:
        Tuple of (errors, fixed)
    """
    errors: list[str] = []
    fixed: list[str] = []

    constraint = constraint or GITHUB_PROVIDER['version']
    locked = parse_lockfile_version(lockfile)
    if not locked:
        return errors, fixed

    if version_satisfies(locked, constraint):
        logger.debug(f"Lockfile github {locked} satisfies {constraint}")
        return errors, fixed

    if auto_fix:
        try:
            lockfile.unlink()
        except OSError as e:
            errors.append(f"Cannot clear stale lockfile {lockfile}: {e}")
        else:
            msg = f"github {locked} -> {constraint}"
            fixed.append(msg)
            logger.info(f"Cleared stale lockfile: {msg}")
    else:
        errors.append(
            f"Stale provider lockfile {lockfile}\n"
            f"  Locked: {locked}, Required: {constraint}\n"
            f"  Fix: rm {lockfile}"
        )
    return errors, fixed


# -----------------------------------------------------------------------------
# Structural Validation
# -----------------------------------------------------------------------------

def validate_structure(manifest: Manifest, graph: ResourceGraph) -> list[str]:
    """Check ordering and policy properties of the rendered graph.

    - every branch lists its files as explicit prerequisites
    - every branch protection lists all file resources as prerequisites
    - protections requiring code-owner review have a CODEOWNERS file
    - deploy keys are registered read-only
    """
    errors = []
    file_addresses = {n.address for n in graph.by_type('github_repository_file')}

    for node in graph.by_type('github_branch'):
        explicit = set(graph.explicit_dependencies(node.address))
        branch = next(b for b in manifest.branches if b.name == node.resource.attributes['branch'])
        if branch.after_files is None and not file_addresses <= explicit:
            missing = sorted(file_addresses - explicit)
            errors.append(f"{node.address} is not ordered after {', '.join(missing)}")

    for node in graph.by_type('github_branch_protection'):
        missing = sorted(file_addresses - set(graph.explicit_dependencies(node.address)))
        if missing:
            errors.append(f"{node.address} is not ordered after {', '.join(missing)}")

    codeowners = any(f.path in CODEOWNERS_PATHS for f in manifest.files)
    for prot in manifest.protections:
        if prot.require_code_owner_reviews and not codeowners:
            errors.append(
                f"Protection '{prot.name}' requires code-owner review but no CODEOWNERS file is declared"
            )

    for node in graph.by_type('github_repository_deploy_key'):
        if not node.resource.attributes.get('read_only', True):
            errors.append(f"{node.address} grants write access (read_only: false)")

    return errors


# -----------------------------------------------------------------------------
# Combined Validation
# -----------------------------------------------------------------------------

def validate_readiness(manifest: Manifest, config: SiteConfig,
                       lockfile: Optional[Path] = None) -> list[str]:
    """Run all pre-flight checks for an engine verb.

    Args:
        manifest: Loaded manifest
        config: Site configuration
        lockfile: Provider lockfile in the workspace root module

    Returns:
        Combined list of all validation errors
    """
    errors = []
    errors.extend(validate_engine_installed(config))
    errors.extend(validate_owner(manifest, config))
    errors.extend(validate_variables(manifest, config))
    errors.extend(validate_templates(manifest))

    if lockfile is not None:
        lockfile_errors, _ = validate_provider_lockfile(lockfile, auto_fix=True)
        errors.extend(lockfile_errors)

    return errors

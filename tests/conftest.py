"""Shared pytest fixtures for repo-iac tests."""

import copy
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

REPO_ROOT = Path(__file__).parent.parent

PR_TEMPLATE = """## Summary

<!-- What does this change do? -->
"""

NOTIFY_WORKFLOW = """name: notify
on: [push]
jobs:
  notify:
    runs-on: ubuntu-latest
    steps:
      - run: curl -X POST "${{ secrets.SLACK_WEBHOOK_URL }}"
"""

MANIFEST_DATA = {
    'schema_version': 1,
    'name': 'test',
    'provider': {'owner': 'test-org'},
    'variables': [
        {'name': 'github_token'},
        {'name': 'webhook_url'},
    ],
    'repository': {'name': 'test-repo', 'description': 'Test repository'},
    'collaborators': [{'username': 'octocat', 'permission': 'push'}],
    'files': [
        {
            'name': 'pr_template',
            'path': '.github/pull_request_template.md',
            'template': 'templates/pull_request_template.md',
        },
        {
            'name': 'codeowners',
            'path': '.github/CODEOWNERS',
            'content': '* @test-org/maintainers\n',
        },
        {
            'name': 'notify_workflow',
            'path': '.github/workflows/notify.yml',
            'template': 'templates/notify.yml',
        },
    ],
    'branches': [{'name': 'develop', 'source_branch': 'main'}],
    'default_branch': 'develop',
    'protections': [
        {
            'name': 'main',
            'pattern': 'main',
            'required_approving_review_count': 1,
            'require_code_owner_reviews': True,
        },
        {
            'name': 'develop',
            'pattern': 'develop',
            'required_approving_review_count': 2,
        },
    ],
    'deploy_keys': [{'name': 'ci', 'algorithm': 'RSA', 'rsa_bits': 4096}],
    'secrets': [
        {'name': 'SLACK_WEBHOOK_URL', 'from_variable': 'webhook_url'},
        {'name': 'DEPLOY_PRIVATE_KEY', 'from_deploy_key': 'ci'},
    ],
}


@pytest.fixture
def manifest_data():
    """Fresh copy of a complete manifest dict (safe to mutate)."""
    return copy.deepcopy(MANIFEST_DATA)


@pytest.fixture
def manifest_dir(tmp_path):
    """Directory holding the two template files a manifest reads."""
    templates = tmp_path / 'templates'
    templates.mkdir()
    (templates / 'pull_request_template.md').write_text(PR_TEMPLATE)
    (templates / 'notify.yml').write_text(NOTIFY_WORKFLOW)
    return tmp_path


@pytest.fixture
def manifest(manifest_data, manifest_dir):
    """Loaded Manifest whose templates resolve inside manifest_dir."""
    from manifest import Manifest
    return Manifest.from_dict(manifest_data, source_path=manifest_dir / 'test.yaml')


@pytest.fixture
def site_config_dir(tmp_path):
    """Create temporary site-config directory structure.

    Creates minimal site-config with:
    - site.yaml (defaults)
    - secrets.yaml (variable values)
    - manifests/demo.yaml
    """
    site = tmp_path / 'site-config'
    (site / 'manifests' / 'templates').mkdir(parents=True)

    (site / 'site.yaml').write_text("""
defaults:
  tofu_binary: terraform
  owner: site-org
  timeout_init: 60
  timeout_plan: 120
  timeout_apply: 900
""")

    (site / 'secrets.yaml').write_text("""
variables:
  github_token: ghp_sitetoken0123456789
  webhook_url: https://hooks.slack.com/services/T000/B000/XXXX
""")

    (site / 'manifests' / 'demo.yaml').write_text("""
schema_version: 1
name: demo
variables:
  - name: github_token
repository:
  name: demo-repo
files:
  - name: readme
    path: README.md
    template: templates/README.md
""")
    (site / 'manifests' / 'templates' / 'README.md').write_text("# demo\n")

    return site


@pytest.fixture
def clean_env(monkeypatch):
    """Remove variable sources that would leak in from the real environment."""
    for name in ('REPO_IAC_SITE_CONFIG', 'GITHUB_TOKEN', 'TF_VAR_github_token', 'TF_VAR_webhook_url'):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch

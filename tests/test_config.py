#!/usr/bin/env python3
"""Tests for config.py - site configuration and variable resolution.

Tests verify:
1. Site-config directory discovery (env var, sibling, FHS)
2. site.yaml defaults and secrets.yaml variables
3. Variable resolution order and engine environment
4. Manifest listing with repository fallback
"""

import os
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from config import (
    ConfigError,
    SiteConfig,
    _parse_yaml,
    build_engine_env,
    get_site_config_dir,
    list_manifests,
    load_site_config,
    resolve_variable,
)


class TestGetSiteConfigDir:
    """Test site-config discovery logic."""

    def test_env_var_takes_precedence(self, tmp_path):
        """REPO_IAC_SITE_CONFIG env var should take precedence."""
        env_dir = tmp_path / 'env-config'
        env_dir.mkdir()

        with patch.dict(os.environ, {'REPO_IAC_SITE_CONFIG': str(env_dir)}):
            assert get_site_config_dir() == env_dir

    def test_env_var_missing_raises(self):
        """Non-existent env var path should raise ConfigError."""
        with patch.dict(os.environ, {'REPO_IAC_SITE_CONFIG': '/nonexistent/path'}):
            with pytest.raises(ConfigError) as exc_info:
                get_site_config_dir()
            assert 'does not exist' in str(exc_info.value)

    def test_sibling_dir_fallback(self, tmp_path, clean_env):
        """Should find sibling site-config directory."""
        repo = tmp_path / 'repo-iac'
        repo.mkdir()
        sibling = tmp_path / 'site-config'
        sibling.mkdir()

        with patch('config.get_base_dir', return_value=repo):
            assert get_site_config_dir() == sibling

    def test_fhs_fallback(self, tmp_path, clean_env):
        fhs = tmp_path / 'etc-repo-iac'
        fhs.mkdir()
        with patch('config.get_base_dir', return_value=tmp_path / 'repo-iac'), \
             patch('config.FHS_SITE_CONFIG', fhs):
            assert get_site_config_dir() == fhs

    def test_none_when_nothing_exists(self, tmp_path, clean_env):
        with patch('config.get_base_dir', return_value=tmp_path / 'repo-iac'), \
             patch('config.FHS_SITE_CONFIG', tmp_path / 'missing'):
            assert get_site_config_dir() is None


class TestLoadSiteConfig:
    """Test site.yaml and secrets.yaml loading."""

    def test_defaults_without_site_config(self, tmp_path, clean_env):
        with patch('config.get_site_config_dir', return_value=None):
            config = load_site_config()
        assert config.site_config_dir is None
        assert config.tofu_binary == 'tofu'
        assert config.owner == ''
        assert (config.timeout_init, config.timeout_plan, config.timeout_apply) == (120, 300, 600)
        assert config.name == 'local'

    def test_loads_site_yaml_defaults(self, site_config_dir):
        config = load_site_config(str(site_config_dir))
        assert config.tofu_binary == 'terraform'
        assert config.owner == 'site-org'
        assert config.timeout_init == 60
        assert config.timeout_plan == 120
        assert config.timeout_apply == 900
        assert config.name == 'site-config'

    def test_loads_secret_variables(self, site_config_dir):
        config = load_site_config(str(site_config_dir))
        assert config.get_variable('github_token') == 'ghp_sitetoken0123456789'
        assert config.get_variable('missing') is None

    def test_invalid_timeout_raises(self, tmp_path):
        (tmp_path / 'site.yaml').write_text("defaults:\n  timeout_apply: forever\n")
        with pytest.raises(ConfigError, match='timeout_apply'):
            load_site_config(str(tmp_path))

    def test_site_config_without_secrets(self, tmp_path):
        (tmp_path / 'site.yaml').write_text("defaults:\n  owner: solo\n")
        config = load_site_config(str(tmp_path))
        assert config.owner == 'solo'
        assert config.get_variable('github_token') is None

    def test_manifests_dir_prefers_site_config(self, site_config_dir):
        config = load_site_config(str(site_config_dir))
        assert config.manifests_dir == site_config_dir / 'manifests'

    def test_manifests_dir_falls_back_to_repo(self, tmp_path):
        config = SiteConfig(site_config_dir=tmp_path)
        with patch('config.get_base_dir', return_value=tmp_path / 'repo'):
            assert config.manifests_dir == tmp_path / 'repo' / 'manifests'


class TestParseYaml:
    """Test YAML parsing errors."""

    def test_invalid_yaml_raises(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text("defaults: [unclosed\n")
        with pytest.raises(ConfigError, match='Invalid YAML'):
            _parse_yaml(path)

    def test_non_dict_raises(self, tmp_path):
        path = tmp_path / 'list.yaml'
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match='must be a YAML object'):
            _parse_yaml(path)

    def test_empty_file_is_empty_dict(self, tmp_path):
        path = tmp_path / 'empty.yaml'
        path.write_text("")
        assert _parse_yaml(path) == {}


class TestResolveVariable:
    """Test variable resolution order."""

    def test_environment_wins(self, clean_env):
        config = SiteConfig()
        config.set_variable('webhook_url', 'from-secrets')
        clean_env.setenv('TF_VAR_webhook_url', 'from-env')
        assert resolve_variable(config, 'webhook_url') == 'from-env'

    def test_secrets_yaml_used(self, clean_env):
        config = SiteConfig()
        config.set_variable('webhook_url', 'from-secrets')
        assert resolve_variable(config, 'webhook_url') == 'from-secrets'

    def test_github_token_fallback_for_token_variable(self, clean_env):
        clean_env.setenv('GITHUB_TOKEN', 'ghp_fallback')
        config = SiteConfig()
        assert resolve_variable(config, 'github_token', token_variable='github_token') == 'ghp_fallback'

    def test_github_token_not_used_for_other_variables(self, clean_env):
        clean_env.setenv('GITHUB_TOKEN', 'ghp_fallback')
        config = SiteConfig()
        assert resolve_variable(config, 'webhook_url', token_variable='github_token') is None

    def test_unresolved_is_none(self, clean_env):
        assert resolve_variable(SiteConfig(), 'github_token') is None


class TestBuildEngineEnv:
    """Test engine environment construction."""

    def test_sets_tf_var_entries(self, clean_env):
        config = SiteConfig()
        config.set_variable('github_token', 'ghp_x')
        config.set_variable('webhook_url', 'https://hooks')
        env = build_engine_env(config, ['github_token', 'webhook_url'], 'github_token')
        assert env['TF_VAR_github_token'] == 'ghp_x'
        assert env['TF_VAR_webhook_url'] == 'https://hooks'

    def test_unresolved_left_out(self, clean_env):
        env = build_engine_env(SiteConfig(), ['webhook_url'])
        assert 'TF_VAR_webhook_url' not in env

    def test_inherits_process_environment(self, clean_env):
        clean_env.setenv('HTTPS_PROXY', 'http://proxy:3128')
        env = build_engine_env(SiteConfig(), [])
        assert env['HTTPS_PROXY'] == 'http://proxy:3128'


class TestListManifests:
    """Test manifest listing."""

    def test_lists_site_manifests(self, site_config_dir):
        config = load_site_config(str(site_config_dir))
        assert list_manifests(config) == ['demo']

    def test_missing_dir_is_empty(self, tmp_path):
        config = SiteConfig(site_config_dir=tmp_path)
        with patch('config.get_base_dir', return_value=tmp_path / 'repo'):
            assert list_manifests(config) == []

    def test_bundled_manifests(self):
        config = SiteConfig()
        assert 'default' in list_manifests(config)

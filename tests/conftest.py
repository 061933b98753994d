"""Shared pytest fixtures for iac-planner tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

REPO_ROOT = Path(__file__).parent.parent

WEBAPP_TEMPLATE = REPO_ROOT / 'templates' / 'webapp.yaml'

# Storage account, Key Vault secret fed by listKeys, and a site reading endpoints
SMALL_TEMPLATE = """
name: small
parameters:
  appName:
    type: string
    default: demo
  location:
    type: string
    default: westus2
  adminPassword:
    type: secureString
    default: S3cret-Passw0rd!
variables:
  storageName: "${toLower(appName)}stg"
resources:
  storage:
    type: Microsoft.Storage/storageAccounts@2023-01-01
    name: "${storageName}"
    location: "${location}"
    sku: {name: Standard_LRS}
  vault:
    type: Microsoft.KeyVault/vaults@2023-07-01
    name: "${appName}-kv"
    location: "${location}"
    properties:
      adminPassword: "${adminPassword}"
  secret:
    type: Microsoft.KeyVault/vaults/secrets@2023-07-01
    parent: vault
    name: storage-key
    properties:
      value: "${listKeys(storage).keys[0].value}"
  site:
    type: Microsoft.Web/sites@2022-09-01
    name: "${appName}-web"
    location: "${location}"
    properties:
      blob: "${storage.properties.primaryEndpoints.blob}"
      vault: "${vault.name}"
outputs:
  siteHost:
    type: string
    value: "${site.properties.defaultHostName}"
  storageId:
    type: string
    value: "${storage.id}"
"""


@pytest.fixture
def small_template_text():
    """Four-resource template with static and deferred references."""
    return SMALL_TEMPLATE


@pytest.fixture
def small_template():
    """Parsed four-resource template."""
    from template import Template
    return Template.from_text(SMALL_TEMPLATE, name='small')


@pytest.fixture
def webapp_template_path():
    """Path to the bundled webapp template."""
    return WEBAPP_TEMPLATE


@pytest.fixture
def state_dir(tmp_path):
    """Temporary state directory."""
    d = tmp_path / 'states'
    d.mkdir()
    return d


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch, tmp_path):
    """Keep tests from picking up a developer's settings file or env vars."""
    monkeypatch.delenv('IAC_PLANNER_CONFIG', raising=False)
    monkeypatch.delenv('IAC_PLANNER_STATE_DIR', raising=False)
    monkeypatch.setenv('HOME', str(tmp_path / 'home'))
    monkeypatch.chdir(tmp_path)

import pytest

from fleetsync.config.connectors import (
    AWSConfig,
    ConnectorDefinition,
    KubernetesConfig,
    ScopeFilter,
    build_platform_config,
    load_connector_definitions,
)
from fleetsync.config.settings import Settings, StorageBackend
from fleetsync.core.exceptions import ConfigurationException
from fleetsync.models.asset import Platform


class TestScopeFilter:
    def test_empty_include_allows_everything(self):
        assert ScopeFilter().allows("kube-system")
        assert not ScopeFilter().is_restricted

    def test_case_insensitive_include(self):
        scopes = ScopeFilter(include=["Prod", "staging"])
        assert scopes.allows("prod")
        assert scopes.allows("STAGING")
        assert not scopes.allows("dev")

    def test_exclude_wins_over_include(self):
        scopes = ScopeFilter(include=["prod"], exclude=["PROD"])
        assert not scopes.allows("prod")

    def test_filter_keeps_order(self):
        scopes = ScopeFilter(exclude=["kube-system"])
        assert scopes.filter(["default", "kube-system", "apps"]) == ["default", "apps"]

    def test_scalar_and_null_coercion(self):
        scopes = ScopeFilter(include="prod", exclude=None)
        assert scopes.include == ["prod"]
        assert scopes.exclude == []


def test_platform_config_is_frozen():
    config = KubernetesConfig(namespaces={"include": ["apps"]})
    with pytest.raises(Exception):
        config.discover_nodes = False


def test_build_platform_config_validates():
    config = build_platform_config("aws", {"regions": {"include": ["eu-west-1"]}})
    assert isinstance(config, AWSConfig)
    assert config.regions.include == ["eu-west-1"]


def test_build_platform_config_rejects_unknown_keys():
    with pytest.raises(ConfigurationException) as exc_info:
        build_platform_config("aws", {"regoins": ["eu-west-1"]})
    assert exc_info.value.details["errors"]


def test_build_platform_config_requires_fields():
    with pytest.raises(ConfigurationException):
        build_platform_config(Platform.AZURE, {})


def test_build_platform_config_unknown_platform():
    with pytest.raises(ConfigurationException):
        build_platform_config("mainframe", {})


def test_definition_accepts_platform_alias():
    definition = ConnectorDefinition(name="c1", tenant="acme", platform="k8s")
    assert definition.platform == Platform.KUBERNETES
    assert definition.enabled is True


def test_load_connector_definitions(tmp_path):
    path = tmp_path / "connectors.yaml"
    path.write_text(
        "connectors:\n"
        "  - name: prod-aws\n"
        "    tenant: acme\n"
        "    platform: aws\n"
        "    interval: 15m\n"
        "    config:\n"
        "      regions:\n"
        "        include: [us-east-1]\n"
        "  - name: lab\n"
        "    tenant: acme\n"
        "    platform: vsphere\n"
        "    enabled: false\n"
        "    config: {host: vc.example.com, username: u, password: p}\n"
    )
    definitions = load_connector_definitions(path)
    assert [d.name for d in definitions] == ["prod-aws", "lab"]
    assert definitions[0].interval == "15m"
    assert definitions[1].enabled is False


def test_load_connector_definitions_accepts_bare_list(tmp_path):
    path = tmp_path / "connectors.yaml"
    path.write_text("- {name: a, tenant: t, platform: gcp, config: {project_id: p}}\n")
    assert load_connector_definitions(path)[0].platform == Platform.GCP


def test_load_connector_definitions_errors(tmp_path):
    with pytest.raises(ConfigurationException):
        load_connector_definitions(tmp_path / "missing.yaml")

    bad = tmp_path / "bad.yaml"
    bad.write_text("connectors: {name: a}\n")
    with pytest.raises(ConfigurationException):
        load_connector_definitions(bad)

    invalid = tmp_path / "invalid.yaml"
    invalid.write_text("- {name: a, tenant: t, platform: mainframe}\n")
    with pytest.raises(ConfigurationException):
        load_connector_definitions(invalid)


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("SCHEDULER_MAX_CONCURRENT", "2")
    monkeypatch.setenv("DISCOVERY_REQUEST_TIMEOUT_SECONDS", "12")
    monkeypatch.setenv("STORAGE_BACKEND", "FILE")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("FLEETSYNC_CONNECTORS_FILE", "/etc/fleetsync/connectors.yaml")

    settings = Settings.create_from_env()

    assert settings.scheduler.max_concurrent == 2
    assert settings.discovery.request_timeout_seconds == 12
    assert settings.storage.backend == StorageBackend.FILE
    assert settings.log_level.value == "DEBUG"
    assert settings.connectors_file == "/etc/fleetsync/connectors.yaml"


def test_settings_defaults(monkeypatch):
    for name in ("SCHEDULER_MAX_CONCURRENT", "SCHEDULER_DEFAULT_INTERVAL", "DISCOVERY_MAX_SCOPE_FAILURE_RATIO"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings()
    assert settings.scheduler.max_concurrent == 5
    assert settings.scheduler.default_interval == "1h"
    assert settings.discovery.max_scope_failure_ratio == 0.5

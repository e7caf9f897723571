import pytest

from fleetsync.clients import (
    AzureComputeConnector,
    ConnectorFactory,
    EC2Connector,
    GCPComputeConnector,
    KubernetesConnector,
    VCenterConnector,
)
from fleetsync.config.connectors import ConnectorDefinition
from fleetsync.config.settings import DiscoverySettings
from fleetsync.core.exceptions import ConfigurationException
from fleetsync.discovery.registry import ConnectorRegistry
from fleetsync.models.asset import Platform
from tests.conftest import FakeConnector, FakeKubernetesConnector


class TestConnectorFactory:
    @pytest.mark.parametrize("platform,config,expected", [
        ("kubernetes", {"cluster_name": "prod"}, KubernetesConnector),
        ("k8s", {}, KubernetesConnector),
        ("aws", {"region": "eu-west-1"}, EC2Connector),
        ("azure", {"subscription_id": "sub-1"}, AzureComputeConnector),
        ("gcp", {"project_id": "proj"}, GCPComputeConnector),
        ("vsphere", {"host": "vc.example.com", "username": "u", "password": "p"}, VCenterConnector),
    ])
    def test_create(self, platform, config, expected):
        connector = ConnectorFactory().create(platform, config, name="c1")
        assert isinstance(connector, expected)
        assert connector.name == "c1"
        assert not connector.is_connected

    def test_settings_are_passed_through(self):
        factory = ConnectorFactory(DiscoverySettings(request_timeout_seconds=7))
        assert factory.create("aws", {}).request_timeout == 7

    def test_unknown_platform(self):
        with pytest.raises(ConfigurationException) as exc_info:
            ConnectorFactory().create("mainframe", {})
        assert "aws" in exc_info.value.details["supported"]

    def test_invalid_config(self):
        with pytest.raises(ConfigurationException):
            ConnectorFactory().create("gcp", {})

    def test_supported_platforms(self):
        assert ConnectorFactory.supported_platforms() == ["aws", "azure", "gcp", "kubernetes", "vsphere"]


class TestConnectorRegistry:
    def test_register_and_get(self):
        registry = ConnectorRegistry()
        connector = FakeConnector(name="aws-prod")
        entry = registry.register("acme", connector, interval="15m")

        assert registry.get("acme", "aws") is entry
        assert entry.key == ("acme", Platform.AWS)
        assert entry.name == "aws-prod"
        assert ("acme", "aws") in registry
        assert len(registry) == 1

    def test_duplicate_key_is_rejected(self):
        registry = ConnectorRegistry()
        registry.register("acme", FakeConnector(name="one"))
        with pytest.raises(ConfigurationException):
            registry.register("acme", FakeConnector(name="two"))

        registry.register("globex", FakeConnector(name="three"))
        registry.register("acme", FakeKubernetesConnector(name="four"))
        assert len(registry) == 3

    def test_unregister(self):
        registry = ConnectorRegistry()
        registry.register("acme", FakeConnector())
        assert registry.unregister("acme", Platform.AWS) is not None
        assert registry.unregister("acme", Platform.AWS) is None
        assert registry.get("acme", "aws") is None

    def test_filter(self):
        registry = ConnectorRegistry()
        registry.register("acme", FakeConnector())
        registry.register("acme", FakeKubernetesConnector())
        registry.register("globex", FakeConnector())

        assert len(registry.filter()) == 3
        assert len(registry.filter(tenant="acme")) == 2
        assert [e.tenant for e in registry.filter(platform="aws")] == ["acme", "globex"]
        assert len(registry.filter("globex", "k8s")) == 0

    def test_load_definitions_skips_disabled(self):
        registry = ConnectorRegistry()
        loaded = registry.load_definitions([
            ConnectorDefinition(name="aws-prod", tenant="acme", platform="aws", interval="5m",
                                timeout_seconds=60, discover_images=True, config={"region": "eu-west-1"}),
            ConnectorDefinition(name="lab", tenant="acme", platform="vsphere", enabled=False,
                                config={"host": "vc", "username": "u", "password": "p"}),
        ])

        assert len(loaded) == 1
        entry = registry.get("acme", "aws")
        assert isinstance(entry.connector, EC2Connector)
        assert entry.connector.config.region == "eu-west-1"
        assert entry.interval == "5m"
        assert entry.timeout_seconds == 60
        assert entry.discover_images
        assert registry.get("acme", "vsphere") is None

    @pytest.mark.asyncio
    async def test_close_all(self):
        registry = ConnectorRegistry()
        first, second = FakeConnector(), FakeKubernetesConnector()
        registry.register("acme", first)
        registry.register("acme", second)
        await first.connect()

        await registry.close_all()

        assert first.close_calls == 1
        assert second.close_calls == 0

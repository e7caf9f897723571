from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from pyVmomi import vim

from fleetsync.clients.vsphere.vcenter_connector import (
    VCenterConnector,
    cluster_of,
    guestinfo_tags,
    vcenter_host,
)
from fleetsync.core.base_connector import ConnectorState
from fleetsync.core.exceptions import ClientConnectionException, DiscoveryException
from fleetsync.models.asset import AssetState, Platform

MODULE = "fleetsync.clients.vsphere.vcenter_connector"
CONFIG = {"host": "https://vcenter.example.com/sdk", "username": "svc", "password": "secret"}


def make_vm(mo_id="vm-101", name="app-01", power="poweredOn", template=False, cluster="prod-cluster"):
    return SimpleNamespace(
        _moId=mo_id,
        name=name,
        config=SimpleNamespace(
            template=template,
            guestId="ubuntu64Guest",
            guestFullName="Ubuntu Linux (64-bit)",
            hardware=SimpleNamespace(numCPU=4, memoryMB=8192, numCoresPerSocket=2),
            extraConfig=[
                SimpleNamespace(key="guestinfo.role", value="web"),
                SimpleNamespace(key="svga.present", value="TRUE"),
            ],
        ),
        runtime=SimpleNamespace(powerState=power, host=SimpleNamespace(name="esx-01", cluster_name=cluster)),
        resourcePool=SimpleNamespace(name="Resources"),
        summary=SimpleNamespace(config=SimpleNamespace(annotation="owned by web team")),
        guest=SimpleNamespace(ipAddress="10.0.0.5", hostName="app-01.internal", toolsStatus="toolsOk"),
    )


@pytest.fixture
def connector():
    c = VCenterConnector({**CONFIG, "datacenters": {"exclude": ["dc-lab"]}})
    c.service_instance = MagicMock()
    c._state = ConnectorState.CONNECTED
    return c


def test_vcenter_host():
    assert vcenter_host("https://vcenter.example.com/sdk") == "vcenter.example.com"
    assert vcenter_host("vcenter.example.com") == "vcenter.example.com"


def test_guestinfo_tags():
    options = [
        SimpleNamespace(key="guestinfo.owner", value="team-a"),
        SimpleNamespace(key="guestinfo.count", value=3),
        SimpleNamespace(key="disk.enableUUID", value="TRUE"),
    ]
    assert guestinfo_tags(options) == {"guestinfo:owner": "team-a"}
    assert guestinfo_tags(None) == {}


def test_cluster_of_non_cluster_parent():
    assert cluster_of(SimpleNamespace(parent=SimpleNamespace(name="standalone"))) == ""
    assert cluster_of(None) == ""


def test_normalize_vm(connector):
    asset = connector.normalize_vm(make_vm(), "dc-east", "prod-cluster")

    assert asset.platform == Platform.VSPHERE
    assert asset.account == "vcenter.example.com"
    assert asset.region == "dc-east"
    assert asset.instance_id == "vm-101"
    assert (asset.image_ref, asset.image_version) == ("ubuntu64Guest", "Ubuntu Linux (64-bit)")
    assert asset.state == AssetState.RUNNING
    assert asset.tags == {
        "guestinfo:role": "web",
        "datacenter": "dc-east",
        "cluster": "prod-cluster",
        "host": "esx-01",
        "resource_pool": "Resources",
        "annotation": "owned by web team",
        "hw:cpu": "4",
        "hw:memory": "8192",
        "hw:cores_per_socket": "2",
        "guest:ip_address": "10.0.0.5",
        "guest:hostname": "app-01.internal",
        "guest:tools_status": "toolsOk",
    }


def test_suspended_vm_is_stopped(connector):
    assert connector.normalize_vm(make_vm(power="suspended"), "dc-east").state == AssetState.STOPPED


@pytest.mark.asyncio
async def test_discover_assets(connector):
    datacenters = {
        "dc-east": SimpleNamespace(name="dc-east", vmFolder="east-folder"),
        "dc-west": SimpleNamespace(name="dc-west", vmFolder="west-folder"),
        "dc-lab": SimpleNamespace(name="dc-lab", vmFolder="lab-folder"),
    }
    folders = {
        "east-folder": [make_vm("vm-1"), make_vm("vm-2", template=True)],
        "west-folder": [make_vm("vm-3", power="poweredOff")],
    }

    def list_objects(root, kind):
        if kind is vim.Datacenter:
            return list(datacenters.values())
        return folders[root]

    connector._list_objects = list_objects

    assets = await connector.discover_assets("acme")

    assert {a.instance_id: a.region for a in assets} == {"vm-1": "dc-east", "vm-3": "dc-west"}
    assert {a.instance_id: a.state for a in assets}["vm-3"] == AssetState.STOPPED


@pytest.mark.asyncio
async def test_cluster_filter():
    connector = VCenterConnector({**CONFIG, "clusters": {"include": ["prod-cluster"]}})
    connector.service_instance = MagicMock()
    connector._state = ConnectorState.CONNECTED
    dc = SimpleNamespace(name="dc-east", vmFolder="east-folder")
    vms = [make_vm("vm-1"), make_vm("vm-2", cluster="dev-cluster")]
    connector._list_objects = lambda root, kind: [dc] if kind is vim.Datacenter else vms

    with patch(f"{MODULE}.cluster_of", side_effect=lambda host: host.cluster_name):
        assets = await connector.discover_assets("acme")

    assert [a.instance_id for a in assets] == ["vm-1"]
    assert assets[0].tags["cluster"] == "prod-cluster"


@pytest.mark.asyncio
async def test_single_datacenter_failure_fails_discovery(connector):
    dc = SimpleNamespace(name="dc-east", vmFolder="east-folder")

    def list_objects(root, kind):
        if kind is vim.Datacenter:
            return [dc]
        raise OSError("connection reset")

    connector._list_objects = list_objects

    with pytest.raises(DiscoveryException):
        await connector.discover_assets("acme")


@pytest.mark.asyncio
async def test_discover_images_lists_templates(connector):
    dc = SimpleNamespace(name="dc-east", vmFolder="east-folder")
    vms = [make_vm("vm-1"), make_vm("vm-tpl", name="ubuntu-template", template=True)]
    connector._list_objects = lambda root, kind: [dc] if kind is vim.Datacenter else vms

    images = await connector.discover_images()

    assert [(i.identifier, i.name) for i in images] == [("vm-tpl", "ubuntu-template")]
    assert images[0].description == "owned by web team"
    assert images[0].tags["guest_id"] == "ubuntu64Guest"


@pytest.mark.asyncio
async def test_connect_passes_tls_and_timeout_options():
    connector = VCenterConnector({**CONFIG, "insecure": True, "port": 8443})
    with patch(f"{MODULE}.SmartConnect") as smart_connect:
        await connector.connect()

    smart_connect.assert_called_once_with(
        host="vcenter.example.com",
        user="svc",
        pwd="secret",
        port=8443,
        disableSslCertValidation=True,
        httpConnectionTimeout=30,
    )
    assert connector.service_instance is smart_connect.return_value


@pytest.mark.asyncio
async def test_connect_failure():
    connector = VCenterConnector(CONFIG)
    with patch(f"{MODULE}.SmartConnect", side_effect=vim.fault.InvalidLogin()):
        with pytest.raises(ClientConnectionException):
            await connector.connect()


@pytest.mark.asyncio
async def test_close_disconnects():
    connector = VCenterConnector(CONFIG)
    with patch(f"{MODULE}.SmartConnect"), patch(f"{MODULE}.Disconnect") as disconnect:
        await connector.connect()
        si = connector.service_instance
        await connector.close()

    disconnect.assert_called_once_with(si)
    assert connector.service_instance is None

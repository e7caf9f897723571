from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from google.api_core.exceptions import Forbidden

from fleetsync.clients.gcp.compute_connector import (
    GCPComputeConnector,
    managed_instance_group,
    region_from_zone,
)
from fleetsync.core.base_connector import ConnectorState
from fleetsync.core.exceptions import ClientConnectionException
from fleetsync.models.asset import AssetState, ImageInfo, Platform

MODULE = "fleetsync.clients.gcp.compute_connector"
DISK_URL = "https://www.googleapis.com/compute/v1/projects/proj/zones/us-central1-a/disks/web-1"
DEBIAN = "https://www.googleapis.com/compute/v1/projects/debian-cloud/global/images/debian-12-bookworm-v20240110"


def make_instance(instance_id=111, name="web-1", status="RUNNING", created_by=None, source_image=None):
    items = [SimpleNamespace(key="startup-script", value="#!/bin/sh")]
    if created_by:
        items.append(SimpleNamespace(key="created-by", value=created_by))
    return SimpleNamespace(
        id=instance_id,
        name=name,
        status=status,
        machine_type="https://www.googleapis.com/compute/v1/projects/proj/zones/us-central1-a/machineTypes/e2-medium",
        labels={"env": "prod"},
        metadata=SimpleNamespace(items=items),
        disks=[
            SimpleNamespace(boot=False, source="data-disk", initialize_params=None),
            SimpleNamespace(
                boot=True,
                source=DISK_URL,
                initialize_params=SimpleNamespace(source_image=source_image) if source_image else None,
            ),
        ],
    )


@pytest.fixture
def connector():
    c = GCPComputeConnector({"project_id": "proj", "zones": {"include": ["us-central1-a", "us-central1-b", "europe-west1-b"]}})
    c._instances_client = MagicMock()
    c._disks_client = MagicMock()
    c._zones_client = MagicMock()
    c._images_client = MagicMock()
    c._state = ConnectorState.CONNECTED
    return c


def test_region_from_zone():
    assert region_from_zone("us-central1-a") == "us-central1"
    assert region_from_zone("global") == "global"


def test_managed_instance_group():
    mig = make_instance(created_by="projects/1/zones/us-central1-a/instanceGroupManagers/web-mig")
    assert managed_instance_group(mig) == "web-mig"
    assert managed_instance_group(make_instance()) is None


def test_normalize_instance(connector):
    instance = make_instance(
        status="TERMINATED",
        created_by="projects/1/zones/us-central1-a/instanceGroupManagers/web-mig",
    )
    asset = connector.normalize_instance(instance, "us-central1-a", {DISK_URL: DEBIAN})

    assert asset.platform == Platform.GCP
    assert asset.account == "proj"
    assert asset.region == "us-central1"
    assert asset.instance_id == "111"
    assert asset.state == AssetState.STOPPED
    assert (asset.image_ref, asset.image_version) == ("debian-cloud/debian-12-bookworm-v20240110", "v20240110")
    assert asset.tags == {
        "label:env": "prod",
        "zone": "us-central1-a",
        "hw:size": "e2-medium",
        "owner:kind": "InstanceGroupManager",
        "owner:name": "web-mig",
    }
    assert connector.asset_scope(asset) == "us-central1-a"


def test_initialize_params_image_wins(connector):
    instance = make_instance(source_image="projects/proj/global/images/family/golden")
    asset = connector.normalize_instance(instance, "us-central1-a", {DISK_URL: DEBIAN})
    assert (asset.image_ref, asset.image_version) == ("proj/family/golden", "latest")


@pytest.mark.asyncio
async def test_discover_assets_isolates_zone_failure(connector):
    zone_ids = {"us-central1-a": 1, "us-central1-b": 2}

    def list_instances(project, zone, timeout):
        if zone == "europe-west1-b":
            raise Forbidden("zone disabled")
        return [make_instance(instance_id=zone_ids[zone], name=f"vm-{zone}")]

    connector._instances_client.list.side_effect = list_instances
    connector._disks_client.list.return_value = [
        SimpleNamespace(self_link=DISK_URL, name="web-1", source_image=DEBIAN),
    ]

    assets = await connector.discover_assets("acme")

    assert sorted(a.name for a in assets) == ["vm-us-central1-a", "vm-us-central1-b"]
    assert connector.failed_scopes == ["europe-west1-b"]
    assert all(a.image_version == "v20240110" for a in assets)
    connector._instances_client.list.assert_any_call(project="proj", zone="us-central1-a", timeout=connector.request_timeout)


@pytest.mark.asyncio
async def test_disk_listing_failure_is_not_fatal(connector):
    connector._instances_client.list.return_value = [make_instance()]
    connector._disks_client.list.side_effect = Forbidden("no disks.list permission")

    assets = await connector.discover_assets("acme")

    assert len(assets) == 3
    assert all(a.image_ref == "" for a in assets)
    assert connector.failed_scopes == []


@pytest.mark.asyncio
async def test_zones_are_listed_when_not_configured():
    connector = GCPComputeConnector({"project_id": "proj", "zones": {"exclude": ["asia-east1-a"]}, "resolve_images": False})
    connector._instances_client = MagicMock()
    connector._zones_client = MagicMock()
    connector._state = ConnectorState.CONNECTED
    connector._zones_client.list.return_value = [SimpleNamespace(name="us-east1-b"), SimpleNamespace(name="asia-east1-a")]
    connector._instances_client.list.return_value = []

    await connector.discover_assets("acme")

    zones = [call.kwargs["zone"] for call in connector._instances_client.list.call_args_list]
    assert zones == ["us-east1-b"]


def test_family_entries_point_at_newest_image():
    images = [
        ImageInfo(platform=Platform.GCP, identifier="golden-v1", name="golden-v1",
                  created_at="2024-01-01T00:00:00.000-08:00", tags={"family": "golden"}),
        ImageInfo(platform=Platform.GCP, identifier="golden-v2", name="golden-v2",
                  created_at="2024-02-01T00:00:00.000-08:00", tags={"family": "golden"}),
        ImageInfo(platform=Platform.GCP, identifier="one-off", name="one-off"),
    ]

    entries = GCPComputeConnector.family_entries(images)

    assert len(entries) == 1
    assert entries[0].identifier == "family/golden"
    assert entries[0].tags["latest_image"] == "golden-v2"


@pytest.mark.asyncio
async def test_discover_images(connector):
    connector._images_client.list.return_value = [
        SimpleNamespace(
            name="golden-v20240101",
            labels={"team": "platform"},
            family="golden",
            status="READY",
            architecture="X86_64",
            disk_size_gb=10,
            source_disk="projects/proj/zones/us-central1-a/disks/builder",
            creation_timestamp="2024-01-01T00:00:00.000-08:00",
            description="",
        ),
    ]

    images = await connector.discover_images()

    assert [i.identifier for i in images] == ["golden-v20240101", "family/golden"]
    assert images[0].tags["version"] == "v20240101"
    assert images[0].tags["source_disk"] == "builder"
    assert images[0].region == "global"


@pytest.mark.asyncio
async def test_connect_with_service_account_file():
    connector = GCPComputeConnector({"project_id": "proj", "credentials_file": "/secrets/sa.json"})
    with patch(f"{MODULE}.service_account.Credentials.from_service_account_file") as from_file, \
            patch(f"{MODULE}.compute_v1") as compute_v1:
        await connector.connect()

    from_file.assert_called_once_with("/secrets/sa.json")
    compute_v1.InstancesClient.assert_called_once_with(credentials=from_file.return_value)
    assert connector.is_connected


@pytest.mark.asyncio
async def test_connect_failure():
    connector = GCPComputeConnector({"project_id": "proj", "credentials_file": "/missing.json"})
    with patch(f"{MODULE}.service_account.Credentials.from_service_account_file",
               side_effect=FileNotFoundError("/missing.json")):
        with pytest.raises(ClientConnectionException):
            await connector.connect()

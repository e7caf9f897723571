from types import SimpleNamespace

import pytest

from fleetsync.mappers.image_mapper import (
    gcp_project_from_url,
    gcp_version_from_image_name,
    parse_azure_image_reference,
    parse_container_image,
    parse_gcp_image_url,
    resource_name,
)


@pytest.mark.parametrize("image,expected", [
    ("nginx:1.19", ("nginx", "1.19")),
    ("nginx", ("nginx", "latest")),
    ("registry.example.com:5000/nginx:1.19", ("registry.example.com:5000/nginx", "1.19")),
    ("nginx@sha256:abc123", ("nginx", "sha256:abc123")),
])
def test_parse_container_image_literal_cases(image, expected):
    assert parse_container_image(image) == expected


def test_registry_port_without_tag_defaults_to_latest():
    assert parse_container_image("registry.example.com:5000/nginx") == ("registry.example.com:5000/nginx", "latest")


def test_digest_wins_over_tag():
    assert parse_container_image("repo/app:1.0@sha256:ff") == ("repo/app:1.0", "sha256:ff")


def test_empty_image():
    assert parse_container_image("") == ("", "")
    assert parse_container_image(None) == ("", "")


def test_resource_name():
    assert resource_name("projects/p/zones/us-central1-a/machineTypes/e2-small") == "e2-small"
    assert resource_name("https://x/y/") == "y"
    assert resource_name(None) == ""


def test_azure_marketplace_reference():
    ref = SimpleNamespace(id=None, publisher="Canonical", offer="UbuntuServer", sku="18.04-LTS", version="latest")
    assert parse_azure_image_reference(ref) == ("Canonical:UbuntuServer:18.04-LTS", "latest")


def test_azure_gallery_reference():
    ref = SimpleNamespace(
        id="/subscriptions/s/resourceGroups/rg/providers/Microsoft.Compute/galleries/g/images/base/versions/1.2.3",
        publisher=None,
    )
    assert parse_azure_image_reference(ref) == ("base", "1.2.3")


def test_azure_managed_image_reference():
    ref = SimpleNamespace(id="/subscriptions/s/resourceGroups/rg/providers/Microsoft.Compute/images/golden")
    assert parse_azure_image_reference(ref) == ("golden", "")


def test_azure_missing_reference():
    assert parse_azure_image_reference(None) == ("", "")


def test_gcp_helpers():
    url = "https://www.googleapis.com/compute/v1/projects/debian-cloud/global/images/debian-11-bullseye-v20231010"
    assert gcp_project_from_url(url) == "debian-cloud"
    assert gcp_version_from_image_name("debian-11-bullseye-v20231010") == "v20231010"
    assert gcp_version_from_image_name("custom-image") == ""


def test_gcp_public_image_is_prefixed_with_project():
    url = "projects/debian-cloud/global/images/debian-11-bullseye-v20231010"
    assert parse_gcp_image_url(url, "my-project") == ("debian-cloud/debian-11-bullseye-v20231010", "v20231010")


def test_gcp_own_project_image_is_bare():
    url = "projects/my-project/global/images/golden-v20240101"
    assert parse_gcp_image_url(url, "my-project") == ("golden-v20240101", "v20240101")


def test_gcp_family_resolves_to_latest():
    url = "projects/ubuntu-os-cloud/global/images/family/ubuntu-2204-lts"
    assert parse_gcp_image_url(url, "my-project") == ("ubuntu-os-cloud/family/ubuntu-2204-lts", "latest")

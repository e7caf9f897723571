"""Image reference parsing for every platform."""

from typing import Optional, Tuple
import re

DEFAULT_TAG = "latest"

_GCP_DATE_VERSION = re.compile(r'^v20\d{6}$')


def parse_container_image(image: Optional[str]) -> Tuple[str, str]:
    """Split an image string into (reference, version).

    ``repo@digest`` splits on the digest marker. Otherwise the last colon is
    the tag separator unless what follows it contains a ``/`` (a registry
    port), in which case the version is ``latest``.
    """
    if not image:
        return "", ""

    if '@' in image:
        reference, _, digest = image.partition('@')
        return reference, digest

    last_colon = image.rfind(':')
    if last_colon > 0:
        after = image[last_colon + 1:]
        if '/' not in after:
            return image[:last_colon], after

    return image, DEFAULT_TAG


def resource_name(url: Optional[str]) -> str:
    """Last path segment of a resource URL or id."""
    if not url:
        return ""
    return url.rstrip('/').rsplit('/', 1)[-1]


def _segment_after(path: str, marker: str) -> str:
    parts = path.split('/')
    for index, part in enumerate(parts):
        if part.lower() == marker.lower() and index + 1 < len(parts):
            return parts[index + 1]
    return ""


def parse_azure_image_reference(image_reference) -> Tuple[str, str]:
    """Return (reference, version) for an Azure ``ImageReference``.

    Gallery references carry a resource id; marketplace references carry
    publisher/offer/sku plus a version.
    """
    if image_reference is None:
        return "", ""

    image_id = getattr(image_reference, 'id', None)
    if image_id:
        version = _segment_after(image_id, 'versions')
        if version:
            image_name = _segment_after(image_id, 'images')
            return image_name or resource_name(image_id), version
        return resource_name(image_id), ""

    publisher = getattr(image_reference, 'publisher', None)
    if publisher:
        reference = ":".join([
            publisher,
            getattr(image_reference, 'offer', None) or "",
            getattr(image_reference, 'sku', None) or "",
        ])
        return reference, getattr(image_reference, 'version', None) or ""

    return "", ""


def gcp_project_from_url(url: Optional[str]) -> str:
    return _segment_after(url or "", 'projects')


def gcp_version_from_image_name(name: str) -> str:
    """Pull a ``v20YYMMDD``-style version out of a public image name."""
    for part in name.split('-'):
        if _GCP_DATE_VERSION.match(part):
            return part
    return ""


def parse_gcp_image_url(url: Optional[str], own_project: str = "") -> Tuple[str, str]:
    """Return (reference, version) for a GCP source image URL.

    Family references resolve to ``latest``. Images from another project are
    prefixed with that project.
    """
    if not url:
        return "", ""

    project = gcp_project_from_url(url)
    if '/images/family/' in url:
        family = url.rsplit('/images/family/', 1)[-1]
        return f"{project}/family/{family}", DEFAULT_TAG

    image_name = resource_name(url)
    version = gcp_version_from_image_name(image_name)
    if project and project != own_project:
        return f"{project}/{image_name}", version
    return image_name, version

from .image_mapper import parse_container_image, parse_azure_image_reference, parse_gcp_image_url
from .state_mapper import STATE_TABLES, map_state, azure_power_state

__all__ = [
    "parse_container_image",
    "parse_azure_image_reference",
    "parse_gcp_image_url",
    "STATE_TABLES",
    "map_state",
    "azure_power_state",
]

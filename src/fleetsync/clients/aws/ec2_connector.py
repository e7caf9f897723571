"""AWS connector: EC2 instances across regions."""

import asyncio
from typing import Any, Dict, List, Optional

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from fleetsync.core.base_connector import BaseConnector
from fleetsync.core.exceptions import ClientConnectionException
from fleetsync.core.utils import chunked
from fleetsync.mappers import tag_mapper as tags_ns
from fleetsync.mappers.state_mapper import AWS_INSTANCE_STATES, map_state
from fleetsync.models.asset import ImageInfo, NormalizedAsset, Platform

logger = structlog.get_logger(__name__)

# DescribeImages accepts up to 1000 ids; stay well below.
AMI_BATCH_SIZE = 500
ROLE_SESSION_NAME = "fleetsync-discovery"


def image_version_from_ami(ami: Optional[Dict[str, Any]]) -> str:
    """AMI ``Version`` tag, else its creation date."""
    if not ami:
        return ""
    for tag in ami.get("Tags") or []:
        if tag.get("Key") in ("Version", "version"):
            return tag.get("Value") or ""
    return ami.get("CreationDate") or ""


class EC2Connector(BaseConnector):
    """Discovers EC2 instances; every region is one scope."""

    platform = Platform.AWS

    def __init__(self, config_dict, name: Optional[str] = None, settings=None):
        super().__init__(config_dict, name or "EC2Connector", settings)
        self.session: Optional[boto3.session.Session] = None
        self.account_id = ""
        self._client_config = Config(
            connect_timeout=self.request_timeout,
            read_timeout=self.request_timeout,
            retries={"max_attempts": self.settings.retry_attempts, "mode": "standard"},
        )

    def _client(self, service: str, region: Optional[str] = None):
        return self.session.client(
            service,
            region_name=region or self.config.region,
            config=self._client_config,
        )

    async def _connect(self) -> None:
        try:
            self.session = await self._run_blocking(self._build_session)
        except (BotoCoreError, ClientError) as e:
            raise ClientConnectionException("aws", f"Failed to create session: {e}")

        try:
            identity = await self._run_blocking(self._client("sts").get_caller_identity)
            self.account_id = identity.get("Account", "")
        except (BotoCoreError, ClientError) as e:
            self.logger.warning("Failed to get caller identity", error=str(e))

        self.logger.info(
            "Connected to AWS",
            region=self.config.region,
            account_id=self.account_id,
            assume_role=bool(self.config.assume_role_arn)
        )

    def _build_session(self) -> boto3.session.Session:
        base = boto3.session.Session(profile_name=self.config.profile, region_name=self.config.region)
        if not self.config.assume_role_arn:
            return base

        params = {
            "RoleArn": self.config.assume_role_arn,
            "RoleSessionName": ROLE_SESSION_NAME,
        }
        if self.config.external_id:
            params["ExternalId"] = self.config.external_id
        sts = base.client("sts", config=self._client_config)
        credentials = sts.assume_role(**params)["Credentials"]
        self.logger.info("Assumed role", role_arn=self.config.assume_role_arn)
        return boto3.session.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=self.config.region,
        )

    async def _close(self) -> None:
        self.session = None

    async def _health_check(self) -> None:
        await self._run_blocking(self._client("ec2").describe_regions)

    async def _regions_to_scan(self) -> List[str]:
        regions = self.config.regions
        if regions.include:
            return regions.filter(list(regions.include))
        response = await self._run_blocking(self._client("ec2").describe_regions)
        return regions.filter([r["RegionName"] for r in response.get("Regions", [])])

    async def _discover_assets(self, tenant: str,
                               cancel: Optional[asyncio.Event]) -> List[NormalizedAsset]:
        regions = await self._regions_to_scan()

        async def scan(region: str) -> List[NormalizedAsset]:
            return await self._run_blocking(self._discover_region, region)

        return await self._scan_scopes(regions, scan, cancel)

    def _discover_region(self, region: str) -> List[NormalizedAsset]:
        ec2 = self._client("ec2", region)

        instances = []
        for page in ec2.get_paginator("describe_instances").paginate():
            for reservation in page.get("Reservations", []):
                instances.extend(reservation.get("Instances", []))

        amis = self._describe_amis(ec2, region, {i["ImageId"] for i in instances if i.get("ImageId")})
        assets = [
            self.normalize_instance(instance, region, amis.get(instance.get("ImageId")))
            for instance in instances
        ]
        self.logger.debug("Discovered instances", region=region, count=len(assets), unique_amis=len(amis))
        return assets

    def _describe_amis(self, ec2, region: str, image_ids) -> Dict[str, Dict[str, Any]]:
        amis = {}
        for batch in chunked(sorted(image_ids), AMI_BATCH_SIZE):
            try:
                response = ec2.describe_images(ImageIds=batch)
            except (BotoCoreError, ClientError) as e:
                self.logger.warning("Failed to describe images", region=region, error=str(e))
                continue
            for image in response.get("Images", []):
                amis[image["ImageId"]] = image
        return amis

    def normalize_instance(self, instance: Dict[str, Any], region: str,
                           ami: Optional[Dict[str, Any]] = None) -> NormalizedAsset:
        instance_tags = instance.get("Tags") or []
        tags = tags_ns.key_value_pairs(tags_ns.TAG_PREFIX, [(t.get("Key"), t.get("Value")) for t in instance_tags])
        name = next((t.get("Value") or "" for t in instance_tags if t.get("Key") == "Name"), "")

        placement = instance.get("Placement") or {}
        tags_ns.put(tags, tags_ns.ZONE, placement.get("AvailabilityZone"))
        tags_ns.put(tags, tags_ns.HW_SIZE, instance.get("InstanceType"))
        tags_ns.put(tags, tags_ns.HW_ARCH, instance.get("Architecture"))
        tags_ns.put(tags, tags_ns.OS_FAMILY, instance.get("PlatformDetails"))
        if ami:
            tags_ns.put(tags, tags_ns.IMAGE_NAME, ami.get("Name"))

        return NormalizedAsset(
            platform=Platform.AWS,
            account=self.account_id,
            region=region,
            instance_id=instance.get("InstanceId", ""),
            name=name,
            image_ref=instance.get("ImageId") or "",
            image_version=image_version_from_ami(ami),
            state=map_state(AWS_INSTANCE_STATES, (instance.get("State") or {}).get("Name")),
            tags=tags,
        )

    async def _discover_images(self, cancel: Optional[asyncio.Event]) -> List[ImageInfo]:
        regions = await self._regions_to_scan()

        async def scan(region: str) -> List[ImageInfo]:
            response = await self._run_blocking(self._client("ec2", region).describe_images, Owners=["self"])
            return [
                ImageInfo(
                    platform=Platform.AWS,
                    identifier=image["ImageId"],
                    name=image.get("Name") or "",
                    region=region,
                    created_at=image.get("CreationDate") or "",
                    description=image.get("Description") or "",
                    tags={t["Key"]: t.get("Value") or "" for t in image.get("Tags") or [] if t.get("Key")},
                )
                for image in response.get("Images", [])
            ]

        return await self._scan_scopes(regions, scan, cancel)

"""
ECS compute control API for the Spot Instance Monitor.

Lists regions, discovers pay-as-you-go spot instances, and reads, starts and
refreshes individual instances.  All calls go through
:func:`ingest.aliyun.call_api`, so failures surface as
:class:`~ingest.aliyun.ProviderError`.

Usage
-----
    from ingest.ecs import ECSClient
    instances = ECSClient().discover_spot_instances()
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from aliyunsdkcore.client import AcsClient

from config.settings import settings
from detect.models import TrackedInstance
from ingest.aliyun import ProviderError, acs_client, call_api

logger = logging.getLogger(__name__)

_ECS_PRODUCT = "Ecs"
_ECS_VERSION = "2014-05-26"
_PAGE_SIZE = 100

# Spot instances are pay-as-you-go instances with a spot strategy set.
_CHARGE_TYPE = "PostPaid"
_NON_SPOT_STRATEGIES = {"", "NoSpot"}

_INCORRECT_STATUS_CODE = "IncorrectInstanceStatus"


class InstanceNotStoppedError(ProviderError):
    """Start was refused because the instance is no longer stopped."""


# ──────────────────────────────────────────────────────────────────────────────
# Response parsing
# ──────────────────────────────────────────────────────────────────────────────


def _first_address(block: Any) -> str:
    """Return the first entry of an ``{"IpAddress": [...]}`` block."""
    if not isinstance(block, dict):
        return ""
    addresses = block.get("IpAddress") or []
    if isinstance(addresses, str):
        return addresses
    return addresses[0] if addresses else ""


def parse_instance(raw: dict[str, Any], region_id: str) -> TrackedInstance:
    """Convert a DescribeInstances record into a :class:`TrackedInstance`."""
    public_ip = _first_address(raw.get("PublicIpAddress"))
    if not public_ip:
        public_ip = _first_address(raw.get("EipAddress"))

    private_ip = _first_address(raw.get("InnerIpAddress"))
    if not private_ip:
        private_ip = _first_address((raw.get("VpcAttributes") or {}).get("PrivateIpAddress"))

    return TrackedInstance(
        instance_id=raw["InstanceId"],
        display_name=raw.get("InstanceName") or raw["InstanceId"],
        region_id=raw.get("RegionId") or region_id,
        last_known_status=raw.get("Status", ""),
        public_address=public_ip,
        private_address=private_ip,
        spot_strategy=raw.get("SpotStrategy", ""),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Client
# ──────────────────────────────────────────────────────────────────────────────


class ECSClient:
    """Thin wrapper around the ECS API with one AcsClient cached per region."""

    def __init__(self, client_factory: Callable[[str], AcsClient] = acs_client) -> None:
        self._client_factory = client_factory
        self._clients: dict[str, AcsClient] = {}
        self._lock = threading.Lock()

    def _client(self, region_id: str) -> AcsClient:
        with self._lock:
            client = self._clients.get(region_id)
            if client is None:
                client = self._client_factory(region_id)
                self._clients[region_id] = client
            return client

    def _call(self, region_id: str, action: str, params: dict[str, Any]) -> dict[str, Any]:
        return call_api(
            self._client(region_id),
            action,
            _ECS_VERSION,
            params={"RegionId": region_id, **params},
            product=_ECS_PRODUCT,
        )

    def list_regions(self, home_region: str | None = None) -> list[str]:
        """Return every region id visible to the account."""
        response = self._call(home_region or settings.ALIYUN_DEFAULT_REGION, "DescribeRegions", {})
        regions = [r["RegionId"] for r in response.get("Regions", {}).get("Region", [])]
        logger.debug("Found %d regions", len(regions))
        return regions

    def list_spot_instances(self, region_id: str) -> list[TrackedInstance]:
        """Return all spot instances in *region_id*, following pagination."""
        instances: list[TrackedInstance] = []
        page = 1

        while True:
            response = self._call(
                region_id,
                "DescribeInstances",
                {
                    "InstanceChargeType": _CHARGE_TYPE,
                    "PageNumber": page,
                    "PageSize": _PAGE_SIZE,
                },
            )
            records = response.get("Instances", {}).get("Instance", [])
            for raw in records:
                if raw.get("SpotStrategy", "") in _NON_SPOT_STRATEGIES:
                    continue
                instances.append(parse_instance(raw, region_id))

            if len(records) < _PAGE_SIZE:
                break
            page += 1

        return instances

    def get_status(self, region_id: str, instance_id: str) -> str:
        """Return the current status string of one instance."""
        response = self._call(
            region_id,
            "DescribeInstanceStatus",
            {"InstanceId.1": instance_id},
        )
        statuses = response.get("InstanceStatuses", {}).get("InstanceStatus", [])
        if not statuses:
            raise ProviderError(f"instance {instance_id} not found")
        return statuses[0]["Status"]

    def get_instance(self, region_id: str, instance_id: str) -> TrackedInstance:
        """Return a fresh record for one instance."""
        response = self._call(
            region_id,
            "DescribeInstances",
            {"InstanceIds": f'["{instance_id}"]'},
        )
        records = response.get("Instances", {}).get("Instance", [])
        if not records:
            raise ProviderError(f"instance {instance_id} not found")
        return parse_instance(records[0], region_id)

    def start(self, region_id: str, instance_id: str) -> None:
        """
        Issue a start command.

        Raises
        ------
        InstanceNotStoppedError
            If the provider reports the instance is not in the stopped state.
        ProviderError
            For any other failure.
        """
        try:
            self._call(region_id, "StartInstance", {"InstanceId": instance_id})
        except ProviderError as exc:
            if exc.code == _INCORRECT_STATUS_CODE or _INCORRECT_STATUS_CODE in str(exc):
                raise InstanceNotStoppedError(exc.args[0], code=_INCORRECT_STATUS_CODE) from exc
            raise

    def discover_spot_instances(self) -> list[TrackedInstance]:
        """
        Discover spot instances across every region.

        A failure to list regions propagates; a failure inside a single
        region is logged and that region is skipped.
        """
        instances: list[TrackedInstance] = []
        for region_id in self.list_regions():
            try:
                instances.extend(self.list_spot_instances(region_id))
            except ProviderError as exc:
                logger.warning("Failed to list spot instances in %s: %s", region_id, exc)
        return instances

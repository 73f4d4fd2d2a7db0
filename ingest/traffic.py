"""
Internet traffic aggregation for the Spot Instance Monitor.

Queries the CDT (Cloud Data Transfer) API for per-region internet traffic and
splits it into mainland-China and international buckets with a per-product
breakdown.  All accumulation happens in integer bytes; conversion to GB only
happens when a summary is displayed.

Usage
-----
    from ingest.traffic import TrafficClient
    summary = TrafficClient().query_traffic()
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from aliyunsdkcore.client import AcsClient

from detect.models import RegionGroup, TrafficSummary
from ingest.aliyun import acs_client, call_api
from ingest.regions import classify_region

logger = logging.getLogger(__name__)

_CDT_DOMAIN = "cdt.aliyuncs.com"
_CDT_VERSION = "2021-08-13"
_CDT_REGION = "cn-hangzhou"
_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

_SIZE_UNITS = (("TB", 1024 ** 4), ("GB", 1024 ** 3), ("MB", 1024 ** 2), ("KB", 1024))


def format_traffic_size(num_bytes: int) -> str:
    """Render a byte count in the largest unit that keeps it >= 1."""
    for unit, size in _SIZE_UNITS:
        if num_bytes >= size:
            return f"{num_bytes / size:.2f} {unit}"
    return f"{num_bytes} B"


def summarize_traffic(
    records: Iterable[dict[str, Any]],
    start_time: datetime,
    end_time: datetime,
) -> TrafficSummary:
    """
    Bucket CDT ``TrafficDetails`` records by region group.

    Every record lands in exactly one bucket, so the two bucket totals always
    add up to ``total_bytes``.
    """
    summary = TrafficSummary(
        start_time=start_time,
        end_time=end_time,
        cycle_label=start_time.strftime("%Y-%m"),
    )

    for record in records:
        region_id = record.get("BusinessRegionId", "")
        traffic = int(record.get("Traffic") or 0)

        if classify_region(region_id) is RegionGroup.DOMESTIC:
            bucket = summary.domestic
        else:
            bucket = summary.international

        summary.total_bytes += traffic
        bucket.total_bytes += traffic
        bucket.regions.append(region_id)
        for product in record.get("ProductTrafficDetails") or []:
            name = product.get("Product", "")
            bucket.product_breakdown[name] = bucket.product_breakdown.get(name, 0) + int(product.get("Traffic") or 0)
        summary.region_details.append(record)

    logger.info(
        "Traffic summary: total=%.2f GB, mainland=%.2f GB (%d regions), international=%.2f GB (%d regions)",
        summary.total_gb,
        summary.domestic.traffic_gb,
        summary.domestic.region_count,
        summary.international.traffic_gb,
        summary.international.region_count,
    )
    return summary


class TrafficClient:
    """Reads internet traffic from the CDT API."""

    def __init__(self, client: AcsClient | None = None) -> None:
        self._client = client or acs_client(_CDT_REGION)

    def fetch_traffic(self, start_time: datetime, end_time: datetime) -> list[dict[str, Any]]:
        """Return raw ``TrafficDetails`` records for the time range."""
        logger.debug("Querying CDT traffic from %s to %s", start_time.date(), end_time.date())
        response = call_api(
            self._client,
            "ListCdtInternetTraffic",
            _CDT_VERSION,
            params={
                "StartTime": start_time.strftime(_TIME_FORMAT),
                "EndTime": end_time.strftime(_TIME_FORMAT),
            },
            domain=_CDT_DOMAIN,
        )
        return response.get("TrafficDetails") or []

    def query_traffic(
        self,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> TrafficSummary:
        """Query traffic, by default from the first of this month (UTC) to now."""
        end_time = end_time or datetime.now(timezone.utc)
        start_time = start_time or end_time.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return summarize_traffic(self.fetch_traffic(start_time, end_time), start_time, end_time)

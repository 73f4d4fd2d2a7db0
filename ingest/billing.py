"""
Billing aggregation for the Spot Instance Monitor.

Pulls the current cycle's instance bill from the BSS OpenAPI, normalizes each
line item to seconds and a display label, then aggregates per instance and
derives an hourly cost and a monthly estimate.

The provider repeats the same service period on every cost component of an
instance (compute, system disk, bandwidth, ...), so running time is the
**maximum** seconds-unit period per instance, never the sum.

Usage
-----
    from ingest.billing import BillingClient
    summary = BillingClient().query_billing(instances)
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from aliyunsdkcore.client import AcsClient

from detect.models import BillingItem, BillingSummary, InstanceBillingSummary, TrackedInstance
from ingest.aliyun import ProviderError, acs_client, call_api

logger = logging.getLogger(__name__)

_BSS_DOMAIN = "business.aliyuncs.com"
_BSS_VERSION = "2017-12-14"
_BSS_REGION = "cn-hangzhou"
_PAGE_SIZE = 300

HOURS_PER_MONTH = 30 * 24
DAYS_PER_MONTH = 30


# ──────────────────────────────────────────────────────────────────────────────
# Normalization
# ──────────────────────────────────────────────────────────────────────────────


class DurationUnit(str, Enum):
    """Service-period units understood by the normalizer."""

    DAY = "day"
    HOUR = "hour"
    SECOND = "second"


_SECONDS_PER_UNIT: dict[DurationUnit, int] = {
    DurationUnit.DAY: 24 * 3600,
    DurationUnit.HOUR: 3600,
    DurationUnit.SECOND: 1,
}

# Raw ServicePeriodUnit values as returned by the BSS API.
_UNIT_ALIASES: dict[str, DurationUnit] = {
    "天": DurationUnit.DAY,
    "day": DurationUnit.DAY,
    "小时": DurationUnit.HOUR,
    "hour": DurationUnit.HOUR,
    "秒": DurationUnit.SECOND,
    "second": DurationUnit.SECOND,
    "": DurationUnit.SECOND,
}

# Billing item name -> display label.  None means "append the instance spec".
_ITEM_LABELS: dict[str, str | None] = {
    "系统盘": "System disk",
    "数据盘": "Data disk",
    "云服务器配置": None,
    "ImageOS": "Image",
    "公网带宽": "Public bandwidth",
    "流量": "Public traffic",
    "快照": "Snapshot",
    "实例": None,
}

_SPEC_LABELS: dict[str, tuple[str, str]] = {
    "云服务器配置": ("Compute", "Compute resources"),
    "实例": ("Instance", "Instance"),
}


def parse_duration_unit(raw_unit: str) -> DurationUnit | None:
    """Return the unit for *raw_unit*, or None if it is not recognized."""
    return _UNIT_ALIASES.get(raw_unit.strip().lower())


def service_period_seconds(value: str, raw_unit: str) -> float:
    """
    Convert a raw service period to seconds.

    Unrecognized units are treated as seconds rather than failing the whole
    billing query.  An unparseable value yields 0.
    """
    try:
        amount = float(value)
    except (TypeError, ValueError):
        logger.debug("Unparseable service period %r", value)
        return 0.0

    unit = parse_duration_unit(raw_unit)
    if unit is None:
        logger.debug("Unknown service period unit %r, assuming seconds", raw_unit)
        unit = DurationUnit.SECOND
    return amount * _SECONDS_PER_UNIT[unit]


def billing_item_label(item_name: str, instance_spec: str = "") -> str:
    """Map a provider billing item name to a display label."""
    if item_name in _SPEC_LABELS:
        with_spec, without_spec = _SPEC_LABELS[item_name]
        return f"{with_spec} ({instance_spec})" if instance_spec else without_spec
    label = _ITEM_LABELS.get(item_name)
    if label:
        return label
    return item_name or "Other"


def normalize_item(raw: dict[str, Any]) -> BillingItem:
    """Convert a raw QueryInstanceBill record into a :class:`BillingItem`."""
    raw_unit = str(raw.get("ServicePeriodUnit") or "")
    period = raw.get("ServicePeriod")
    unit = parse_duration_unit(raw_unit)
    item_name = raw.get("BillingItem", "")
    spec = raw.get("InstanceSpec", "")

    return BillingItem(
        instance_id=raw.get("InstanceID", ""),
        label=billing_item_label(item_name, spec),
        amount=float(raw.get("PretaxAmount") or 0.0),
        currency=raw.get("Currency") or "CNY",
        service_duration_seconds=service_period_seconds(period, raw_unit) if period not in (None, "") else 0.0,
        duration_unit_was_seconds=unit is DurationUnit.SECOND and raw_unit.strip() != "",
        billing_item_name=item_name,
        instance_spec=spec,
        product_code=raw.get("ProductCode", ""),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Aggregation
# ──────────────────────────────────────────────────────────────────────────────


def monthly_estimate(instances: list[InstanceBillingSummary], total_amount: float, elapsed_days: int) -> tuple[float, str]:
    """
    Estimate the full-month cost.

    1. **Hourly rate** — if any instance has a positive hourly cost, assume
       every instance runs 24/7: ``sum(hourly_cost) × 720``.
    2. **Elapsed days** — otherwise, if anything was billed:
       ``total_amount / elapsed_days × 30``.

    Returns ``(estimate, method_description)``; ``(0.0, "")`` if neither applies.
    """
    total_hourly = sum(inst.hourly_cost for inst in instances if inst.hourly_cost > 0)
    if total_hourly > 0:
        return (
            total_hourly * HOURS_PER_MONTH,
            f"sum of hourly costs: ¥{total_hourly:.4f}/h × {HOURS_PER_MONTH}h",
        )

    if total_amount > 0 and elapsed_days > 0:
        daily = total_amount / elapsed_days
        return daily * DAYS_PER_MONTH, f"elapsed days: ¥{daily:.4f}/day × {DAYS_PER_MONTH} days"

    return 0.0, ""


def summarize_billing(
    raw_items: Iterable[dict[str, Any]],
    instances: Iterable[TrackedInstance],
    now: datetime,
    cycle_label: str | None = None,
) -> BillingSummary:
    """
    Aggregate raw billing records for *instances* into a :class:`BillingSummary`.

    Records for instances outside *instances* are discarded.  Instance order
    in the result follows the first billing record seen for each instance.
    """
    tracked = {inst.instance_id: inst for inst in instances}
    summaries: dict[str, InstanceBillingSummary] = {}
    running_seconds: dict[str, float] = {}

    for raw in raw_items:
        item = normalize_item(raw)
        inst = tracked.get(item.instance_id)
        if inst is None:
            continue

        logger.debug(
            "Billing item: instance=%s item=%s period=%.0fs amount=%.4f",
            item.instance_id,
            item.billing_item_name,
            item.service_duration_seconds,
            item.amount,
        )

        summary = summaries.get(item.instance_id)
        if summary is None:
            summary = InstanceBillingSummary(
                instance_id=item.instance_id,
                display_name=inst.display_name,
                region_id=inst.region_id,
                spec=item.instance_spec,
            )
            summaries[item.instance_id] = summary
        if not summary.spec and item.instance_spec:
            summary.spec = item.instance_spec

        if item.duration_unit_was_seconds:
            seen = running_seconds.get(item.instance_id, 0.0)
            running_seconds[item.instance_id] = max(seen, item.service_duration_seconds)

        summary.items.append(item)
        summary.total_amount += item.amount

    result = BillingSummary(
        cycle_label=cycle_label or now.strftime("%Y-%m"),
        start_time=now.replace(day=1, hour=0, minute=0, second=0, microsecond=0),
        end_time=now,
        elapsed_days=now.day,
    )

    for instance_id, summary in summaries.items():
        seconds = running_seconds.get(instance_id, 0.0)
        if seconds > 0:
            summary.running_hours = seconds / 3600
            if summary.total_amount > 0:
                summary.hourly_cost = summary.total_amount / summary.running_hours
        result.instances.append(summary)
        result.total_amount += summary.total_amount
        result.total_running_hours += summary.running_hours

    result.monthly_estimate, result.estimate_method = monthly_estimate(
        result.instances, result.total_amount, result.elapsed_days
    )

    logger.info(
        "Found billing for %d instances, total: %.4f, running hours: %.2f, monthly estimate: %.2f",
        len(result.instances),
        result.total_amount,
        result.total_running_hours,
        result.monthly_estimate,
    )
    return result


# ──────────────────────────────────────────────────────────────────────────────
# BSS OpenAPI
# ──────────────────────────────────────────────────────────────────────────────


class BillingClient:
    """Reads instance bills from the BSS OpenAPI."""

    def __init__(self, client: AcsClient | None = None) -> None:
        self._client = client or acs_client(_BSS_REGION)

    def fetch_bill_items(self, cycle_label: str, product_code: str = "ecs") -> list[dict[str, Any]]:
        """Fetch every billing-item record for *cycle_label* (``YYYY-MM``)."""
        items: list[dict[str, Any]] = []
        page = 1

        while True:
            response = call_api(
                self._client,
                "QueryInstanceBill",
                _BSS_VERSION,
                params={
                    "BillingCycle": cycle_label,
                    "ProductCode": product_code,
                    "IsBillingItem": "true",
                    "PageNum": page,
                    "PageSize": _PAGE_SIZE,
                },
                domain=_BSS_DOMAIN,
            )
            if response.get("Success") is False:
                raise ProviderError(response.get("Message", "QueryInstanceBill failed"), code=response.get("Code", ""))

            data = response.get("Data") or {}
            page_items = (data.get("Items") or {}).get("Item", [])
            items.extend(page_items)

            total = int(data.get("TotalCount") or 0)
            if not page_items or len(items) >= total:
                break
            page += 1

        logger.debug("Got %d billing items for cycle %s", len(items), cycle_label)
        return items

    def query_billing(self, instances: Iterable[TrackedInstance], now: datetime | None = None) -> BillingSummary:
        """Query and aggregate the current month's bill for *instances*."""
        now = now or datetime.now()
        cycle = now.strftime("%Y-%m")
        raw_items = self.fetch_bill_items(cycle)
        return summarize_billing(raw_items, instances, now, cycle_label=cycle)

"""
Data models for the Spot Instance Monitor.

Defines the typed structures used throughout the
discovery → remediation → reporting pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

BYTES_PER_GB = 1024 ** 3


class InstanceStatus(str, Enum):
    """Instance states reported by the ECS API."""

    PENDING = "Pending"
    RUNNING = "Running"
    STARTING = "Starting"
    STOPPING = "Stopping"
    STOPPED = "Stopped"


class RemediationState(str, Enum):
    """States of the per-instance remediation state machine."""

    RUNNING = "running"
    DETECTED = "detected"
    STARTING = "starting"
    WAITING_RUNNING = "waiting_running"
    HEALTH_CHECKING = "health_checking"
    STARTED = "started"
    FAILED = "failed"

    ALREADY_STARTED = "already_started"
    """Another actor started the instance first; no alert is sent."""

    UNREACHABLE = "unreachable"
    """Instance is running but the health check timed out; not retried."""


class RegionGroup(str, Enum):
    """Geographic bucket used for traffic accounting."""

    DOMESTIC = "domestic"
    INTERNATIONAL = "international"


# ──────────────────────────────────────────────────────────────────────────────
# Instances
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TrackedInstance:
    """
    A spot instance found by discovery.

    Instances are immutable: the registry replaces its whole snapshot on each
    discovery pass instead of mutating records in place.
    """

    instance_id: str
    display_name: str
    region_id: str
    last_known_status: str = ""
    public_address: str = ""
    private_address: str = ""
    spot_strategy: str = ""

    def __str__(self) -> str:
        return f"{self.display_name} ({self.instance_id}) in {self.region_id}"


@dataclass
class RemediationOutcome:
    """Result of running the remediation state machine for one instance."""

    instance: TrackedInstance
    state: RemediationState
    attempts: int = 0
    duration_seconds: float = 0.0
    error: Exception | None = None

    @property
    def acted(self) -> bool:
        """True when the instance was found stopped and remediation ran."""
        return self.state is not RemediationState.RUNNING


# ──────────────────────────────────────────────────────────────────────────────
# Billing
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BillingItem:
    """A provider billing line item normalized to seconds and a display label."""

    instance_id: str
    label: str
    amount: float
    currency: str = "CNY"
    service_duration_seconds: float = 0.0
    duration_unit_was_seconds: bool = False
    billing_item_name: str = ""
    instance_spec: str = ""
    product_code: str = ""


@dataclass
class InstanceBillingSummary:
    """Billing totals for a single instance within one billing cycle."""

    instance_id: str
    display_name: str = ""
    region_id: str = ""
    spec: str = ""
    items: list[BillingItem] = field(default_factory=list)
    total_amount: float = 0.0
    running_hours: float = 0.0
    """Longest seconds-unit service period seen for this instance, in hours."""

    hourly_cost: float = 0.0
    """``total_amount / running_hours``; 0 when no running time is known."""


@dataclass
class BillingSummary:
    """Billing report for the current cycle across all tracked instances."""

    cycle_label: str
    start_time: datetime
    end_time: datetime
    elapsed_days: int
    total_running_hours: float = 0.0
    instances: list[InstanceBillingSummary] = field(default_factory=list)
    total_amount: float = 0.0
    monthly_estimate: float = 0.0
    estimate_method: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for JSON/logging."""
        return {
            "cycle": self.cycle_label,
            "elapsed_days": self.elapsed_days,
            "total_running_hours": round(self.total_running_hours, 2),
            "instances": len(self.instances),
            "total_amount": round(self.total_amount, 4),
            "monthly_estimate": round(self.monthly_estimate, 2),
            "estimate_method": self.estimate_method,
        }


# ──────────────────────────────────────────────────────────────────────────────
# Traffic
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class TrafficRegionSummary:
    """Accumulated internet traffic for one geographic bucket, in raw bytes."""

    total_bytes: int = 0
    regions: list[str] = field(default_factory=list)
    product_breakdown: dict[str, int] = field(default_factory=dict)

    @property
    def region_count(self) -> int:
        return len(self.regions)

    @property
    def traffic_gb(self) -> float:
        return self.total_bytes / BYTES_PER_GB


@dataclass
class TrafficSummary:
    """Internet traffic for a time range split into domestic/international."""

    start_time: datetime
    end_time: datetime
    cycle_label: str
    domestic: TrafficRegionSummary = field(default_factory=TrafficRegionSummary)
    international: TrafficRegionSummary = field(default_factory=TrafficRegionSummary)
    total_bytes: int = 0
    region_details: list[dict[str, Any]] = field(default_factory=list)

    @property
    def total_gb(self) -> float:
        return self.total_bytes / BYTES_PER_GB

"""
Spot instance monitor: tracked-instance registry, discovery, reconciliation
and operator reports.

The registry holds an immutable tuple that discovery swaps out wholesale.
Readers take the current tuple under the lock and iterate it without holding
the lock, so no network call ever runs while the registry is locked.

Usage
-----
    from detect.monitor import Monitor
    monitor = Monitor.from_settings(settings)
    monitor.discover()
    monitor.reconcile()
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Iterable

from actions.telegram_notify import TelegramNotifier
from config.settings import Settings
from detect.cooldown import CooldownGovernor
from detect.health import PingChecker
from detect.models import (
    BillingSummary,
    RemediationOutcome,
    TrackedInstance,
    TrafficSummary,
)
from detect.remediation import Remediator
from ingest.aliyun import ProviderError
from ingest.billing import BillingClient, summarize_billing
from ingest.ecs import ECSClient
from ingest.traffic import TrafficClient

logger = logging.getLogger(__name__)


class InstanceRegistry:
    """Lock-guarded holder of the current immutable instance snapshot."""

    def __init__(self, instances: Iterable[TrackedInstance] = ()) -> None:
        self._snapshot: tuple[TrackedInstance, ...] = tuple(instances)
        self._lock = threading.Lock()

    def replace(self, instances: Iterable[TrackedInstance]) -> tuple[TrackedInstance, ...]:
        snapshot = tuple(instances)
        with self._lock:
            self._snapshot = snapshot
        return snapshot

    def snapshot(self) -> tuple[TrackedInstance, ...]:
        with self._lock:
            return self._snapshot

    def __len__(self) -> int:
        return len(self.snapshot())


class Monitor:
    """Ties discovery, remediation and reporting together."""

    def __init__(
        self,
        ecs: ECSClient,
        remediator: Remediator,
        notifier: TelegramNotifier | None = None,
        billing: BillingClient | None = None,
        traffic: TrafficClient | None = None,
        registry: InstanceRegistry | None = None,
    ) -> None:
        self.ecs = ecs
        self.remediator = remediator
        self.notifier = notifier
        self.billing = billing
        self.traffic = traffic
        self.registry = registry or InstanceRegistry()

    @classmethod
    def from_settings(cls, cfg: Settings) -> "Monitor":
        """Build a monitor and all of its provider clients from *cfg*."""
        ecs = ECSClient()
        notifier = None
        billing = None
        traffic = None

        if cfg.TELEGRAM_ENABLED:
            notifier = TelegramNotifier(cfg.TELEGRAM_BOT_TOKEN, cfg.TELEGRAM_CHAT_ID)
            billing = BillingClient()
            traffic = TrafficClient()

        remediator = Remediator.from_settings(
            cfg,
            ecs,
            CooldownGovernor(cfg.NOTIFY_COOLDOWN),
            notifier,
            PingChecker(),
        )
        return cls(ecs, remediator, notifier, billing, traffic)

    @property
    def instances(self) -> tuple[TrackedInstance, ...]:
        return self.registry.snapshot()

    # ──────────────────────────────────────────────────────────────────────
    # Discovery and reconciliation
    # ──────────────────────────────────────────────────────────────────────

    def discover(self) -> tuple[TrackedInstance, ...]:
        """
        Replace the registry with the provider's current spot instance list.

        Sends no alerts; the startup announcement is the caller's decision.
        """
        snapshot = self.registry.replace(self.ecs.discover_spot_instances())

        logger.info("Discovered %d spot instances", len(snapshot))
        for inst in snapshot:
            logger.info("  - %s [%s]", inst, inst.last_known_status)
        return snapshot

    def reconcile(self) -> list[RemediationOutcome]:
        """
        Run the remediation state machine once for every tracked instance.

        Instances are handled sequentially in registry order.  A failure for
        one instance is logged and does not stop the others.
        """
        outcomes: list[RemediationOutcome] = []
        for inst in self.registry.snapshot():
            try:
                outcomes.append(self.remediator.remediate(inst))
            except Exception as exc:
                logger.error("Failed to check instance %s: %s", inst.instance_id, exc)
        return outcomes

    # ──────────────────────────────────────────────────────────────────────
    # Reports
    # ──────────────────────────────────────────────────────────────────────

    def _require_notifier(self) -> TelegramNotifier:
        if self.notifier is None:
            raise RuntimeError("telegram notifier not configured")
        return self.notifier

    def report_billing(self, now: datetime | None = None) -> BillingSummary:
        """Query this month's bill for the tracked instances and send it."""
        notifier = self._require_notifier()
        if self.billing is None:
            raise RuntimeError("billing client not configured")

        instances = self.registry.snapshot()
        if instances:
            logger.info("Querying billing for %d instances...", len(instances))
            summary = self.billing.query_billing(instances, now=now)
        else:
            logger.warning("No instances to query billing for")
            summary = summarize_billing([], [], now or datetime.now())

        notifier.notify_billing_summary(summary)
        logger.info("Billing report sent: %s", summary.to_dict())
        return summary

    def report_traffic(self) -> TrafficSummary:
        """Query this month's internet traffic and send it."""
        notifier = self._require_notifier()
        if self.traffic is None:
            raise RuntimeError("traffic client not configured")

        logger.info("Querying traffic data...")
        summary = self.traffic.query_traffic()
        notifier.notify_traffic_summary(summary)
        logger.info(
            "Traffic report sent (total: %.2f GB, mainland: %.2f GB, international: %.2f GB)",
            summary.total_gb,
            summary.domestic.traffic_gb,
            summary.international.traffic_gb,
        )
        return summary

    def report_status(self) -> list[tuple[TrackedInstance, str]]:
        """Send the live status of every tracked instance."""
        notifier = self._require_notifier()

        rows: list[tuple[TrackedInstance, str]] = []
        for inst in self.registry.snapshot():
            try:
                status = self.ecs.get_status(inst.region_id, inst.instance_id)
            except ProviderError as exc:
                logger.warning("Failed to get status of %s: %s", inst.instance_id, exc)
                status = "Unknown"
            rows.append((inst, status))

        notifier.notify_status(rows)
        return rows

    def report_help(self) -> None:
        self._require_notifier().notify_help()

"""
Remediation state machine for reclaimed spot instances.

For one tracked instance per scheduler tick::

    RUNNING ──(status == Stopped)──> DETECTED ──> STARTING ──> WAITING_RUNNING
        ──> [HEALTH_CHECKING] ──> STARTED

``FAILED`` is reached from STARTING or WAITING_RUNNING once every attempt is
used up.  Two more terminal outcomes exist:

* **ALREADY_STARTED** — the provider refused the start because the instance
  is no longer stopped (another actor got there first).  Treated as success,
  no alert is sent.
* **UNREACHABLE** — the instance is running but the health check timed out.
  An alert is sent and the instance is *not* retried.

Retries use a fixed interval.  Capacity and balance problems on the
provider side do not clear up faster with backoff.

Usage
-----
    from detect.remediation import Remediator
    outcome = Remediator.from_settings(settings, ecs, cooldown, notifier).remediate(instance)
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from actions.telegram_notify import NotificationError, TelegramNotifier
from config.settings import Settings
from detect.cooldown import CooldownGovernor
from detect.health import PingChecker
from detect.models import InstanceStatus, RemediationOutcome, RemediationState, TrackedInstance
from ingest.aliyun import ProviderError
from ingest.ecs import ECSClient, InstanceNotStoppedError

logger = logging.getLogger(__name__)

WAIT_RUNNING_TIMEOUT = 120
WAIT_RUNNING_POLL_INTERVAL = 5


class WaitTimeoutError(Exception):
    """The instance did not reach Running before the deadline."""


class RemediationError(Exception):
    """Every start attempt for an instance failed."""

    def __init__(self, instance: TrackedInstance, attempts: int, last_error: Exception | None) -> None:
        super().__init__(f"failed to start {instance.instance_id} after {attempts} attempts: {last_error}")
        self.instance = instance
        self.attempts = attempts
        self.last_error = last_error


class Remediator:
    """Drives a stopped spot instance back to a running, reachable state."""

    def __init__(
        self,
        ecs: ECSClient,
        cooldown: CooldownGovernor,
        notifier: TelegramNotifier | None = None,
        health_checker: PingChecker | None = None,
        *,
        retry_count: int = 3,
        retry_interval: float = 30,
        health_check_enabled: bool = True,
        health_check_timeout: int = 300,
        health_check_interval: float = 10,
        wait_timeout: float = WAIT_RUNNING_TIMEOUT,
        wait_poll_interval: float = WAIT_RUNNING_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ecs = ecs
        self.cooldown = cooldown
        self.notifier = notifier
        self.health_checker = health_checker or PingChecker()
        self.retry_count = retry_count
        self.retry_interval = retry_interval
        self.health_check_enabled = health_check_enabled
        self.health_check_timeout = health_check_timeout
        self.health_check_interval = health_check_interval
        self.wait_timeout = wait_timeout
        self.wait_poll_interval = wait_poll_interval
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        cfg: Settings,
        ecs: ECSClient,
        cooldown: CooldownGovernor,
        notifier: TelegramNotifier | None = None,
        health_checker: PingChecker | None = None,
    ) -> "Remediator":
        return cls(
            ecs,
            cooldown,
            notifier,
            health_checker,
            retry_count=cfg.RETRY_COUNT,
            retry_interval=cfg.RETRY_INTERVAL,
            health_check_enabled=cfg.HEALTH_CHECK_ENABLED,
            health_check_timeout=cfg.HEALTH_CHECK_TIMEOUT,
            health_check_interval=cfg.HEALTH_CHECK_INTERVAL,
        )

    # ──────────────────────────────────────────────────────────────────────
    # Public entry point
    # ──────────────────────────────────────────────────────────────────────

    def remediate(self, instance: TrackedInstance) -> RemediationOutcome:
        """
        Run one remediation cycle for *instance*.

        Returns
        -------
        RemediationOutcome
            ``RUNNING`` if nothing had to be done, otherwise the terminal state.

        Raises
        ------
        ProviderError
            If the initial status query fails; nothing else is attempted.
        RemediationError
            If every start attempt failed.
        """
        status = self.ecs.get_status(instance.region_id, instance.instance_id)
        logger.debug("Instance %s status: %s", instance, status)

        if status != InstanceStatus.STOPPED.value:
            return RemediationOutcome(instance=instance, state=RemediationState.RUNNING)

        started_at = self._clock()
        self._transition(instance, RemediationState.DETECTED)
        logger.warning("Instance %s is stopped, attempting to start", instance)
        self._alert_reclaimed(instance)

        last_error: Exception | None = None
        for attempt in range(1, self.retry_count + 1):
            if attempt > 1:
                logger.info("Retry %d/%d for instance %s", attempt, self.retry_count, instance.instance_id)
                self._sleep(self.retry_interval)

            self._transition(instance, RemediationState.STARTING)
            try:
                self.ecs.start(instance.region_id, instance.instance_id)
            except InstanceNotStoppedError as exc:
                logger.warning("Instance %s is no longer stopped, skipping start", instance.instance_id)
                return RemediationOutcome(
                    instance=instance,
                    state=RemediationState.ALREADY_STARTED,
                    attempts=attempt,
                    duration_seconds=self._clock() - started_at,
                    error=exc,
                )
            except ProviderError as exc:
                last_error = exc
                logger.warning("Failed to start instance %s (attempt %d): %s", instance.instance_id, attempt, exc)
                continue

            logger.info("Start command sent for instance %s", instance.instance_id)

            self._transition(instance, RemediationState.WAITING_RUNNING)
            try:
                self._wait_for_running(instance)
            except WaitTimeoutError as exc:
                last_error = exc
                logger.warning("Instance %s did not reach running state: %s", instance.instance_id, exc)
                continue

            instance = self._refresh(instance)
            return self._confirm(instance, attempt, started_at)

        self._transition(instance, RemediationState.FAILED)
        logger.error("Failed to start instance %s after %d attempts", instance.instance_id, self.retry_count)
        self._notify("notify_start_failed", instance, self.retry_count, last_error)
        raise RemediationError(instance, self.retry_count, last_error)

    # ──────────────────────────────────────────────────────────────────────
    # Steps
    # ──────────────────────────────────────────────────────────────────────

    def _wait_for_running(self, instance: TrackedInstance) -> None:
        deadline = self._clock() + self.wait_timeout
        while self._clock() < deadline:
            self._sleep(self.wait_poll_interval)
            try:
                status = self.ecs.get_status(instance.region_id, instance.instance_id)
            except ProviderError as exc:
                logger.warning("Failed to get status of %s: %s", instance.instance_id, exc)
                continue
            if status == InstanceStatus.RUNNING.value:
                return
            logger.debug("Instance %s status: %s, waiting...", instance.instance_id, status)

        raise WaitTimeoutError(f"timeout after {self.wait_timeout:.0f}s waiting for instance to start")

    def _refresh(self, instance: TrackedInstance) -> TrackedInstance:
        """Re-read the instance to pick up a newly assigned public address."""
        try:
            return self.ecs.get_instance(instance.region_id, instance.instance_id)
        except ProviderError as exc:
            logger.warning("Failed to get updated instance info for %s: %s", instance.instance_id, exc)
            return instance

    def _confirm(self, instance: TrackedInstance, attempt: int, started_at: float) -> RemediationOutcome:
        if self.health_check_enabled and instance.public_address:
            self._transition(instance, RemediationState.HEALTH_CHECKING)
            healthy = self.health_checker.wait_for_health(
                instance.public_address,
                self.health_check_timeout,
                self.health_check_interval,
            )
            if not healthy:
                logger.warning("Instance %s is running but did not answer health checks", instance)
                self._notify("notify_health_check_timeout", instance, self.health_check_timeout)
                return RemediationOutcome(
                    instance=instance,
                    state=RemediationState.UNREACHABLE,
                    attempts=attempt,
                    duration_seconds=self._clock() - started_at,
                    error=WaitTimeoutError(f"no ping reply within {self.health_check_timeout}s"),
                )

        duration = self._clock() - started_at
        self._transition(instance, RemediationState.STARTED)
        logger.info("Instance %s started successfully in %.0f seconds", instance.instance_id, duration)
        self._notify("notify_instance_started", instance, duration)
        return RemediationOutcome(
            instance=instance,
            state=RemediationState.STARTED,
            attempts=attempt,
            duration_seconds=duration,
        )

    def _alert_reclaimed(self, instance: TrackedInstance) -> None:
        if not self.cooldown.can_notify(instance.instance_id):
            logger.debug(
                "Notification cooldown active for instance %s (last alert %.0fs ago)",
                instance.instance_id,
                self._clock() - (self.cooldown.last_notified(instance.instance_id) or 0.0),
            )
            return
        self._notify("notify_instance_reclaimed", instance)
        self.cooldown.record_notified(instance.instance_id)

    def _notify(self, method: str, *args: Any) -> None:
        """Send an alert; delivery failures are logged and never propagate."""
        if self.notifier is None:
            return
        try:
            getattr(self.notifier, method)(*args)
        except NotificationError as exc:
            logger.warning("Failed to send %s alert: %s", method, exc)

    @staticmethod
    def _transition(instance: TrackedInstance, state: RemediationState) -> None:
        logger.debug("Instance %s -> %s", instance.instance_id, state.value)

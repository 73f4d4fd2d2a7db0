"""
Tests for the remediation state machine and the cooldown governor.

Drives :class:`Remediator` with a mocked ECS client and a fake clock to verify:
- Status observation and the "only Stopped triggers" rule
- Start / wait / refresh / health-check sequencing
- Fixed-interval retries and failure escalation
- Benign "already not stopped" short-circuit
- Alert cooldown and best-effort alert delivery
"""

from __future__ import annotations

import pytest
from unittest.mock import ANY, MagicMock

from actions.telegram_notify import NotificationError, TelegramNotifier
from detect.cooldown import CooldownGovernor
from detect.health import PingChecker
from detect.models import RemediationState, TrackedInstance
from detect.remediation import RemediationError, Remediator, WaitTimeoutError
from ingest.aliyun import ProviderError
from ingest.ecs import ECSClient, InstanceNotStoppedError


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


INSTANCE = TrackedInstance(
    instance_id="i-spot1",
    display_name="worker-1",
    region_id="cn-hongkong",
    last_known_status="Running",
)

REFRESHED = TrackedInstance(
    instance_id="i-spot1",
    display_name="worker-1",
    region_id="cn-hongkong",
    last_known_status="Running",
    public_address="47.1.2.3",
)


def _statuses(first: str, then: str):
    """Return a get_status side effect: *first* once, then *then* forever."""
    calls = {"n": 0}

    def side_effect(region_id, instance_id):
        calls["n"] += 1
        return first if calls["n"] == 1 else then

    return side_effect


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ecs():
    mock = MagicMock(spec=ECSClient)
    mock.get_instance.return_value = REFRESHED
    return mock


@pytest.fixture
def notifier():
    return MagicMock(spec=TelegramNotifier)


@pytest.fixture
def health():
    mock = MagicMock(spec=PingChecker)
    mock.wait_for_health.return_value = True
    return mock


def _remediator(ecs, notifier, health, clock, **overrides) -> Remediator:
    options = dict(
        retry_count=3,
        retry_interval=30,
        health_check_enabled=False,
        health_check_timeout=300,
        health_check_interval=10,
        sleep=clock.sleep,
        clock=clock,
    )
    options.update(overrides)
    return Remediator(ecs, CooldownGovernor(300, clock=clock), notifier, health, **options)


# ──────────────────────────────────────────────────────────────────────────────
# Cooldown Governor
# ──────────────────────────────────────────────────────────────────────────────


class TestCooldownGovernor:
    """Tests for the per-instance alert cooldown."""

    def test_no_entry_is_always_eligible(self):
        """An instance never alerted should be eligible."""
        governor = CooldownGovernor(300)
        assert governor.can_notify("i-1", now=0.0)
        assert governor.last_notified("i-1") is None

    def test_blocked_within_window(self):
        """A second alert inside the window should be blocked."""
        governor = CooldownGovernor(300)
        governor.record_notified("i-1", now=1000.0)
        assert not governor.can_notify("i-1", now=1100.0)
        assert not governor.can_notify("i-1", now=1300.0)

    def test_eligible_after_window(self):
        """An alert should be allowed once the window has passed."""
        governor = CooldownGovernor(300)
        governor.record_notified("i-1", now=1000.0)
        assert governor.can_notify("i-1", now=1300.5)

    def test_keys_are_independent(self):
        """Cooldowns for different instances should not interfere."""
        governor = CooldownGovernor(300)
        governor.record_notified("i-1", now=1000.0)
        assert governor.can_notify("i-2", now=1001.0)

    def test_record_overwrites(self):
        """Recording again should move the window."""
        governor = CooldownGovernor(300)
        governor.record_notified("i-1", now=1000.0)
        governor.record_notified("i-1", now=2000.0)
        assert governor.last_notified("i-1") == 2000.0

    def test_uses_injected_clock(self):
        """Without an explicit time the injected clock should be used."""
        clock = FakeClock(start=0.0)
        governor = CooldownGovernor(60, clock=clock)
        governor.record_notified("i-1")
        clock.sleep(30)
        assert not governor.can_notify("i-1")
        clock.sleep(31)
        assert governor.can_notify("i-1")


# ──────────────────────────────────────────────────────────────────────────────
# Observation
# ──────────────────────────────────────────────────────────────────────────────


class TestObservation:
    """Only a Stopped status triggers remediation."""

    @pytest.mark.parametrize("status", ["Running", "Starting", "Stopping", "Pending"])
    def test_non_stopped_status_is_left_alone(self, ecs, notifier, health, clock, status):
        """Only Stopped should trigger remediation."""
        ecs.get_status.return_value = status
        outcome = _remediator(ecs, notifier, health, clock).remediate(INSTANCE)

        assert outcome.state is RemediationState.RUNNING
        assert not outcome.acted
        ecs.start.assert_not_called()
        assert notifier.method_calls == []

    def test_status_query_failure_propagates(self, ecs, notifier, health, clock):
        """A failing status query aborts the cycle without starting or alerting."""
        ecs.get_status.side_effect = ProviderError("throttled", code="Throttling")

        with pytest.raises(ProviderError):
            _remediator(ecs, notifier, health, clock).remediate(INSTANCE)

        ecs.start.assert_not_called()
        assert notifier.method_calls == []


# ──────────────────────────────────────────────────────────────────────────────
# Successful restart
# ──────────────────────────────────────────────────────────────────────────────


class TestRestart:
    """Start → wait for Running → refresh → confirm."""

    def test_stopped_to_started_without_health_check(self, ecs, notifier, health, clock):
        """A stopped instance should be started and announced once."""
        ecs.get_status.side_effect = ["Stopped", "Starting", "Starting", "Running"]

        outcome = _remediator(ecs, notifier, health, clock).remediate(INSTANCE)

        assert outcome.state is RemediationState.STARTED
        assert outcome.attempts == 1
        assert outcome.instance == REFRESHED
        assert ecs.start.call_count == 1
        notifier.notify_instance_reclaimed.assert_called_once_with(INSTANCE)
        notifier.notify_instance_started.assert_called_once_with(REFRESHED, 15.0)
        notifier.notify_start_failed.assert_not_called()
        health.wait_for_health.assert_not_called()

    def test_wait_polls_on_fixed_interval(self, ecs, notifier, health, clock):
        """Waiting for Running should poll every five seconds."""
        ecs.get_status.side_effect = ["Stopped", "Starting", "Running"]
        _remediator(ecs, notifier, health, clock).remediate(INSTANCE)
        assert clock.sleeps == [5, 5]

    def test_status_error_while_waiting_keeps_polling(self, ecs, notifier, health, clock):
        """A status error while waiting should not abort the wait."""
        ecs.get_status.side_effect = ["Stopped", ProviderError("blip"), "Running"]

        outcome = _remediator(ecs, notifier, health, clock).remediate(INSTANCE)

        assert outcome.state is RemediationState.STARTED
        assert ecs.start.call_count == 1

    def test_refresh_failure_uses_stale_record(self, ecs, notifier, health, clock):
        """A failed refresh should fall back to the known record."""
        ecs.get_status.side_effect = ["Stopped", "Running"]
        ecs.get_instance.side_effect = ProviderError("not found")

        outcome = _remediator(ecs, notifier, health, clock).remediate(INSTANCE)

        assert outcome.state is RemediationState.STARTED
        assert outcome.instance == INSTANCE
        notifier.notify_instance_started.assert_called_once_with(INSTANCE, ANY)

    def test_works_without_notifier(self, ecs, health, clock):
        """Remediation should run with no notifier configured."""
        ecs.get_status.side_effect = ["Stopped", "Running"]
        outcome = _remediator(ecs, None, health, clock).remediate(INSTANCE)
        assert outcome.state is RemediationState.STARTED


# ──────────────────────────────────────────────────────────────────────────────
# Health check
# ──────────────────────────────────────────────────────────────────────────────


class TestHealthCheck:
    """Post-start reachability confirmation."""

    def test_healthy_instance_is_started(self, ecs, notifier, health, clock):
        """A reachable instance should end STARTED."""
        ecs.get_status.side_effect = ["Stopped", "Running"]

        outcome = _remediator(ecs, notifier, health, clock, health_check_enabled=True).remediate(INSTANCE)

        assert outcome.state is RemediationState.STARTED
        health.wait_for_health.assert_called_once_with("47.1.2.3", 300, 10)
        notifier.notify_instance_started.assert_called_once()

    def test_timeout_is_terminal_and_not_retried(self, ecs, notifier, health, clock):
        """A health-check timeout should end UNREACHABLE without retrying."""
        ecs.get_status.side_effect = ["Stopped", "Running"]
        health.wait_for_health.return_value = False

        outcome = _remediator(ecs, notifier, health, clock, health_check_enabled=True).remediate(INSTANCE)

        assert outcome.state is RemediationState.UNREACHABLE
        assert ecs.start.call_count == 1
        assert isinstance(outcome.error, WaitTimeoutError)
        assert "300s" in str(outcome.error)
        notifier.notify_health_check_timeout.assert_called_once_with(REFRESHED, 300)
        notifier.notify_instance_started.assert_not_called()
        notifier.notify_start_failed.assert_not_called()

    def test_skipped_without_public_address(self, ecs, notifier, health, clock):
        """No public address should skip the health check."""
        ecs.get_status.side_effect = ["Stopped", "Running"]
        ecs.get_instance.return_value = INSTANCE

        outcome = _remediator(ecs, notifier, health, clock, health_check_enabled=True).remediate(INSTANCE)

        assert outcome.state is RemediationState.STARTED
        health.wait_for_health.assert_not_called()


# ──────────────────────────────────────────────────────────────────────────────
# Retries and failure
# ──────────────────────────────────────────────────────────────────────────────


class TestRetries:
    """Bounded fixed-interval retries and failure escalation."""

    def test_start_always_failing_exhausts_retries(self, ecs, notifier, health, clock):
        """A persistent start error should use every attempt and alert once."""
        ecs.get_status.return_value = "Stopped"
        ecs.start.side_effect = ProviderError("no stock", code="OperationDenied.NoStock")

        with pytest.raises(RemediationError) as excinfo:
            _remediator(ecs, notifier, health, clock).remediate(INSTANCE)

        assert excinfo.value.attempts == 3
        assert isinstance(excinfo.value.last_error, ProviderError)
        assert ecs.start.call_count == 3
        assert clock.sleeps == [30, 30]
        notifier.notify_start_failed.assert_called_once_with(INSTANCE, 3, excinfo.value.last_error)
        notifier.notify_instance_started.assert_not_called()

    def test_retry_count_is_configurable(self, ecs, notifier, health, clock):
        """retry_count and retry_interval should bound the attempts."""
        ecs.get_status.return_value = "Stopped"
        ecs.start.side_effect = ProviderError("boom")

        with pytest.raises(RemediationError) as excinfo:
            _remediator(ecs, notifier, health, clock, retry_count=5, retry_interval=7).remediate(INSTANCE)

        assert excinfo.value.attempts == 5
        assert ecs.start.call_count == 5
        assert clock.sleeps == [7, 7, 7, 7]

    def test_second_attempt_succeeds(self, ecs, notifier, health, clock):
        """A later successful attempt should end STARTED."""
        ecs.get_status.side_effect = ["Stopped", "Running"]
        ecs.start.side_effect = [ProviderError("boom"), None]

        outcome = _remediator(ecs, notifier, health, clock).remediate(INSTANCE)

        assert outcome.state is RemediationState.STARTED
        assert outcome.attempts == 2
        notifier.notify_start_failed.assert_not_called()

    def test_wait_deadline_is_retryable(self, ecs, notifier, health, clock):
        """Missing the Running deadline should count as a failed attempt."""
        ecs.get_status.side_effect = _statuses("Stopped", "Starting")

        with pytest.raises(RemediationError) as excinfo:
            _remediator(ecs, notifier, health, clock).remediate(INSTANCE)

        assert ecs.start.call_count == 3
        assert isinstance(excinfo.value.last_error, WaitTimeoutError)
        # each wait is bounded by the 2 minute deadline
        assert sum(s for s in clock.sleeps if s == 5) == 3 * 120

    def test_already_started_short_circuits(self, ecs, notifier, health, clock):
        """A start refused as not stopped should end ALREADY_STARTED quietly."""
        ecs.get_status.return_value = "Stopped"
        ecs.start.side_effect = InstanceNotStoppedError("not stopped", code="IncorrectInstanceStatus")

        outcome = _remediator(ecs, notifier, health, clock).remediate(INSTANCE)

        assert outcome.state is RemediationState.ALREADY_STARTED
        assert ecs.start.call_count == 1
        assert isinstance(outcome.error, InstanceNotStoppedError)
        notifier.notify_instance_started.assert_not_called()
        notifier.notify_start_failed.assert_not_called()


# ──────────────────────────────────────────────────────────────────────────────
# Alerting
# ──────────────────────────────────────────────────────────────────────────────


class TestAlerting:
    """Reclaimed-alert cooldown and best-effort delivery."""

    def test_reclaimed_alert_respects_cooldown(self, ecs, notifier, health, clock):
        """The reclaimed alert should be suppressed inside the cooldown."""
        ecs.get_status.side_effect = ["Stopped", "Running", "Stopped", "Running"]
        remediator = _remediator(ecs, notifier, health, clock)

        remediator.remediate(INSTANCE)
        remediator.remediate(INSTANCE)

        assert notifier.notify_instance_reclaimed.call_count == 1
        assert notifier.notify_instance_started.call_count == 2

    def test_reclaimed_alert_resumes_after_window(self, ecs, notifier, health, clock):
        """The reclaimed alert should return after the cooldown."""
        ecs.get_status.side_effect = ["Stopped", "Running", "Stopped", "Running"]
        remediator = _remediator(ecs, notifier, health, clock)

        remediator.remediate(INSTANCE)
        clock.sleep(301)
        remediator.remediate(INSTANCE)

        assert notifier.notify_instance_reclaimed.call_count == 2

    def test_notification_failure_does_not_fail_remediation(self, ecs, notifier, health, clock):
        """Alert delivery errors should not affect the outcome."""
        ecs.get_status.side_effect = ["Stopped", "Running"]
        notifier.notify_instance_reclaimed.side_effect = NotificationError("telegram down")
        notifier.notify_instance_started.side_effect = NotificationError("telegram down")

        outcome = _remediator(ecs, notifier, health, clock).remediate(INSTANCE)

        assert outcome.state is RemediationState.STARTED

    def test_from_settings_reads_configuration(self, ecs, notifier, health):
        """from_settings should copy the remediation settings."""
        from config.settings import Settings

        cfg = Settings(RETRY_COUNT=4, RETRY_INTERVAL=12, HEALTH_CHECK_ENABLED=False, HEALTH_CHECK_TIMEOUT=90)
        remediator = Remediator.from_settings(cfg, ecs, CooldownGovernor(300), notifier, health)

        assert remediator.retry_count == 4
        assert remediator.retry_interval == 12
        assert remediator.health_check_enabled is False
        assert remediator.health_check_timeout == 90

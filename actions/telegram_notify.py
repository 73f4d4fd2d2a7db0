"""
Telegram notifications for the Spot Instance Monitor.

Formats remediation alerts and billing/traffic/status reports as HTML
messages and delivers them through the Bot API ``sendMessage`` method.

Usage
-----
    from actions.telegram_notify import TelegramNotifier
    notifier = TelegramNotifier(token, chat_id)
    notifier.notify_instance_reclaimed(instance)
"""

from __future__ import annotations

import html
import logging
from datetime import datetime
from typing import Iterable

import requests

from detect.models import BillingSummary, TrackedInstance, TrafficRegionSummary, TrafficSummary
from ingest.regions import region_display_name
from ingest.traffic import format_traffic_size

logger = logging.getLogger(__name__)

_API_URL = "https://api.telegram.org/bot{token}/{method}"
_TIMEOUT = 30
_RULE = "━━━━━━━━━━━━━━━━━━━━━━━━"

HELP_MESSAGE = f"""\
🤖 <b>Available commands</b>
{_RULE}

/billing - this month's charges
/traffic - this month's internet traffic
/status - current instance status
/help - show this message

{_RULE}
<i>Aliases: /cost, /fee, /flow, /bandwidth</i>"""

_STATUS_EMOJI = {
    "Running": "🟢",
    "Stopped": "🔴",
    "Starting": "🟡",
    "Stopping": "🟡",
}


class NotificationError(Exception):
    """A Telegram message could not be delivered."""


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _esc(value: object) -> str:
    return html.escape(str(value), quote=False)


def _instance_block(instance: TrackedInstance) -> str:
    return (
        f"Instance: {_esc(instance.display_name)}\n"
        f"ID: <code>{_esc(instance.instance_id)}</code>\n"
        f"Region: {_esc(region_display_name(instance.region_id))}"
    )


# ──────────────────────────────────────────────────────────────────────────────
# Report formatting
# ──────────────────────────────────────────────────────────────────────────────


def format_status_report(rows: Iterable[tuple[TrackedInstance, str]]) -> str:
    """Format ``(instance, live_status)`` pairs as a status report."""
    rows = list(rows)
    if not rows:
        return "📊 <b>Instance status</b>\n\nNo instances are being monitored"

    lines = ["📊 <b>Instance status</b>", _RULE, ""]
    for instance, status in rows:
        lines.append(f"{_STATUS_EMOJI.get(status, '⚪')} <b>{_esc(instance.display_name)}</b>")
        lines.append(f"   ID: <code>{_esc(instance.instance_id)}</code>")
        lines.append(f"   Region: {_esc(instance.region_id)}")
        lines.append(f"   Status: {_esc(status)}")
        lines.append("")
    return "\n".join(lines).rstrip()


def format_billing_summary(summary: BillingSummary) -> str:
    """Format a billing summary as an itemized per-instance report."""
    if not summary.instances:
        return (
            f"📊 <b>Billing summary</b> ({summary.cycle_label})\n{_RULE}\n\n"
            f"No charges yet\n\n{_RULE}\n"
            "💰 Month to date: ¥0.00\n"
            "📈 Monthly estimate: ¥0.00"
        )

    lines = [
        f"📊 <b>Billing summary</b> ({summary.cycle_label})",
        _RULE,
        f"📅 Period: {summary.start_time:%Y-%m-%d} ~ {summary.end_time:%d %H:%M}",
        f"⏱ Elapsed days: {summary.elapsed_days}",
        f"🕐 Total running time: {summary.total_running_hours:.1f} h",
        _RULE,
        "",
    ]

    for inst in summary.instances:
        header = f"🖥 <b>{_esc(inst.display_name)}</b>"
        if inst.spec:
            header += f" [{_esc(inst.spec)}]"
        lines.append(header)
        lines.append(f"   <code>{_esc(inst.instance_id)}</code> | {_esc(inst.region_id)}")

        for i, item in enumerate(inst.items):
            prefix = "└─" if i == len(inst.items) - 1 else "├─"
            lines.append(f"   {prefix} {_esc(item.label)}: ¥{item.amount:.4f}")

        if inst.running_hours > 0 and inst.hourly_cost > 0:
            lines.append(
                f"   <b>Subtotal: ¥{inst.total_amount:.4f}</b> "
                f"({inst.running_hours:.1f}h, ¥{inst.hourly_cost:.4f}/h)"
            )
        else:
            lines.append(f"   <b>Subtotal: ¥{inst.total_amount:.4f}</b>")
        lines.append("")

    lines.append(_RULE)
    lines.append(f"💰 <b>Month to date: ¥{summary.total_amount:.4f}</b>")
    lines.append(f"📈 <b>Monthly estimate: ¥{summary.monthly_estimate:.2f}</b>")
    if summary.estimate_method:
        lines.append(f"📝 <i>{_esc(summary.estimate_method)}</i>")
    return "\n".join(lines)


def _region_label(region_id: str, region_bytes: dict[str, int]) -> str:
    name = _esc(region_display_name(region_id))
    if region_id in region_bytes:
        return f"{name} ({format_traffic_size(region_bytes[region_id])})"
    return name


def _traffic_bucket(title: str, bucket: TrafficRegionSummary, region_bytes: dict[str, int]) -> list[str]:
    lines = [f"<b>{title}</b>: {format_traffic_size(bucket.total_bytes)} ({bucket.region_count} regions)"]
    if bucket.regions:
        names = ", ".join(_region_label(r, region_bytes) for r in bucket.regions)
        lines.append(f"   Regions: {names}")
    for product, num_bytes in sorted(bucket.product_breakdown.items()):
        lines.append(f"   • {_esc(product)}: {format_traffic_size(num_bytes)}")
    return lines


def format_traffic_summary(summary: TrafficSummary) -> str:
    """Format a traffic summary split into mainland and international buckets."""
    region_bytes: dict[str, int] = {}
    for record in summary.region_details:
        region_id = record.get("BusinessRegionId", "")
        region_bytes[region_id] = region_bytes.get(region_id, 0) + int(record.get("Traffic") or 0)

    lines = [
        f"🌐 <b>Traffic summary</b> ({summary.cycle_label})",
        _RULE,
        f"📅 Period: {summary.start_time:%Y-%m-%d} ~ {summary.end_time:%Y-%m-%d %H:%M}",
        _RULE,
        "",
    ]
    lines.extend(_traffic_bucket("🇨🇳 Mainland China", summary.domestic, region_bytes))
    lines.append("")
    lines.extend(_traffic_bucket("🌍 International", summary.international, region_bytes))
    lines.append("")
    lines.append(_RULE)
    lines.append(f"📦 <b>Total: {format_traffic_size(summary.total_bytes)}</b> ({summary.total_gb:.2f} GB)")
    return "\n".join(lines)


# ──────────────────────────────────────────────────────────────────────────────
# Notifier
# ──────────────────────────────────────────────────────────────────────────────


class TelegramNotifier:
    """
    Sends HTML messages to a single Telegram chat.

    Alerts come from the scheduler thread and reports from the bot thread, so
    without an explicit *session* every message goes through a one-shot
    ``requests.post``.
    """

    def __init__(self, bot_token: str, chat_id: str, session: requests.Session | None = None) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self._http = session or requests

    def send(self, message: str) -> None:
        """
        Deliver *message* to the configured chat.

        Raises
        ------
        NotificationError
            On transport failure or a non-200 response.
        """
        url = _API_URL.format(token=self.bot_token, method="sendMessage")
        payload = {"chat_id": self.chat_id, "text": message, "parse_mode": "HTML"}

        try:
            resp = self._http.post(url, json=payload, timeout=_TIMEOUT)
        except requests.RequestException as exc:
            raise NotificationError(f"failed to send message: {exc}") from exc

        if resp.status_code != 200:
            raise NotificationError(f"telegram API returned status {resp.status_code}")

    # ── Remediation alerts ──────────────────────────────

    def notify_instance_reclaimed(self, instance: TrackedInstance) -> None:
        self.send(
            f"🔴 <b>Instance reclaimed</b>\n{_RULE}\n"
            f"{_instance_block(instance)}\n"
            f"Time: {_now()}\n{_RULE}\n"
            "Attempting automatic restart..."
        )

    def notify_instance_started(self, instance: TrackedInstance, duration_seconds: float) -> None:
        self.send(
            f"✅ <b>Instance started</b>\n{_RULE}\n"
            f"{_instance_block(instance)}\n"
            f"Public IP: <code>{_esc(instance.public_address or 'none')}</code>\n"
            "Status: Running ✓\n"
            f"Startup time: {duration_seconds:.0f} s\n{_RULE}"
        )

    def notify_start_failed(self, instance: TrackedInstance, attempts: int, error: Exception | None) -> None:
        self.send(
            f"❌ <b>Start failed</b>\n{_RULE}\n"
            f"{_instance_block(instance)}\n"
            f"Error: {_esc(error)}\n"
            f"Attempts: {attempts}, all failed\n{_RULE}\n"
            "Please check manually!"
        )

    def notify_health_check_timeout(self, instance: TrackedInstance, timeout_seconds: int) -> None:
        self.send(
            f"⚠️ <b>Health check timed out</b>\n{_RULE}\n"
            f"{_instance_block(instance)}\n"
            f"Public IP: <code>{_esc(instance.public_address or 'none')}</code>\n"
            "Check: ping\n"
            f"Waited: {timeout_seconds} s\n{_RULE}\n"
            "The instance is running but may not be ready, please check manually!"
        )

    def notify_monitor_started(self, instances: Iterable[TrackedInstance]) -> None:
        instances = list(instances)
        listing = "".join(
            f"\n• {_esc(i.display_name)} ({_esc(i.instance_id)}) - {_esc(i.region_id)}" for i in instances
        )
        self.send(
            f"🚀 <b>Monitor started</b>\n{_RULE}\n"
            f"Monitored instances: {len(instances)}\n"
            f"Time: {_now()}\n{_RULE}\n"
            f"<b>Instances:</b>{listing}"
        )

    # ── Reports ─────────────────────────────────────────

    def notify_billing_summary(self, summary: BillingSummary) -> None:
        self.send(format_billing_summary(summary))

    def notify_traffic_summary(self, summary: TrafficSummary) -> None:
        self.send(format_traffic_summary(summary))

    def notify_status(self, rows: Iterable[tuple[TrackedInstance, str]]) -> None:
        self.send(format_status_report(rows))

    def notify_help(self) -> None:
        self.send(HELP_MESSAGE)

"""
Telegram bot command handling.

Long-polls ``getUpdates`` for messages from the configured chat and routes
recognized commands (``/billing``, ``/traffic``, ``/status``, ``/help`` and
their aliases) to the monitor's report operations.  Messages from any other
chat and unknown commands are ignored.

Usage
-----
    from actions.bot import BotHandler, CommandDispatcher
    dispatcher = CommandDispatcher.for_monitor(monitor)
    BotHandler(token, chat_id, dispatcher.dispatch).run(stop_event)
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

import requests

from actions.telegram_notify import NotificationError

logger = logging.getLogger(__name__)

_API_URL = "https://api.telegram.org/bot{token}/getUpdates"
_ERROR_BACKOFF = 5

COMMAND_ALIASES: dict[str, str] = {
    "billing": "billing",
    "cost": "billing",
    "fee": "billing",
    "traffic": "traffic",
    "flow": "traffic",
    "bandwidth": "traffic",
    "status": "status",
    "help": "help",
}


def parse_command(text: str) -> str:
    """
    Extract the command keyword from a chat message.

    ``"/Billing@my_bot now"`` -> ``"billing"``.  Returns ``""`` for empty text.
    """
    words = text.strip().split()
    if not words:
        return ""
    return words[0].lstrip("/").split("@", 1)[0].lower()


class CommandDispatcher:
    """Maps command keywords to zero-argument handlers."""

    def __init__(self, handlers: dict[str, Callable[[], Any]]) -> None:
        self.handlers = handlers

    @classmethod
    def for_monitor(cls, monitor: Any) -> "CommandDispatcher":
        return cls(
            {
                "billing": monitor.report_billing,
                "traffic": monitor.report_traffic,
                "status": monitor.report_status,
                "help": monitor.report_help,
            }
        )

    def dispatch(self, command: str) -> bool:
        """Run the handler for *command*; returns False if it is not recognized."""
        canonical = COMMAND_ALIASES.get(parse_command(command))
        handler = self.handlers.get(canonical) if canonical else None
        if handler is None:
            logger.debug("Unknown command: %s", command)
            return False

        logger.info("Handling command: %s", canonical)
        handler()
        return True


class BotHandler:
    """Long-polling receiver for commands from a single authorized chat."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        on_command: Callable[[str], Any],
        session: requests.Session | None = None,
        poll_timeout: int = 30,
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = str(chat_id)
        self.on_command = on_command
        self.poll_timeout = poll_timeout
        self._http = session or requests
        self._offset = 0

    def fetch_commands(self) -> list[str]:
        """Fetch pending updates and return command texts from the authorized chat."""
        try:
            resp = self._http.get(
                _API_URL.format(token=self.bot_token),
                params={"offset": self._offset, "timeout": self.poll_timeout},
                timeout=self.poll_timeout + 10,
            )
        except requests.RequestException as exc:
            raise NotificationError(f"failed to poll updates: {exc}") from exc

        if resp.status_code != 200:
            raise NotificationError(f"telegram API returned status {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise NotificationError(f"unreadable getUpdates response: {exc}") from exc

        updates = body.get("result") if isinstance(body, dict) else None
        if not isinstance(updates, list):
            raise NotificationError("getUpdates response has no result list")

        commands: list[str] = []
        for update in updates:
            if not isinstance(update, dict):
                continue
            update_id = update.get("update_id")
            if isinstance(update_id, int):
                self._offset = max(self._offset, update_id + 1)

            message = update.get("message") or {}
            text = message.get("text") or ""
            if not text:
                continue

            sender = str((message.get("chat") or {}).get("id", ""))
            if sender != self.chat_id:
                logger.warning("Ignoring message from unauthorized chat %s", sender)
                continue
            commands.append(text)
        return commands

    def poll_once(self) -> int:
        """Fetch and handle one batch of commands; returns how many were received."""
        commands = self.fetch_commands()
        for command in commands:
            try:
                self.on_command(command)
            except Exception as exc:
                logger.error("Command %r failed: %s", command, exc, exc_info=True)
        return len(commands)

    def run(self, stop_event: threading.Event) -> None:
        """Poll until *stop_event* is set."""
        logger.info("Telegram bot polling started")
        while not stop_event.is_set():
            try:
                self.poll_once()
            except NotificationError as exc:
                logger.warning("Bot polling error: %s", exc)
                stop_event.wait(_ERROR_BACKOFF)
            except Exception as exc:
                logger.error("Unexpected bot polling error: %s", exc, exc_info=True)
                stop_event.wait(_ERROR_BACKOFF)
        logger.info("Telegram bot polling stopped")

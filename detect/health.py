"""
ICMP reachability probe used to confirm a restarted instance is reachable.

Shells out to the system ``ping`` binary, which works without raw-socket
privileges on typical Linux hosts.
"""

from __future__ import annotations

import logging
import subprocess
import time

logger = logging.getLogger(__name__)


class PingChecker:
    """Ping-based health checker."""

    def __init__(self, count: int = 3, timeout: int = 5, sleep=time.sleep, clock=time.monotonic) -> None:
        self.count = count
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    def check(self, address: str) -> bool:
        """Return True if *address* answered at least one echo request."""
        if not address:
            return False

        try:
            result = subprocess.run(
                ["ping", "-c", str(self.count), "-W", str(self.timeout), address],
                capture_output=True,
                timeout=self.count * self.timeout + 5,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug("Ping to %s failed: %s", address, exc)
            return False

        # ping exits 0 when at least one reply was received
        return result.returncode == 0

    def wait_for_health(self, address: str, timeout: float, interval: float) -> bool:
        """Probe *address* every *interval* seconds until it answers or *timeout* elapses."""
        if not address:
            return False

        deadline = self._clock() + timeout
        while self._clock() < deadline:
            if self.check(address):
                return True
            self._sleep(interval)

        logger.warning("Health check for %s timed out after %ss", address, timeout)
        return False

import logging
import time
from typing import Callable, Optional

from ..config import settings
from ..errors import DaemonError, OfflineTimeout
from ..models import POWER_COMMANDS, Server
from .daemon_client import DaemonClient

OFFLINE_STATE = "offline"
BACKOFF_FACTOR = 1.5


class PowerObserver:
    def __init__(
        self,
        daemon: DaemonClient,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.daemon = daemon
        self._sleep = sleep
        self._clock = clock
        self.log = logging.getLogger("modpack-installer")

    def send_power(self, server: Server, command: str) -> None:
        if command not in POWER_COMMANDS:
            raise ValueError(f"Unsupported power command: {command}")
        self.daemon.send_power(server.uuid, command)
        self.log.info("Power command %s sent to server %s", command, server.id)

    def current_state(self, server: Server) -> Optional[str]:
        return self.daemon.get_details(server.uuid).get("state")

    def wait_until_offline(
        self,
        server: Server,
        poll_interval: Optional[float] = None,
        max_wait: Optional[float] = None,
        max_interval: Optional[float] = None,
    ) -> float:
        """Poll the daemon until the server reports offline.

        Returns the elapsed seconds. The interval grows by ``BACKOFF_FACTOR``
        after each poll up to ``max_interval``. Raises ``OfflineTimeout`` once
        ``max_wait`` seconds have passed without an offline report.
        """
        interval = settings.offline_poll_interval_seconds if poll_interval is None else poll_interval
        limit = settings.offline_max_wait_seconds if max_wait is None else max_wait
        ceiling = (
            max(interval, settings.offline_poll_interval_max_seconds)
            if max_interval is None
            else max_interval
        )
        started = self._clock()
        polls = 0

        while True:
            polls += 1
            try:
                state = self.current_state(server)
            except DaemonError as exc:
                self.log.warning("State poll %s for server %s failed: %s", polls, server.id, exc.message)
                state = None
            if state == OFFLINE_STATE:
                elapsed = self._clock() - started
                self.log.info("Server %s reported offline after %.1fs (%s polls)", server.id, elapsed, polls)
                return elapsed

            remaining = limit - (self._clock() - started)
            if remaining <= 0:
                raise OfflineTimeout(
                    f"Server {server.id} did not report offline within {limit:g}s (last state: {state})"
                )
            self._sleep(min(interval, remaining))
            interval = min(interval * BACKOFF_FACTOR, ceiling)

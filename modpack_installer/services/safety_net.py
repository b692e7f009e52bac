import logging
import threading
import time
from typing import Callable, Optional

from ..config import settings
from ..errors import RevertWriteFailure
from ..models import ConfigurationSnapshot
from ..storage import PanelStore


class RevertSafetyNet:
    """Delayed backstop that restores a server's original profile.

    It only writes when the run's lease is still held and has expired, which
    means the orchestrator never got as far as releasing it. A lease that is
    held but still fresh re-arms the timer once for the remaining time, and
    that second call reverts if the lease is still unreleased.
    """

    def __init__(
        self,
        store: PanelStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self._clock = clock
        self.log = logging.getLogger("modpack-installer")

    def schedule(
        self, snapshot: ConfigurationSnapshot, run_id: str, delay: Optional[float] = None
    ) -> threading.Timer:
        delay = settings.safety_net_delay_seconds if delay is None else delay
        timer = threading.Timer(delay, self.fire, args=(snapshot, run_id), kwargs={"rearm": True})
        timer.daemon = True
        timer.name = f"revert-safety-net-{run_id[:8]}"
        timer.start()
        self.log.info(
            "Revert safety net for server %s scheduled in %ss (run %s)", snapshot.server_id, delay, run_id
        )
        return timer

    def fire(
        self,
        snapshot: ConfigurationSnapshot,
        run_id: str,
        rearm: bool = False,
        final: bool = False,
    ) -> bool:
        """Apply the revert if the run was lost. Returns whether a write happened.

        ``final`` is set on the re-armed call, which acts on any lease that is
        still unreleased regardless of clock skew between the timer and ``clock``.
        """
        lease = self.store.get_lease(run_id)
        now = self._clock()
        if lease is not None and lease.released:
            self.log.info(
                "Safety net skipped for server %s: run %s already reverted", snapshot.server_id, run_id
            )
            return False
        if lease is not None and not final and not lease.expired(now):
            if rearm:
                remaining = lease.expires_at - now
                self.log.info(
                    "Run %s still holds its lease, safety net re-armed for %.0fs", run_id, remaining
                )
                timer = threading.Timer(
                    remaining, self.fire, args=(snapshot, run_id), kwargs={"final": True}
                )
                timer.daemon = True
                timer.start()
            else:
                self.log.warning(
                    "Run %s still holds an unexpired lease; safety net for server %s stands down",
                    run_id,
                    snapshot.server_id,
                )
            return False

        self.log.warning(
            "Safety net reverting server %s to profile %s (run %s)",
            snapshot.server_id,
            snapshot.original_profile_id,
            run_id,
        )
        try:
            self.store.force_profile(
                snapshot.server_id,
                snapshot.original_profile_id,
                snapshot.original_profile_group_id,
            )
        except RevertWriteFailure as exc:
            self.log.error("Safety net revert failed for server %s: %s", snapshot.server_id, exc.message)
            return False
        self.store.release_lease(run_id)

        server = self.store.get_server(snapshot.server_id)
        self.log.info(
            "Safety net revert for server %s: current profile %s, expected %s, reverted=%s",
            server.id,
            server.profile_id,
            snapshot.original_profile_id,
            "YES" if snapshot.matches(server) else "NO",
        )
        return True

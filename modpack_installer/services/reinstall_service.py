import logging

from ..errors import DaemonError, ReinstallTriggerFailure
from ..models import STATUS_INSTALLING
from ..storage import PanelStore
from .daemon_client import DaemonClient


class ReinstallService:
    """Marks a server as installing and asks the daemon to rerun its install script."""

    def __init__(self, store: PanelStore, daemon: DaemonClient) -> None:
        self.store = store
        self.daemon = daemon
        self.log = logging.getLogger("modpack-installer")

    def reinstall(self, server_id: int) -> None:
        server = self.store.get_server(server_id)
        previous_status = server.status
        self.store.set_status(server.id, STATUS_INSTALLING)
        try:
            self.daemon.reinstall(server.uuid)
        except DaemonError as exc:
            self.store.set_status(server.id, previous_status)
            raise ReinstallTriggerFailure(f"Failed to trigger reinstall: {exc.message}") from exc
        self.log.info("Reinstall requested for server %s (%s)", server.id, server.uuid)

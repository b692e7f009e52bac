import logging

from ..errors import DaemonError, PurgeFailure
from ..models import Server
from .daemon_client import DaemonClient

ROOT_DIRECTORY = "/"


class FilePurger:
    def __init__(self, daemon: DaemonClient) -> None:
        self.daemon = daemon
        self.log = logging.getLogger("modpack-installer")

    def purge_all(self, server: Server) -> list[str]:
        try:
            entries = self.daemon.list_directory(server.uuid, ROOT_DIRECTORY)
            names = [entry["name"] for entry in entries if entry.get("name")]
            if not names:
                self.log.info("Server %s has no files to purge", server.id)
                return []
            self.daemon.delete_files(server.uuid, ROOT_DIRECTORY, names)
        except DaemonError as exc:
            raise PurgeFailure(f"Failed to purge server files: {exc.message}") from exc
        self.log.info("Purged %s entries from server %s", len(names), server.id)
        return names

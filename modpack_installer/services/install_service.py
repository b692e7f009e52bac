import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol

from ..config import settings
from ..errors import PermissionDenied, ServiceError
from ..models import InstallationAcceptedResponse
from .orchestrator import InstallationOrchestrator, PreparedRun, RunReport
from .profile_service import SwapCapability
from .safety_net import RevertSafetyNet

PERMISSION_FILE_CREATE = "file.create"


@dataclass(frozen=True)
class Actor:
    id: int
    username: str
    root_admin: bool = False
    permissions: frozenset[str] = frozenset()

    def can(self, permission: str) -> bool:
        return self.root_admin or permission in self.permissions


class TaskRunner(Protocol):
    def submit(self, name: str, task: Callable[[], Any]) -> None: ...


class ThreadTaskRunner:
    def __init__(self) -> None:
        self.log = logging.getLogger("modpack-installer")

    def submit(self, name: str, task: Callable[[], Any]) -> None:
        def target() -> None:
            try:
                task()
            except Exception as exc:
                self.log.exception("Background task %s crashed: %s", name, exc)

        thread = threading.Thread(target=target, daemon=True, name=name)
        thread.start()


class ModpackInstallService:
    """Entry point for a modpack install request.

    Swaps the server to the installer profile inside one store transaction,
    then hands the rest to the orchestrator and arms the revert safety net.
    """

    def __init__(
        self,
        orchestrator: InstallationOrchestrator,
        safety_net: RevertSafetyNet,
        runner: Optional[TaskRunner] = None,
        safety_net_delay: Optional[float] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.safety_net = safety_net
        self.runner = runner or ThreadTaskRunner()
        self.safety_net_delay = safety_net_delay
        self.log = logging.getLogger("modpack-installer")
        self.last_report: Optional[RunReport] = None

    def install(
        self, server_id: int, payload: Mapping[str, Any], actor: Actor
    ) -> InstallationAcceptedResponse:
        if not actor.can(PERMISSION_FILE_CREATE):
            raise PermissionDenied("This action is unauthorized.")

        try:
            installer = self.orchestrator.provision_installer()
        except ServiceError as exc:
            self.log.error("Failed to ensure modpack installer profile: %s", exc.message)
            raise ServiceError(
                f"Failed to ensure modpack installer profile exists: {exc.message}", 500
            ) from exc
        self.log.info("Using modpack installer profile %s (%s)", installer.id, installer.name)

        prepared = self.orchestrator.prepare(server_id, payload, installer=installer)
        run_id = uuid.uuid4().hex
        capability = SwapCapability(actor=actor.username, can_change_profile=True)

        try:
            with self.store.transaction():
                self.orchestrator.swapper.swap_profile(
                    server_id,
                    prepared.installer.id,
                    prepared.installer.group_id,
                    self.orchestrator.installer_values(prepared.request, prepared.installer),
                    capability=capability,
                )
                self.store.acquire_lease(run_id, server_id, settings.run_lease_ttl_seconds)
        except (ServiceError, sqlite3.Error) as exc:
            self.log.error("Failed to install modpack on server %s: %s", server_id, exc)
            raise ServiceError(f"Failed to install modpack: {exc}", 500) from exc

        try:
            self._schedule(prepared, run_id)
        except RuntimeError as exc:
            self.log.error("Could not schedule installation for server %s: %s", server_id, exc)
            self._restore(prepared, run_id)
            raise ServiceError(f"Failed to install modpack: {exc}", 500) from exc

        request = prepared.request
        self.log.info(
            "activity server:modpack.install server=%s actor=%s provider=%s modpack_id=%s modpack_version_id=%s",
            server_id,
            actor.username,
            request.provider,
            request.modpack_id,
            request.modpack_version_id,
        )
        return InstallationAcceptedResponse(message="Modpack installation started")

    def _schedule(self, prepared: PreparedRun, run_id: str) -> None:
        def run() -> None:
            self.last_report = self.orchestrator.execute(prepared, run_id=run_id)

        self.runner.submit(f"modpack-install-{run_id[:8]}", run)
        self.safety_net.schedule(prepared.snapshot, run_id, delay=self.safety_net_delay)

    def _restore(self, prepared: PreparedRun, run_id: str) -> None:
        snapshot = prepared.snapshot
        self.store.force_profile(
            snapshot.server_id,
            snapshot.original_profile_id,
            snapshot.original_profile_group_id,
        )
        self.store.write_values(snapshot.server_id, snapshot.original_values)
        self.store.release_lease(run_id)

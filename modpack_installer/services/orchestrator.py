import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import ValidationError

from ..config import settings
from ..errors import (
    AlreadyInstalling,
    InstallationValidationError,
    OfflineTimeout,
    ReinstallTriggerFailure,
    RevertVerificationMismatch,
    RevertWriteFailure,
    ServiceError,
)
from ..models import (
    CURSEFORGE_API_KEY,
    STATUS_INSTALLING,
    ConfigurationSnapshot,
    InstallationRequest,
    Profile,
    Server,
)
from ..storage import PanelStore
from .file_service import FilePurger
from .power_service import PowerObserver
from .profile_service import SYSTEM_CAPABILITY, ProfileSwapOperator, SwapCapability
from .reinstall_service import ReinstallService

_UNSET: Any = object()


def validate_request(payload: Union[InstallationRequest, Mapping[str, Any]]) -> InstallationRequest:
    if isinstance(payload, InstallationRequest):
        return payload
    try:
        return InstallationRequest.model_validate(payload)
    except ValidationError as exc:
        raise InstallationValidationError(
            "Invalid modpack installation request",
            errors=exc.errors(include_url=False, include_context=False),
        ) from exc


@dataclass(frozen=True)
class PreparedRun:
    request: InstallationRequest
    installer: Profile
    snapshot: ConfigurationSnapshot


@dataclass
class StageResult:
    stage: str
    ok: bool
    detail: str = ""
    error: Optional[Exception] = None


@dataclass
class RunReport:
    server_id: int
    run_id: Optional[str]
    stages: list[StageResult] = field(default_factory=list)
    fatal: Optional[Exception] = None
    reinstall_attempts: int = 0
    installing_verified: bool = False
    reverted: bool = False

    def stage(self, name: str) -> Optional[StageResult]:
        for result in reversed(self.stages):
            if result.stage == name:
                return result
        return None

    def ran(self, name: str) -> bool:
        return self.stage(name) is not None

    @property
    def succeeded(self) -> bool:
        return self.fatal is None and self.reverted and all(result.ok for result in self.stages)


class InstallationOrchestrator:
    """Swap a server to the installer profile, run it, and put everything back.

    ``prepare`` covers validation, the double-trigger guard and the snapshot;
    it raises on any problem because nothing has been written yet. ``execute``
    covers everything after that and never raises: each stage reports a
    ``StageResult`` and the revert stages always run.
    """

    def __init__(
        self,
        store: PanelStore,
        power: PowerObserver,
        purger: FilePurger,
        swapper: ProfileSwapOperator,
        reinstaller: ReinstallService,
        provision_installer: Callable[[], Profile],
        capability: SwapCapability = SYSTEM_CAPABILITY,
        curseforge_api_key: Optional[str] = _UNSET,
        poll_interval: Optional[float] = None,
        max_wait: Optional[float] = None,
    ) -> None:
        self.store = store
        self.power = power
        self.purger = purger
        self.swapper = swapper
        self.reinstaller = reinstaller
        self.provision_installer = provision_installer
        self.capability = capability
        self.curseforge_api_key = (
            settings.curseforge_api_key if curseforge_api_key is _UNSET else curseforge_api_key
        )
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.log = logging.getLogger("modpack-installer")

    def run(
        self, server_id: int, payload: Union[InstallationRequest, Mapping[str, Any]]
    ) -> RunReport:
        prepared = self.prepare(server_id, payload)
        run_id = uuid.uuid4().hex
        self.store.acquire_lease(run_id, server_id, settings.run_lease_ttl_seconds)
        return self.execute(prepared, run_id=run_id)

    def prepare(
        self,
        server_id: int,
        payload: Union[InstallationRequest, Mapping[str, Any]],
        installer: Optional[Profile] = None,
    ) -> PreparedRun:
        request = validate_request(payload)
        installer = installer or self.provision_installer()
        server = self.store.get_server(server_id)
        if server.profile_id == installer.id:
            raise AlreadyInstalling("Already processing a modpack installation job.")
        snapshot = self.store.capture_snapshot(server_id)
        self.log.info(
            "Captured configuration of server %s: profile %s, group %s, %s values",
            server_id,
            snapshot.original_profile_id,
            snapshot.original_profile_group_id,
            len(snapshot.original_values),
        )
        return PreparedRun(request=request, installer=installer, snapshot=snapshot)

    def installer_values(self, request: InstallationRequest, installer: Profile) -> dict[str, str]:
        values = request.installer_values()
        if installer.variable(CURSEFORGE_API_KEY) is not None:
            if self.curseforge_api_key:
                values[CURSEFORGE_API_KEY] = self.curseforge_api_key
            else:
                self.log.warning("CurseForge API key is not configured; installer slot left empty")
        return values

    def execute(self, prepared: PreparedRun, run_id: Optional[str] = None) -> RunReport:
        snapshot = prepared.snapshot
        report = RunReport(server_id=snapshot.server_id, run_id=run_id)
        self.log.info(
            "Modpack installation run %s started for server %s (%s %s@%s)",
            run_id,
            snapshot.server_id,
            prepared.request.provider,
            prepared.request.modpack_id,
            prepared.request.modpack_version_id,
        )

        try:
            server = self.store.get_server(snapshot.server_id)
        except ServiceError as exc:
            report.fatal = exc
            report.stages.append(StageResult("load_server", False, exc.message, exc))
            self.log.error("Run %s aborted, server %s unavailable: %s", run_id, snapshot.server_id, exc.message)
            return report

        try:
            self._install(prepared, server, report)
        except Exception as exc:
            report.fatal = report.fatal or exc
            report.stages.append(StageResult("install", False, str(exc), exc))
            self.log.exception("Run %s interrupted for server %s, reverting", run_id, server.id)

        self._revert(prepared, report)
        self._verify_revert(snapshot, report)

        if run_id is not None:
            self.store.release_lease(run_id)
        if report.succeeded:
            self.log.info("Run %s finished for server %s", run_id, snapshot.server_id)
        else:
            failed = ", ".join(result.stage for result in report.stages if not result.ok)
            self.log.warning(
                "Run %s finished for server %s with failures: %s", run_id, snapshot.server_id, failed
            )
        return report

    def _install(self, prepared: PreparedRun, server: Server, report: RunReport) -> None:
        if not self._power_off(server, report):
            return
        if prepared.request.delete_files:
            self._stage(report, "purge_files", lambda: self._purge(server))
        swapped = self._stage(
            report,
            "swap_to_installer",
            lambda: self._swap_to_installer(prepared),
        )
        if swapped.ok:
            self._trigger_reinstall(report, "trigger_reinstall")
            self._verify_installing(report)

    def _stage(self, report: RunReport, name: str, action: Callable[[], Optional[str]]) -> StageResult:
        try:
            detail = action() or ""
        except Exception as exc:
            message = exc.message if isinstance(exc, ServiceError) else str(exc)
            result = StageResult(name, False, message, exc)
            self.log.warning(
                "Stage %s failed for server %s: %s",
                name,
                report.server_id,
                message,
                exc_info=not isinstance(exc, ServiceError),
            )
        else:
            result = StageResult(name, True, detail)
            self.log.info("Stage %s completed for server %s: %s", name, report.server_id, detail or "ok")
        report.stages.append(result)
        return result

    def _power_off(self, server: Server, report: RunReport) -> bool:
        # A failed kill is tolerated; the offline wait decides whether to go on.
        self._stage(report, "power_off", lambda: self.power.send_power(server, "kill"))
        try:
            elapsed = self.power.wait_until_offline(
                server, poll_interval=self.poll_interval, max_wait=self.max_wait
            )
        except Exception as exc:
            message = exc.message if isinstance(exc, ServiceError) else f"{type(exc).__name__}: {exc}"
            report.fatal = exc
            report.stages.append(StageResult("wait_offline", False, message, exc))
            self.log.error(
                "Server %s not confirmed offline; skipping purge and install: %s",
                server.id,
                message,
                exc_info=not isinstance(exc, OfflineTimeout),
            )
            return False
        report.stages.append(StageResult("wait_offline", True, f"{elapsed:.1f}s"))
        return True

    def _purge(self, server: Server) -> str:
        names = self.purger.purge_all(server)
        return f"{len(names)} entries removed"

    def _swap_to_installer(self, prepared: PreparedRun) -> str:
        installer = prepared.installer
        self.swapper.swap_profile(
            prepared.snapshot.server_id,
            installer.id,
            installer.group_id,
            self.installer_values(prepared.request, installer),
            capability=self.capability,
        )
        return f"profile {installer.id}"

    def _trigger_reinstall(self, report: RunReport, name: str) -> StageResult:
        report.reinstall_attempts += 1

        def trigger() -> str:
            try:
                self.reinstaller.reinstall(report.server_id)
            except ReinstallTriggerFailure:
                raise
            except ServiceError as exc:
                raise ReinstallTriggerFailure(exc.message) from exc
            return f"attempt {report.reinstall_attempts}"

        return self._stage(report, name, trigger)

    def _installing(self, server_id: int) -> bool:
        return self.store.get_server(server_id).status == STATUS_INSTALLING

    def _verify_installing(self, report: RunReport) -> None:
        def verify() -> str:
            if not self._installing(report.server_id):
                self.log.warning(
                    "Server %s is not installing, retrying reinstall once", report.server_id
                )
                self._trigger_reinstall(report, "retry_reinstall")
                if not self._installing(report.server_id):
                    raise ReinstallTriggerFailure(
                        f"Server {report.server_id} is not installing after retry"
                    )
            report.installing_verified = True
            return STATUS_INSTALLING

        self._stage(report, "verify_installing", verify)

    def _revert(self, prepared: PreparedRun, report: RunReport) -> None:
        snapshot = prepared.snapshot

        def revert_profile() -> str:
            try:
                self.swapper.swap_profile(
                    snapshot.server_id,
                    snapshot.original_profile_id,
                    snapshot.original_profile_group_id,
                    capability=self.capability,
                )
            except ServiceError as exc:
                raise RevertWriteFailure(f"Profile revert failed: {exc.message}") from exc
            return f"profile {snapshot.original_profile_id}"

        def revert_values() -> str:
            try:
                self.store.write_values(snapshot.server_id, snapshot.original_values)
            except Exception as exc:
                raise RevertWriteFailure(f"Value revert failed: {exc}") from exc
            return f"{len(snapshot.original_values)} values"

        self._stage(report, "revert_profile", revert_profile)
        self._stage(report, "revert_values", revert_values)

    def _verify_revert(self, snapshot: ConfigurationSnapshot, report: RunReport) -> None:
        def verify() -> str:
            server = self.store.get_server(snapshot.server_id)
            if snapshot.matches(server):
                report.reverted = True
                return "profile matches"

            self.log.warning(
                "Server %s is on profile %s instead of %s, writing it directly",
                snapshot.server_id,
                server.profile_id,
                snapshot.original_profile_id,
            )
            self.store.force_profile(
                snapshot.server_id,
                snapshot.original_profile_id,
                snapshot.original_profile_group_id,
            )
            server = self.store.get_server(snapshot.server_id)
            if snapshot.matches(server):
                report.reverted = True
                return "profile corrected"
            raise RevertVerificationMismatch(
                f"Server {snapshot.server_id} still on profile {server.profile_id}, "
                f"expected {snapshot.original_profile_id}"
            )

        self._stage(report, "verify_revert", verify)

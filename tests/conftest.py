"""Shared fixtures: a temporary panel database, a scripted daemon and a fake clock."""

from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from modpack_installer.errors import DaemonError
from modpack_installer.models import Profile, Server
from modpack_installer.services.file_service import FilePurger
from modpack_installer.services.orchestrator import InstallationOrchestrator
from modpack_installer.services.power_service import PowerObserver
from modpack_installer.services.profile_service import ProfileSwapOperator, locate_installer_profile
from modpack_installer.services.reinstall_service import ReinstallService
from modpack_installer.storage import PanelStore

INSTALLER_AUTHOR = "modpack-installer@pterodactyl.io"
ORIGINAL_GROUP = 7
INSTALLER_GROUP = 3


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeDaemon:
    """Stands in for DaemonClient and records every call it receives."""

    def __init__(self) -> None:
        self.states: list[str] = ["running", "offline"]
        self.files: list[dict[str, Any]] = [{"name": "world"}, {"name": "server.properties"}]
        self.power_calls: list[tuple[str, str]] = []
        self.deleted: list[tuple[str, str, list[str]]] = []
        self.reinstall_calls: list[str] = []
        self.reinstall_failures = 0
        self.list_error: Optional[DaemonError] = None
        self.on_reinstall: Optional[Callable[[], None]] = None

    def send_power(self, server_uuid: str, action: str) -> None:
        self.power_calls.append((server_uuid, action))

    def get_details(self, server_uuid: str) -> dict[str, Any]:
        state = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        return {"state": state}

    def list_directory(self, server_uuid: str, path: str) -> list[dict[str, Any]]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.files)

    def delete_files(self, server_uuid: str, root: str, names: list[str]) -> None:
        self.deleted.append((server_uuid, root, names))

    def reinstall(self, server_uuid: str) -> None:
        self.reinstall_calls.append(server_uuid)
        if self.on_reinstall is not None:
            self.on_reinstall()
        if self.reinstall_failures > 0:
            self.reinstall_failures -= 1
            raise DaemonError("Daemon error 500: reinstall failed")


@pytest.fixture
def store(tmp_path: Path) -> PanelStore:
    panel = PanelStore(str(tmp_path / "panel.db"))
    panel.init_db()
    return panel


@pytest.fixture
def original_profile(store: PanelStore) -> Profile:
    return store.create_profile(
        ORIGINAL_GROUP, "support@example.com", "Paper", {"FOO": "", "SERVER_JARFILE": "server.jar"}
    )


@pytest.fixture
def installer_profile(store: PanelStore) -> Profile:
    return store.create_profile(
        INSTALLER_GROUP,
        INSTALLER_AUTHOR,
        "Minecraft: Java Edition Modpack Installer",
        {
            "MODPACK_PROVIDER": "",
            "MODPACK_ID": "",
            "MODPACK_VERSION_ID": "",
            "DELETE_SERVER_FILES": "false",
            "CURSEFORGE_API_KEY": "",
        },
    )


@pytest.fixture
def server(store: PanelStore, original_profile: Profile, installer_profile: Profile) -> Server:
    created = store.create_server("8d3c0f6e-1f8a-4c51-9f7a-3c1b1f0c2a11", "survival", original_profile.id)
    foo = original_profile.variable("FOO")
    store.upsert_value(created.id, foo.id, "bar")
    return created


@pytest.fixture
def daemon() -> FakeDaemon:
    return FakeDaemon()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def orchestrator(store: PanelStore, daemon: FakeDaemon, clock: FakeClock) -> InstallationOrchestrator:
    return InstallationOrchestrator(
        store=store,
        power=PowerObserver(daemon, sleep=clock.sleep, clock=clock),
        purger=FilePurger(daemon),
        swapper=ProfileSwapOperator(store),
        reinstaller=ReinstallService(store, daemon),
        provision_installer=locate_installer_profile(store, INSTALLER_AUTHOR),
        curseforge_api_key=None,
        poll_interval=1.0,
        max_wait=30.0,
    )


@pytest.fixture
def modrinth_payload() -> dict[str, Any]:
    return {"fileId": "123", "deleteFiles": True, "provider": "modrinth", "modpackId": "abc"}

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


STATUS_INSTALLING = "installing"

POWER_COMMANDS = ("start", "stop", "kill", "restart")

MODPACK_PROVIDER = "MODPACK_PROVIDER"
MODPACK_ID = "MODPACK_ID"
MODPACK_VERSION_ID = "MODPACK_VERSION_ID"
DELETE_SERVER_FILES = "DELETE_SERVER_FILES"
CURSEFORGE_API_KEY = "CURSEFORGE_API_KEY"


class ModpackProvider(str, Enum):
    CURSEFORGE = "curseforge"
    MODRINTH = "modrinth"
    FTB = "ftb"


@dataclass(frozen=True)
class ProfileVariable:
    id: int
    profile_id: int
    env_variable: str
    default_value: str = ""


@dataclass(frozen=True)
class Profile:
    id: int
    group_id: int
    author: str
    name: str
    variables: tuple[ProfileVariable, ...] = ()

    def variable(self, env_variable: str) -> Optional[ProfileVariable]:
        for variable in self.variables:
            if variable.env_variable == env_variable:
                return variable
        return None


@dataclass(frozen=True)
class Server:
    id: int
    uuid: str
    name: str
    profile_id: int
    profile_group_id: int
    status: Optional[str] = None


@dataclass(frozen=True)
class ConfigurationSnapshot:
    """Pre-swap profile and configuration values of a server.

    Lives only for one orchestration run and is never written to storage.
    ``original_values`` is keyed by variable slot id, orphaned slots included.
    """

    server_id: int
    original_profile_id: int
    original_profile_group_id: int
    original_values: Mapping[int, str] = field(default_factory=dict)

    def matches(self, server: Server) -> bool:
        return (
            server.profile_id == self.original_profile_id
            and server.profile_group_id == self.original_profile_group_id
        )


class InstallationRequest(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=True,
        coerce_numbers_to_str=True,
        frozen=True,
    )

    provider: ModpackProvider
    modpack_id: str = Field(..., alias="modpackId", min_length=1)
    modpack_version_id: str = Field(..., alias="fileId", min_length=1)
    delete_files: bool = Field(..., alias="deleteFiles")

    def installer_values(self) -> dict[str, str]:
        return {
            MODPACK_PROVIDER: self.provider,
            MODPACK_ID: self.modpack_id,
            MODPACK_VERSION_ID: self.modpack_version_id,
            DELETE_SERVER_FILES: "true" if self.delete_files else "false",
        }


class InstallationAcceptedResponse(BaseModel):
    message: str


@dataclass(frozen=True)
class RunLease:
    run_id: str
    server_id: int
    acquired_at: float
    expires_at: float
    released_at: Optional[float] = None

    @property
    def released(self) -> bool:
        return self.released_at is not None

    def expired(self, now: float) -> bool:
        return now >= self.expires_at

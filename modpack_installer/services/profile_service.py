import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from ..config import settings
from ..errors import PermissionDenied, ProfileNotFound
from ..models import Profile
from ..storage import PanelStore


@dataclass(frozen=True)
class SwapCapability:
    """Authority handed to the swap operator by its caller."""

    actor: str
    can_change_profile: bool = False


SYSTEM_CAPABILITY = SwapCapability(actor="system", can_change_profile=True)


class ProfileSwapOperator:
    def __init__(self, store: PanelStore) -> None:
        self.store = store
        self.log = logging.getLogger("modpack-installer")

    def swap_profile(
        self,
        server_id: int,
        profile_id: int,
        profile_group_id: int,
        variable_values: Optional[Mapping[str, str]] = None,
        *,
        capability: SwapCapability,
    ) -> Profile:
        if not capability.can_change_profile:
            raise PermissionDenied(f"{capability.actor} may not change the server profile")
        profile = self.store.get_profile(profile_id)
        if profile is None:
            raise ProfileNotFound(f"Profile {profile_id} does not exist")

        self.store.set_active_profile(server_id, profile.id, profile_group_id)
        applied = []
        for env_variable, value in (variable_values or {}).items():
            variable = profile.variable(env_variable)
            if variable is None:
                self.log.debug(
                    "Profile %s does not declare %s; value ignored", profile.id, env_variable
                )
                continue
            self.store.upsert_value(server_id, variable.id, value)
            applied.append(env_variable)

        self.log.info(
            "Server %s swapped to profile %s (group %s), values set: %s",
            server_id,
            profile.id,
            profile_group_id,
            ", ".join(applied) or "none",
        )
        return profile


def locate_installer_profile(store: PanelStore, author: Optional[str] = None) -> Callable[[], Profile]:
    """Default provisioner: find the installer profile that was imported beforehand."""
    author = author or settings.installer_profile_author

    def provision() -> Profile:
        profile = store.find_profile_by_author(author)
        if profile is None:
            raise ProfileNotFound(f"No installer profile authored by {author}", status_code=500)
        return profile

    return provision

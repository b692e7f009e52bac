import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


load_dotenv()


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    if value.strip().lower() in {"1", "true", "yes", "on"}:
        return True
    if value.strip().lower() in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(frozen=True)
class Settings:
    panel_db_path: str
    daemon_base_url: str
    daemon_token: str
    daemon_timeout_seconds: float
    daemon_verify_tls: bool
    admin_token: str
    installer_profile_author: str
    curseforge_api_key: Optional[str]
    offline_poll_interval_seconds: float
    offline_poll_interval_max_seconds: float
    offline_max_wait_seconds: float
    safety_net_delay_seconds: float
    run_lease_ttl_seconds: float


def load_settings() -> Settings:
    data_root = os.path.abspath(os.getenv("DATA_ROOT", "/data/panel"))
    return Settings(
        panel_db_path=os.getenv("PANEL_DB_PATH") or os.path.join(data_root, "panel.db"),
        daemon_base_url=os.getenv("DAEMON_BASE_URL", "http://127.0.0.1:8080"),
        daemon_token=os.getenv("DAEMON_TOKEN", ""),
        daemon_timeout_seconds=_get_env_float("DAEMON_TIMEOUT_SECONDS", 15.0),
        daemon_verify_tls=_get_env_bool("DAEMON_VERIFY_TLS", True),
        admin_token=os.getenv("PANEL_ADMIN_TOKEN", ""),
        installer_profile_author=os.getenv(
            "INSTALLER_PROFILE_AUTHOR", "modpack-installer@pterodactyl.io"
        ),
        curseforge_api_key=os.getenv("CURSEFORGE_API_KEY") or None,
        offline_poll_interval_seconds=_get_env_float("OFFLINE_POLL_INTERVAL_SECONDS", 1.0),
        offline_poll_interval_max_seconds=_get_env_float("OFFLINE_POLL_INTERVAL_MAX_SECONDS", 5.0),
        offline_max_wait_seconds=_get_env_float("OFFLINE_MAX_WAIT_SECONDS", 120.0),
        safety_net_delay_seconds=_get_env_float("SAFETY_NET_DELAY_SECONDS", 300.0),
        run_lease_ttl_seconds=_get_env_float("RUN_LEASE_TTL_SECONDS", 600.0),
    )


settings = load_settings()

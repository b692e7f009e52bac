from typing import Any, Optional

import httpx

from ..config import settings
from ..errors import DaemonError


class DaemonClient:
    """HTTP client for the node daemon that owns the server containers.

    Speaks the Wings-style API: power actions, state details, file listing
    and deletion, and reinstall.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.daemon_base_url).rstrip("/")
        self.token = token if token is not None else settings.daemon_token
        self.timeout = httpx.Timeout(timeout or settings.daemon_timeout_seconds)
        self._transport = transport

    def send_power(self, server_uuid: str, action: str) -> None:
        self._request("POST", f"/api/servers/{server_uuid}/power", json={"action": action})

    def get_details(self, server_uuid: str) -> dict[str, Any]:
        data = self._request("GET", f"/api/servers/{server_uuid}")
        if not isinstance(data, dict):
            raise DaemonError("Daemon returned malformed server details")
        return data

    def list_directory(self, server_uuid: str, path: str) -> list[dict[str, Any]]:
        data = self._request(
            "GET",
            f"/api/servers/{server_uuid}/files/list-directory",
            params={"directory": path},
        )
        if not isinstance(data, list):
            raise DaemonError("Daemon returned malformed directory listing")
        return [item for item in data if isinstance(item, dict)]

    def delete_files(self, server_uuid: str, root: str, names: list[str]) -> None:
        self._request(
            "POST",
            f"/api/servers/{server_uuid}/files/delete",
            json={"root": root, "files": names},
        )

    def reinstall(self, server_uuid: str) -> None:
        self._request("POST", f"/api/servers/{server_uuid}/reinstall")

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
            "User-Agent": "ModpackInstaller/1.0",
        }

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(
                timeout=self.timeout,
                verify=settings.daemon_verify_tls,
                transport=self._transport,
            ) as client:
                response = client.request(
                    method, url, params=params, json=json, headers=self._headers()
                )
        except httpx.RequestError as exc:
            raise DaemonError(f"Daemon request failed: {exc}") from exc

        if response.status_code >= 400:
            raise DaemonError(
                f"Daemon error {response.status_code}: {response.text}"
            )
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise DaemonError(f"Daemon returned invalid JSON: {exc}") from exc

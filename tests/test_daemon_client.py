import json

import httpx
import pytest

from modpack_installer.errors import DaemonError
from modpack_installer.services.daemon_client import DaemonClient

UUID = "8d3c0f6e-1f8a-4c51-9f7a-3c1b1f0c2a11"


def make_client(handler) -> DaemonClient:
    return DaemonClient(
        base_url="https://node.example.com/",
        token="node-token",
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


def test_power_action_is_posted_with_token() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    make_client(handler).send_power(UUID, "kill")

    request = seen[0]
    assert request.method == "POST"
    assert request.url == f"https://node.example.com/api/servers/{UUID}/power"
    assert request.headers["Authorization"] == "Bearer node-token"
    assert json.loads(request.content) == {"action": "kill"}


def test_details_and_listing() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/files/list-directory"):
            assert request.url.params["directory"] == "/"
            return httpx.Response(200, json=[{"name": "world", "file": False}, "junk"])
        return httpx.Response(200, json={"state": "offline", "is_suspended": False})

    client = make_client(handler)
    assert client.get_details(UUID)["state"] == "offline"
    assert client.list_directory(UUID, "/") == [{"name": "world", "file": False}]


def test_delete_and_reinstall_payloads() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, json.loads(request.content) if request.content else None))
        return httpx.Response(202)

    client = make_client(handler)
    client.delete_files(UUID, "/", ["world", "eula.txt"])
    client.reinstall(UUID)

    assert seen[0] == (
        f"/api/servers/{UUID}/files/delete",
        {"root": "/", "files": ["world", "eula.txt"]},
    )
    assert seen[1][0] == f"/api/servers/{UUID}/reinstall"


def test_error_status_raises() -> None:
    client = make_client(lambda request: httpx.Response(409, text="server is busy"))
    with pytest.raises(DaemonError) as exc_info:
        client.reinstall(UUID)
    assert "409" in exc_info.value.message
    assert exc_info.value.status_code == 502


def test_transport_failure_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(DaemonError):
        make_client(handler).get_details(UUID)


def test_non_json_body_raises_daemon_error() -> None:
    client = make_client(lambda request: httpx.Response(200, text="<html>bad gateway page</html>"))
    with pytest.raises(DaemonError) as exc_info:
        client.get_details(UUID)
    assert "invalid JSON" in exc_info.value.message
